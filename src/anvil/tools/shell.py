"""Shell command execution with safety checks.

Used for validation commands chosen by the planner and for ``git diff``.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path

from anvil.exceptions import CommandRefusedError

# Max bytes to buffer from process stdout/stderr before discarding the rest.
_MAX_OUTPUT_BUFFER = 1_048_576  # 1 MB
MAX_OUTPUT_CHARS = 30_000

# Obviously destructive patterns, including flag reordering and quoting bypasses.
BLOCKED_PATTERNS = [
    r"\brm\b.*\s+-[a-zA-Z]*r[a-zA-Z]*\s+/(?:\s|$)",   # rm -rf /, rm -r -f /, etc.
    r"\brm\b.*\s+-[a-zA-Z]*r[a-zA-Z]*\s+~",            # rm -rf ~
    r"\brm\b.*--recursive",                              # rm --recursive
    r"\bmkfs\b",                                         # mkfs
    r"\bdd\s+if=",                                       # dd if=
    r">\s*/dev/",                                        # > /dev/
    r"curl\s+.*\|\s*(?:ba)?sh",                          # curl | sh
    r"wget\s+.*\|\s*(?:ba)?sh",                          # wget | bash
    r"\bsudo\s",                                         # sudo anything
]

BLOCKED_RE = [re.compile(p, re.IGNORECASE) for p in BLOCKED_PATTERNS]


@dataclass(frozen=True)
class CommandResult:
    """Exit code plus combined stdout/stderr text."""

    command: str
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def check_command_safety(command: str) -> str | None:
    """Check if a shell command matches any blocked patterns.

    Returns the matched pattern description if blocked, None if safe.
    """
    for pattern in BLOCKED_RE:
        if pattern.search(command):
            return f"Blocked dangerous command pattern: {pattern.pattern}"
    return None


async def _read_limited(stream: asyncio.StreamReader | None, limit: int) -> bytes:
    """Read from stream up to *limit* bytes, then discard the rest."""
    if stream is None:
        return b""
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await stream.read(8192)
        if not chunk:
            break
        remaining = limit - total
        if remaining <= 0:
            continue  # drain remaining output without storing
        chunks.append(chunk[:remaining])
        total += len(chunk[:remaining])
    return b"".join(chunks)


async def run_command(
    command: str,
    cwd: Path | str | None = None,
    *,
    timeout: float | None = None,
) -> CommandResult:
    """Run ``command`` in a shell and return its exit code and output.

    Raises CommandRefusedError for blocked commands. The child process is
    killed if the caller is cancelled or ``timeout`` elapses.
    """
    if not command.strip():
        raise CommandRefusedError("Empty command")
    violation = check_command_safety(command)
    if violation:
        raise CommandRefusedError(violation)

    process = None
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
        )
        async with asyncio.timeout(timeout):
            stdout_bytes, stderr_bytes = await asyncio.gather(
                _read_limited(process.stdout, _MAX_OUTPUT_BUFFER),
                _read_limited(process.stderr, _MAX_OUTPUT_BUFFER),
            )
            await process.wait()
    except TimeoutError:
        if process is not None:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        return CommandResult(
            command=command,
            exit_code=124,
            output=f"Command timed out after {timeout}s",
        )
    except OSError as e:
        return CommandResult(command=command, exit_code=127, output=f"Failed to execute: {e}")
    except asyncio.CancelledError:
        # Ensure subprocess is terminated on cancellation
        if process is not None:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        raise

    stdout_text = stdout_bytes.decode("utf-8", errors="replace")
    stderr_text = stderr_bytes.decode("utf-8", errors="replace")

    output_parts = []
    if stdout_text:
        output_parts.append(stdout_text)
    if stderr_text:
        output_parts.append(f"[stderr]\n{stderr_text}")
    output = "\n".join(output_parts)

    if len(output) > MAX_OUTPUT_CHARS:
        output = output[:MAX_OUTPUT_CHARS] + "\n... (output truncated)"

    return CommandResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        output=output,
    )
