"""Bounded threadpool for blocking local IO (memory file, project scans, reads)."""

from __future__ import annotations

import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any

_MAX_WORKERS = max(2, min(8, os.cpu_count() or 2))
_executor: ThreadPoolExecutor | None = None


def _io_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=_MAX_WORKERS, thread_name_prefix="anvil-io")
    return _executor


async def run_blocking_io(fn: Any, /, *args: Any, **kwargs: Any) -> Any:
    """Run ``fn(*args, **kwargs)`` on the shared IO pool and await its result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_io_executor(), partial(fn, *args, **kwargs))


def shutdown_blocking_io() -> None:
    """Stop the IO pool; a later call to run_blocking_io starts a fresh one."""
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=True)
        _executor = None
