"""Post-change verification through the structured protocol.

There is no deterministic fallback: exhaustion propagates and the caller
records the verification status as unknown.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from anvil.models.base import Message
from anvil.structured.protocol import StructuredClient
from anvil.structured.schemas import VERIFICATION_SCHEMA

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are verifying whether code changes satisfy the instruction. "
    'Return ONLY valid JSON: {"status":"pass|fail","issues":["..."],"confidence":"low|medium|high"}. '
    'If any requirement is unmet or risky, set status to "fail" and list issues.'
)


@dataclass(frozen=True)
class VerificationResult:
    status: str
    issues: list[str] = field(default_factory=list)
    confidence: str = "low"

    @property
    def passed(self) -> bool:
        return self.status == "pass"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> VerificationResult:
        raw_issues = payload.get("issues")
        issues = [str(i) for i in raw_issues if str(i)] if isinstance(raw_issues, list) else []
        status = "fail" if payload.get("status") == "fail" else "pass"
        confidence = payload.get("confidence")
        if confidence not in ("medium", "high"):
            confidence = "low"
        return cls(status=status, issues=issues, confidence=confidence)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "issues": list(self.issues), "confidence": self.confidence}


def build_verification_messages(
    instruction: str,
    change_summary: str,
    validation_output: str | None = None,
) -> list[Message]:
    validation_block = f"\n\nValidation output:\n{validation_output}" if validation_output else ""
    return [
        Message.system(_SYSTEM_PROMPT),
        Message.user(
            f"Instruction: {instruction}\n\n"
            f"Change summary:\n{change_summary or '(no summary)'}{validation_block}"
        ),
    ]


async def verify_changes(
    client: StructuredClient,
    instruction: str,
    change_summary: str,
    validation_output: str | None = None,
    *,
    cancel: asyncio.Event | None = None,
) -> VerificationResult:
    payload = await client.request(
        build_verification_messages(instruction, change_summary, validation_output),
        VERIFICATION_SCHEMA,
        role="verify",
        name="verification",
        cancel=cancel,
    )
    result = VerificationResult.from_payload(payload)
    logger.info("Verification %s (%s confidence, %d issues)", result.status, result.confidence, len(result.issues))
    return result
