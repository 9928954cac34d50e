from __future__ import annotations

import logging

from anvil.models.base import Message
from anvil.models.request_diagnostics import (
    collect_request_diagnostics,
    log_request_diagnostics,
    response_format_mode,
)


def test_collect_request_diagnostics_counts_roles() -> None:
    messages = [
        Message.system("System rules"),
        Message.user("Plan the login form."),
        Message.assistant("ok"),
    ]

    diag = collect_request_diagnostics(
        messages=messages,
        response_format={"type": "json_object"},
    )

    assert diag.message_count == 3
    assert diag.system_chars == len("System rules")
    assert diag.user_chars == len("Plan the login form.")
    assert diag.assistant_chars == 2
    assert diag.largest_message_chars == len("Plan the login form.")
    assert diag.request_bytes > 0
    assert diag.request_est_tokens >= 1
    assert diag.response_format == "json_object"
    assert diag.is_large is False


def test_response_format_mode_labels() -> None:
    assert response_format_mode(None) == "none"
    assert response_format_mode({"type": "json_schema", "json_schema": {}}) == "json_schema"
    assert response_format_mode({"other": 1}) == "unknown"


def test_large_request_logged_at_info(caplog) -> None:
    big = Message.user("x" * 250_000)
    diag = collect_request_diagnostics(messages=[big])
    logger = logging.getLogger("test.diagnostics")

    with caplog.at_level(logging.DEBUG, logger="test.diagnostics"):
        log_request_diagnostics(
            logger=logger,
            provider_name="default",
            model_name="m",
            operation="complete",
            diagnostics=diag,
        )

    assert diag.is_large is True
    record = caplog.records[-1]
    assert record.levelno == logging.INFO
    assert "llm_request provider=default model=m op=complete format=none" in record.getMessage()
