"""Tests for structured-output capability negotiation."""

from __future__ import annotations

import pytest

from anvil.models.base import Message, ModelConnectionError
from anvil.models.capabilities import (
    CapabilitySession,
    CapabilityState,
    NegotiatingRequester,
    build_response_format,
    is_capability_rejection,
)
from tests.fakes import FakeProvider

SCHEMA = {"type": "object"}
MESSAGES = [Message.user("go")]


def _rejection(field: str = "response_format") -> ModelConnectionError:
    body = f'{{"detail": "{field} is not supported by this server"}}'
    return ModelConnectionError(
        f"Model server returned HTTP 400: {body}", status_code=400, body=body,
    )


class TestIsCapabilityRejection:
    def test_format_term_with_rejection_vocabulary(self):
        assert is_capability_rejection(_rejection()) is True
        assert is_capability_rejection(_rejection("json_schema")) is True

    def test_pydantic_extra_inputs_message(self):
        err = ModelConnectionError(
            "HTTP 422", status_code=422,
            body='{"msg": "Extra inputs are not permitted", "loc": ["body", "response_format"]}',
        )
        assert is_capability_rejection(err) is True

    def test_connection_failure_never_counts(self):
        err = ModelConnectionError("Cannot connect: response_format unsupported")
        assert is_capability_rejection(err) is False

    def test_unrelated_http_error(self):
        err = ModelConnectionError("HTTP 500: internal error", status_code=500, body="internal error")
        assert is_capability_rejection(err) is False

    def test_timeout_is_not_rejection(self):
        assert is_capability_rejection(TimeoutError("timed out")) is False


class TestBuildResponseFormat:
    def test_schema_mode(self):
        fmt = build_response_format(CapabilityState.SCHEMA, SCHEMA, "task_plan")
        assert fmt == {
            "type": "json_schema",
            "json_schema": {"name": "task_plan", "schema": SCHEMA, "strict": False},
        }

    def test_object_and_none(self):
        assert build_response_format(CapabilityState.OBJECT, SCHEMA) == {"type": "json_object"}
        assert build_response_format(CapabilityState.NONE, SCHEMA) is None


class TestCapabilitySession:
    def test_never_moves_back_up(self):
        session = CapabilitySession()
        session.record_rejection(CapabilityState.SCHEMA)
        assert session.state == CapabilityState.OBJECT
        session.record_success(CapabilityState.SCHEMA)
        assert session.state == CapabilityState.OBJECT

    def test_candidate_modes_follow_state(self):
        assert CapabilitySession().candidate_modes()[0] == CapabilityState.SCHEMA
        assert CapabilitySession(CapabilityState.NONE).candidate_modes() == (CapabilityState.NONE,)


class TestNegotiatingRequester:
    @pytest.mark.asyncio
    async def test_first_success_settles_schema_mode(self):
        provider = FakeProvider(['{"a": 1}'])
        session = CapabilitySession()
        response = await NegotiatingRequester(provider, session).exchange(MESSAGES, SCHEMA)

        assert response.text == '{"a": 1}'
        assert session.state == CapabilityState.SCHEMA
        assert provider.calls[0]["response_format"]["type"] == "json_schema"

    @pytest.mark.asyncio
    async def test_schema_rejected_then_object_mode(self):
        provider = FakeProvider([_rejection("json_schema"), '{"a": 1}'])
        session = CapabilitySession()
        await NegotiatingRequester(provider, session).exchange(MESSAGES, SCHEMA)

        assert session.state == CapabilityState.OBJECT
        assert provider.calls[1]["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_both_rejected_settles_on_none(self):
        provider = FakeProvider([_rejection(), _rejection(), '{"a": 1}', '{"b": 2}'])
        session = CapabilitySession()
        requester = NegotiatingRequester(provider, session)
        await requester.exchange(MESSAGES, SCHEMA)
        assert session.state == CapabilityState.NONE
        assert provider.calls[2]["response_format"] is None

        await requester.exchange(MESSAGES, SCHEMA)
        assert len(provider.calls) == 4
        assert provider.calls[3]["response_format"] is None

    @pytest.mark.asyncio
    async def test_shared_session_skips_known_bad_modes(self):
        provider = FakeProvider([_rejection(), '{"a": 1}', '{"b": 2}'])
        session = CapabilitySession()
        await NegotiatingRequester(provider, session).exchange(MESSAGES, SCHEMA)
        await NegotiatingRequester(provider, session).exchange(MESSAGES, SCHEMA)

        assert [c["response_format"] for c in provider.calls[1:]] == [
            {"type": "json_object"},
            {"type": "json_object"},
        ]

    @pytest.mark.asyncio
    async def test_transport_error_leaves_state_alone(self):
        provider = FakeProvider([ModelConnectionError("Cannot connect to model server")])
        session = CapabilitySession()
        with pytest.raises(ModelConnectionError):
            await NegotiatingRequester(provider, session).exchange(MESSAGES, SCHEMA)
        assert session.state == CapabilityState.UNKNOWN

    @pytest.mark.asyncio
    async def test_custom_rejection_predicate(self):
        provider = FakeProvider([RuntimeError("nope"), '{"a": 1}'])
        session = CapabilitySession()
        requester = NegotiatingRequester(provider, session, is_rejection=lambda e: "nope" in str(e))
        await requester.exchange(MESSAGES, SCHEMA)
        assert session.state == CapabilityState.OBJECT
