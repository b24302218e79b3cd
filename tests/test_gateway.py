"""Tests for the policy-gated gateway.

Covers:
- Streaming: chunk order, single terminal done, error conversion
- Denials surface as error chunks or PolicyDeniedError, never dispatch
- Transparent model substitution on fallback
- Tracker and audit bookkeeping for every path
- Early cancellation closes the upstream stream
- Vision restricted to vision-capable models
"""

from typing import List

import pytest

from ai_governance.gateway import CANCELLED_MESSAGE, DispatchContext, PolicyDeniedError
from ai_governance.models import DispatchConfig, StreamChunk
from ai_governance.policy import CaseSensitivity, PayloadClassification, RedactionStatus, RuntimeMode
from ai_governance.provider import AdapterError, ConfigurationError
from ai_governance.router import RoutingError
from ai_governance.tracker import OperationStatus


async def _collect(stream) -> List[StreamChunk]:
    return [chunk async for chunk in stream]


CLAUDE = DispatchConfig(provider="anthropic", model="claude-sonnet-4-5")


class TestDispatchStream:
    """Streaming dispatch."""

    @pytest.mark.asyncio
    async def test_happy_path(self, make_harness, user_messages) -> None:
        harness = make_harness()
        chunks = await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test"))

        assert [c.content for c in chunks[:-1]] == ["Hello", ", ", "world"]
        assert chunks[-1] == StreamChunk(done=True)
        assert sum(1 for c in chunks if c.done) == 1

        record = harness.tracker.query(1)[0]
        assert record.status == OperationStatus.SUCCESS
        assert record.operation == "stream_chat"
        assert record.model == "claude-sonnet-4-5"
        assert record.output_tokens_est == 3  # "Hello, world" is 12 chars
        assert harness.audit.query(1)[0].allowed is True

    @pytest.mark.asyncio
    async def test_adapter_throws_after_two_chunks(
        self, make_harness, fake_adapter, user_messages
    ) -> None:
        adapters = {"anthropic": fake_adapter("anthropic", fail_after=2)}
        harness = make_harness(available=("anthropic",), adapters=adapters)
        chunks = await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test"))

        assert len(chunks) == 4
        assert [c.content for c in chunks[:2]] == ["Hello", ", "]
        assert chunks[2].error == "upstream exploded"
        assert chunks[3] == StreamChunk(done=True)

        record = harness.tracker.query(1)[0]
        assert record.status == OperationStatus.ERROR
        assert record.error_message == "upstream exploded"
        assert record.output_tokens_est == 2

    @pytest.mark.asyncio
    async def test_adapter_error_chunk_forwarded(
        self, make_harness, fake_adapter, user_messages
    ) -> None:
        adapters = {"anthropic": fake_adapter("anthropic", error_chunk="overloaded")}
        harness = make_harness(available=("anthropic",), adapters=adapters)
        chunks = await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test"))

        assert [c.error for c in chunks if c.error] == ["overloaded"]
        assert chunks[-1].done is True
        assert sum(1 for c in chunks if c.done) == 1
        assert harness.tracker.query(1)[0].status == OperationStatus.ERROR

    @pytest.mark.asyncio
    async def test_configuration_error_becomes_chunk(
        self, make_harness, fake_adapter, user_messages
    ) -> None:
        failing = fake_adapter(
            "anthropic", fail_after=0, exc=ConfigurationError("anthropic", "set the key")
        )
        harness = make_harness(available=("anthropic",), adapters={"anthropic": failing})
        chunks = await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test"))

        assert chunks == [StreamChunk(error="set the key"), StreamChunk(done=True)]

    @pytest.mark.asyncio
    async def test_unknown_provider_becomes_chunk(self, make_harness, user_messages) -> None:
        harness = make_harness(available=("anthropic",), adapters={})
        chunks = await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test"))

        assert len(chunks) == 2
        assert "No adapter registered" in chunks[0].error
        assert chunks[1].done is True
        assert harness.tracker.query(1)[0].status == OperationStatus.ERROR

    @pytest.mark.asyncio
    async def test_denied_request_never_dispatches(
        self, make_harness, user_messages
    ) -> None:
        harness = make_harness(available=("anthropic",))
        context = DispatchContext(
            payload_classification=PayloadClassification.RAW,
            redaction_status=RedactionStatus.FAILED,
        )
        chunks = await _collect(
            harness.gateway.dispatch_stream(user_messages, CLAUDE, "test", context)
        )

        assert len(chunks) == 2
        assert chunks[0].error.startswith("Policy denied: Redaction failed")
        assert chunks[1].done is True
        assert harness.adapters["anthropic"].calls == []
        assert len(harness.tracker) == 0
        assert harness.audit.query(1)[0].allowed is False

    @pytest.mark.asyncio
    async def test_fallback_substitution(self, make_harness, user_messages) -> None:
        harness = make_harness(available=("anthropic", "synseekr"))
        context = DispatchContext(case_sensitivity=CaseSensitivity.PRIVILEGED)
        chunks = await _collect(
            harness.gateway.dispatch_stream(user_messages, CLAUDE, "test", context)
        )

        assert chunks[-1].done is True
        assert harness.adapters["anthropic"].calls == []
        sent = harness.adapters["synseekr"].calls[0]
        assert sent.model == "synseekr-qwen2.5-7b"
        assert sent.provider == "synseekr"
        assert CLAUDE.model == "claude-sonnet-4-5"

        record = harness.tracker.query(1)[0]
        assert record.model == "synseekr-qwen2.5-7b"
        assert record.metadata["requested_model"] == "claude-sonnet-4-5"
        assert record.metadata["was_fallback"] is True
        assert harness.audit.query(1)[0].was_fallback is True

    @pytest.mark.asyncio
    async def test_runtime_offline_mode_applies(self, make_harness, user_messages) -> None:
        harness = make_harness(mode=RuntimeMode.RESTRICTED_OFFLINE)
        await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test"))
        assert harness.adapters["anthropic"].calls == []
        assert len(harness.adapters["synseekr"].calls) == 1

    @pytest.mark.asyncio
    async def test_context_mode_overrides_state(self, make_harness, user_messages) -> None:
        harness = make_harness()
        context = DispatchContext(mode=RuntimeMode.RESTRICTED_OFFLINE)
        await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test", context))
        assert len(harness.adapters["synseekr"].calls) == 1
        assert harness.state.get_mode() == RuntimeMode.ONLINE

    @pytest.mark.asyncio
    async def test_required_steps_recorded(self, make_harness, user_messages) -> None:
        harness = make_harness()
        context = DispatchContext(case_sensitivity=CaseSensitivity.PII_HEAVY)
        await _collect(harness.gateway.dispatch_stream(user_messages, CLAUDE, "test", context))
        assert harness.tracker.query(1)[0].metadata["required_steps"] == ["pii_wash"]

    @pytest.mark.asyncio
    async def test_early_close_cancels_upstream(
        self, make_harness, fake_adapter, user_messages
    ) -> None:
        adapters = {"anthropic": fake_adapter("anthropic", chunks=["a", "b", "c", "d"])}
        harness = make_harness(available=("anthropic",), adapters=adapters)
        stream = harness.gateway.dispatch_stream(user_messages, CLAUDE, "test")

        first = await stream.__anext__()
        assert first.content == "a"
        await stream.aclose()

        assert adapters["anthropic"].cancelled is True
        record = harness.tracker.query(1)[0]
        assert record.status == OperationStatus.ERROR
        assert record.error_message == CANCELLED_MESSAGE
        assert record.output_tokens_est == 1


class TestDispatchOnce:
    """Non-streaming dispatch."""

    @pytest.mark.asyncio
    async def test_returns_text(self, make_harness, user_messages) -> None:
        harness = make_harness()
        text = await harness.gateway.dispatch_once(user_messages, CLAUDE, "test")
        assert text == "complete reply"
        record = harness.tracker.query(1)[0]
        assert record.operation == "chat_completion"
        assert record.status == OperationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_denial_raises_with_decision(self, make_harness, user_messages) -> None:
        harness = make_harness(available=("anthropic",))
        context = DispatchContext(case_sensitivity=CaseSensitivity.SEALED)
        with pytest.raises(PolicyDeniedError) as exc_info:
            await harness.gateway.dispatch_once(user_messages, CLAUDE, "test", context)

        decision = exc_info.value.decision
        assert decision.allowed is False
        assert "sealed" in decision.reason
        assert harness.adapters["anthropic"].calls == []
        assert len(harness.tracker) == 0

    @pytest.mark.asyncio
    async def test_adapter_error_rethrown_and_tracked(
        self, make_harness, fake_adapter, user_messages
    ) -> None:
        failing = fake_adapter("anthropic", exc=AdapterError("anthropic", "Provider returned HTTP 500", 500))
        harness = make_harness(available=("anthropic",), adapters={"anthropic": failing})
        with pytest.raises(AdapterError):
            await harness.gateway.dispatch_once(user_messages, CLAUDE, "test")

        record = harness.tracker.query(1)[0]
        assert record.status == OperationStatus.ERROR
        assert record.error_message == "Provider returned HTTP 500"

    @pytest.mark.asyncio
    async def test_unknown_provider_raises_routing_error(
        self, make_harness, user_messages
    ) -> None:
        harness = make_harness(available=("anthropic",), adapters={})
        with pytest.raises(RoutingError):
            await harness.gateway.dispatch_once(user_messages, CLAUDE, "test")
        assert harness.tracker.query(1)[0].status == OperationStatus.ERROR

    @pytest.mark.asyncio
    async def test_with_decision_reports_substitution(self, make_harness, user_messages) -> None:
        harness = make_harness(available=("synseekr",))
        text, decision = await harness.gateway.dispatch_with_decision(
            user_messages, DispatchConfig(model="gpt-4o"), "test"
        )
        assert text == "complete reply"
        assert decision.was_fallback is True
        assert decision.effective_model_id == "synseekr-qwen2.5-7b"


class TestAnalyzeVision:
    """Single-shot vision analysis."""

    @pytest.mark.asyncio
    async def test_sends_image_and_prompt(self, make_harness) -> None:
        harness = make_harness()
        text = await harness.gateway.analyze_vision(
            "QUJD", "image/jpeg", "Describe the exhibit.", CLAUDE, "test"
        )
        assert text == "complete reply"

        message = harness.adapters["anthropic"].messages[0][0]
        assert message.content[0].type == "image"
        assert message.content[0].source.media_type == "image/jpeg"
        assert message.content[1].text == "Describe the exhibit."

        record = harness.tracker.query(1)[0]
        assert record.operation == "vision_analysis"
        assert record.metadata["media_type"] == "image/jpeg"
        assert record.input_tokens_est == 6

    @pytest.mark.asyncio
    async def test_fallback_picks_vision_capable_model(self, make_harness) -> None:
        """An unavailable vision model is replaced by one that can read images."""
        harness = make_harness(available=("openai", "synseekr"))
        text, decision = await harness.gateway.analyze_vision_with_decision(
            "QUJD", "image/png", "Describe.", CLAUDE, "test"
        )

        assert text == "complete reply"
        assert decision.was_fallback is True
        assert decision.effective_model_id == "gpt-5.2"
        assert harness.adapters["openai"].calls[0].model == "gpt-5.2"
        assert harness.adapters["synseekr"].calls == []
        assert harness.audit.query(1)[0].effective_model_id == "gpt-5.2"

    @pytest.mark.asyncio
    async def test_chat_fallback_still_prefers_local(self, make_harness, user_messages) -> None:
        harness = make_harness(available=("openai", "synseekr"))
        _, decision = await harness.gateway.dispatch_with_decision(user_messages, CLAUDE, "test")
        assert decision.effective_model_id == "synseekr-qwen2.5-7b"

    @pytest.mark.asyncio
    async def test_protected_case_without_local_vision_model_denied(self, make_harness) -> None:
        harness = make_harness(available=("anthropic", "synseekr"))
        context = DispatchContext(case_sensitivity=CaseSensitivity.PRIVILEGED)
        with pytest.raises(PolicyDeniedError):
            await harness.gateway.analyze_vision(
                "QUJD", "image/png", "Describe.", CLAUDE, "test", context
            )
        assert harness.adapters["synseekr"].calls == []
        assert harness.adapters["anthropic"].calls == []

    @pytest.mark.asyncio
    async def test_requested_non_vision_model_rejected(self, make_harness) -> None:
        harness = make_harness(available=("deepseek",))
        config = DispatchConfig(provider="deepseek", model="deepseek-chat")
        with pytest.raises(RoutingError, match="does not support vision"):
            await harness.gateway.analyze_vision("QUJD", "image/png", "Describe.", config, "test")
        assert harness.adapters["deepseek"].calls == []
        assert len(harness.tracker) == 0

    @pytest.mark.asyncio
    async def test_denied(self, make_harness) -> None:
        harness = make_harness(available=())
        with pytest.raises(PolicyDeniedError):
            await harness.gateway.analyze_vision("QUJD", "image/png", "Describe.", CLAUDE, "test")


class TestDispatchContext:
    def test_strings_coerced(self) -> None:
        context = DispatchContext(mode="restricted_offline", case_sensitivity="sealed")
        assert context.mode == RuntimeMode.RESTRICTED_OFFLINE
        assert context.case_sensitivity == CaseSensitivity.SEALED

    def test_invalid_value(self) -> None:
        with pytest.raises(ValueError):
            DispatchContext(payload_classification="top-secret")
