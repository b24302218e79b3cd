"""Provider routing and streaming gateway.

Every AI request passes through here:
1. Evaluate the policy decision and record it in the audit log
2. Refuse denied requests (error chunk for streams, PolicyDeniedError otherwise)
3. Substitute the effective model/provider when the engine fell back
4. Start an operation tracker record
5. Dispatch to the adapter registered for the effective provider
6. Forward chunks as they arrive while accumulating the output
7. Complete the tracker record as success or error

Streaming calls never raise across the generator boundary: adapter
failures, configuration errors and unknown providers become a single error
chunk, and every stream ends with exactly one done chunk. No retries are
performed here.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from ai_governance.audit import PolicyAuditLog
from ai_governance.models import (
    ChatMessage,
    DispatchConfig,
    ImageSource,
    MessageContent,
    StreamChunk,
    messages_text,
)
from ai_governance.policy import (
    CaseSensitivity,
    PayloadClassification,
    PolicyDecision,
    PolicyEngine,
    PolicyRequest,
    RedactionStatus,
    RuntimeMode,
    RuntimeState,
)
from ai_governance.provider import ProviderAdapter
from ai_governance.registry import Capability, ModelRegistry
from ai_governance.router import RoutingError, resolve_route
from ai_governance.telemetry import log_dispatch
from ai_governance.tracker import OperationHandle, OperationStatus, OperationTracker

_logger = logging.getLogger("ai_governance")

CANCELLED_MESSAGE = "Stream cancelled by caller"


class PolicyDeniedError(Exception):
    """Raised by non-streaming calls when the policy engine refuses dispatch."""

    def __init__(self, decision: PolicyDecision) -> None:
        self.decision = decision
        super().__init__("Policy denied: {}".format(decision.reason))


@dataclass(frozen=True)
class DispatchContext:
    """Per-call policy inputs. ``mode`` overrides the shared runtime mode."""

    mode: Optional[RuntimeMode] = None
    case_sensitivity: Optional[CaseSensitivity] = None
    payload_classification: Optional[PayloadClassification] = None
    redaction_status: Optional[RedactionStatus] = None
    user_id: Optional[str] = None
    matter_id: Optional[str] = None

    def __post_init__(self) -> None:
        # Validate eagerly so bad values fail before a stream is opened.
        for name, enum_cls in (
            ("mode", RuntimeMode),
            ("case_sensitivity", CaseSensitivity),
            ("payload_classification", PayloadClassification),
            ("redaction_status", RedactionStatus),
        ):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, enum_cls(value))


class Gateway:
    """Policy-gated dispatcher over the registered provider adapters."""

    def __init__(
        self,
        engine: PolicyEngine,
        audit_log: PolicyAuditLog,
        tracker: OperationTracker,
        adapters: Mapping[str, ProviderAdapter],
        state: RuntimeState,
    ) -> None:
        self._engine = engine
        self._audit = audit_log
        self._tracker = tracker
        self._adapters = dict(adapters)
        self._state = state

    @property
    def registry(self) -> ModelRegistry:
        return self._engine.registry

    def authorize(
        self,
        model_id: str,
        caller: str,
        context: Optional[DispatchContext] = None,
        capability: Capability = Capability.CHAT,
    ) -> Tuple[PolicyRequest, PolicyDecision]:
        """Evaluate and audit a request without dispatching it.

        ``capability`` is what any substituted model must support.
        """
        context = context or DispatchContext()
        request = PolicyRequest(
            mode=context.mode or self._state.get_mode(),
            requested_model_id=model_id,
            case_sensitivity=context.case_sensitivity,
            payload_classification=context.payload_classification,
            redaction_status=context.redaction_status,
            user_id=context.user_id,
            matter_id=context.matter_id,
            caller=caller,
            required_capability=capability,
        )
        decision = self._engine.evaluate(request)
        self._audit.record(request, decision)
        if decision.allowed and decision.was_fallback:
            _logger.info(
                "Model fallback for %s: %s -> %s (%s)",
                caller,
                decision.original_model_id,
                decision.effective_model_id,
                decision.reason,
            )
        return request, decision

    async def dispatch_stream(
        self,
        messages: List[ChatMessage],
        config: DispatchConfig,
        caller: str,
        context: Optional[DispatchContext] = None,
        operation: str = "stream_chat",
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat reply as uniform chunks.

        Yields content chunks in the order the adapter produced them, at
        most one error chunk, and always a final done chunk. Closing the
        generator early closes the upstream adapter stream and records the
        operation as cancelled.
        """
        _, decision = self.authorize(config.model, caller, context)
        if not decision.allowed:
            self._log_denied(caller, operation, decision)
            yield StreamChunk(error="Policy denied: {}".format(decision.reason))
            yield StreamChunk(done=True)
            return

        handle = self._start(decision, operation, messages_text(messages), caller)
        output: List[str] = []
        error: Optional[str] = None
        upstream: Optional[AsyncIterator[StreamChunk]] = None
        try:
            route = resolve_route(self._adapters, decision, config)
            upstream = route.adapter.stream_chat(messages, route.config)
            async for chunk in upstream:
                if chunk.error is not None:
                    error = chunk.error
                    yield StreamChunk(error=chunk.error)
                    break
                if chunk.done:
                    break
                if chunk.content:
                    output.append(chunk.content)
                    yield StreamChunk(content=chunk.content)
        except (GeneratorExit, asyncio.CancelledError):
            error = CANCELLED_MESSAGE
            raise
        except Exception as exc:
            error = _describe(exc)
            yield StreamChunk(error=error)
        finally:
            if upstream is not None:
                aclose = getattr(upstream, "aclose", None)
                if aclose is not None:
                    await aclose()
            self._finish(handle, decision, caller, operation, "".join(output), error)

        yield StreamChunk(done=True)

    async def dispatch_once(
        self,
        messages: List[ChatMessage],
        config: DispatchConfig,
        caller: str,
        context: Optional[DispatchContext] = None,
        operation: str = "chat_completion",
    ) -> str:
        """Return a complete chat reply.

        Raises:
            PolicyDeniedError: If the policy engine refused the request.
            RoutingError: If no adapter serves the effective provider.
            ConfigurationError: If the provider's credential is missing.
            AdapterError: If the vendor call failed.
        """
        text, _ = await self.dispatch_with_decision(messages, config, caller, context, operation)
        return text

    async def dispatch_with_decision(
        self,
        messages: List[ChatMessage],
        config: DispatchConfig,
        caller: str,
        context: Optional[DispatchContext] = None,
        operation: str = "chat_completion",
    ) -> Tuple[str, PolicyDecision]:
        """Like dispatch_once, but also return the decision that was applied."""
        decision = self._authorize_or_raise(config.model, caller, context, operation)
        text = await self._complete(messages, config, decision, caller, operation)
        return text, decision

    async def analyze_vision(
        self,
        image_base64: str,
        media_type: str,
        prompt: str,
        config: DispatchConfig,
        caller: str,
        context: Optional[DispatchContext] = None,
        operation: str = "vision_analysis",
    ) -> str:
        """Single-shot image analysis, restricted to vision-capable models.

        Fallbacks only ever substitute a model that can read images.

        Raises:
            PolicyDeniedError: If the policy engine refused the request.
            RoutingError: If the directly requested model cannot read images
                or no adapter serves its provider.
            ConfigurationError: If the provider's credential is missing.
            AdapterError: If the vendor call failed.
        """
        text, _ = await self.analyze_vision_with_decision(
            image_base64, media_type, prompt, config, caller, context, operation
        )
        return text

    async def analyze_vision_with_decision(
        self,
        image_base64: str,
        media_type: str,
        prompt: str,
        config: DispatchConfig,
        caller: str,
        context: Optional[DispatchContext] = None,
        operation: str = "vision_analysis",
    ) -> Tuple[str, PolicyDecision]:
        decision = self._authorize_or_raise(
            config.model, caller, context, operation, capability=Capability.VISION
        )

        model = self.registry.lookup(decision.effective_model_id)
        if model is None or not model.supports(Capability.VISION):
            reason = "Model '{}' does not support vision".format(decision.effective_model_id)
            log_dispatch(
                caller=caller,
                operation=operation,
                requested_model=decision.original_model_id,
                effective_model=decision.effective_model_id,
                provider=decision.effective_provider,
                outcome="error",
                was_fallback=decision.was_fallback,
                error=reason,
            )
            raise RoutingError(decision.effective_provider, reason)

        messages = [
            ChatMessage(
                role="user",
                content=[
                    MessageContent(
                        type="image",
                        source=ImageSource(media_type=media_type or "image/png", data=image_base64),
                    ),
                    MessageContent(type="text", text=prompt),
                ],
            )
        ]
        text = await self._complete(
            messages,
            config,
            decision,
            caller,
            operation,
            extra_metadata={"media_type": media_type, "image_chars": len(image_base64)},
        )
        return text, decision

    def _authorize_or_raise(
        self,
        model_id: str,
        caller: str,
        context: Optional[DispatchContext],
        operation: str,
        capability: Capability = Capability.CHAT,
    ) -> PolicyDecision:
        _, decision = self.authorize(model_id, caller, context, capability)
        if not decision.allowed:
            self._log_denied(caller, operation, decision)
            raise PolicyDeniedError(decision)
        return decision

    async def _complete(
        self,
        messages: List[ChatMessage],
        config: DispatchConfig,
        decision: PolicyDecision,
        caller: str,
        operation: str,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        handle = self._start(decision, operation, messages_text(messages), caller, extra_metadata)
        try:
            route = resolve_route(self._adapters, decision, config)
            text = await route.adapter.complete_chat(messages, route.config)
        except asyncio.CancelledError:
            self._finish(handle, decision, caller, operation, "", CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            self._finish(handle, decision, caller, operation, "", _describe(exc))
            raise
        self._finish(handle, decision, caller, operation, text, None)
        return text

    def _start(
        self,
        decision: PolicyDecision,
        operation: str,
        input_text: str,
        caller: str,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> OperationHandle:
        metadata: Dict[str, Any] = dict(extra_metadata or {})
        if decision.was_fallback:
            metadata["requested_model"] = decision.original_model_id
            metadata["was_fallback"] = True
        if decision.required_steps:
            metadata["required_steps"] = list(decision.required_steps)
        return self._tracker.start(
            decision.effective_provider,
            decision.effective_model_id,
            operation,
            input_text,
            caller,
            metadata,
        )

    def _finish(
        self,
        handle: OperationHandle,
        decision: PolicyDecision,
        caller: str,
        operation: str,
        output: str,
        error: Optional[str],
    ) -> None:
        status = OperationStatus.ERROR if error is not None else OperationStatus.SUCCESS
        self._tracker.complete(handle.id, handle.start_time, output, status, error)
        log_dispatch(
            caller=caller,
            operation=operation,
            requested_model=decision.original_model_id,
            effective_model=decision.effective_model_id,
            provider=decision.effective_provider,
            outcome=status.value,
            was_fallback=decision.was_fallback,
            error=error,
            op_id=handle.id,
        )

    @staticmethod
    def _log_denied(caller: str, operation: str, decision: PolicyDecision) -> None:
        log_dispatch(
            caller=caller,
            operation=operation,
            requested_model=decision.original_model_id,
            effective_model=None,
            provider=None,
            outcome="policy_denied",
            error=decision.reason,
        )


def _describe(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__
