"""Policy decision engine for the AI governance core.

Decides, for a single AI request, which model may actually serve it. The
inputs are the runtime mode, the requested model, the sensitivity of the
legal matter, the classification of the payload, and the redaction state.
The output is an ALLOW/DENY decision, possibly substituting another model,
plus the remediation steps the caller must satisfy.

Rules are evaluated in order and the first decisive rule wins:
1. Unknown model -> fallback model, or deny
2. Restricted offline mode -> only models that need no internet
3. Model missing its credential -> fallback model, or deny
4. Privileged/sealed matters never reach an external API
5. Raw payloads to non-unrestricted external models need redaction;
   failed redaction is a hard deny
6. PII-heavy matters need a PII wash unless the payload is sanitized

The engine reads the model registry but records nothing; the gateway is
responsible for auditing every decision.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ai_governance.registry import (
    Capability,
    DataPolicy,
    ModelCatalogEntry,
    ModelRegistry,
    ProviderType,
)

_logger = logging.getLogger("ai_governance")


class RuntimeMode(str, Enum):
    """Global switch between external APIs allowed and local-only operation."""

    ONLINE = "online"
    RESTRICTED_OFFLINE = "restricted_offline"


class CaseSensitivity(str, Enum):
    """Classification of the legal matter the request belongs to."""

    PRIVILEGED = "privileged"
    SEALED = "sealed"
    PII_HEAVY = "pii_heavy"
    CONFIDENTIAL = "confidential"
    STANDARD = "standard"


class PayloadClassification(str, Enum):
    """Sensitivity of the content sent in this particular call."""

    RAW = "raw"
    DERIVED = "derived"
    SANITIZED = "sanitized"
    PUBLIC = "public"


class RedactionStatus(str, Enum):
    """State of the redaction pass over a raw payload."""

    NOT_RUN = "not_run"
    PASSED = "passed"
    FAILED = "failed"


REDACT = "redact"
SANITIZE = "sanitize"
PII_WASH = "pii_wash"

PROTECTED_CASES = frozenset({CaseSensitivity.PRIVILEGED, CaseSensitivity.SEALED})


@dataclass(frozen=True)
class PolicyRequest:
    """Everything the engine needs to decide on a single AI call."""

    mode: RuntimeMode
    requested_model_id: str
    case_sensitivity: CaseSensitivity = CaseSensitivity.STANDARD
    payload_classification: PayloadClassification = PayloadClassification.DERIVED
    redaction_status: Optional[RedactionStatus] = None
    user_id: Optional[str] = None
    matter_id: Optional[str] = None
    caller: Optional[str] = None
    required_capability: Capability = Capability.CHAT

    def __post_init__(self) -> None:
        # Accept plain strings from API payloads; unknown values raise ValueError.
        object.__setattr__(self, "mode", RuntimeMode(self.mode))
        object.__setattr__(self, "required_capability", Capability(self.required_capability))
        object.__setattr__(
            self,
            "case_sensitivity",
            CaseSensitivity(self.case_sensitivity or CaseSensitivity.STANDARD),
        )
        object.__setattr__(
            self,
            "payload_classification",
            PayloadClassification(self.payload_classification or PayloadClassification.DERIVED),
        )
        if self.redaction_status is not None:
            object.__setattr__(self, "redaction_status", RedactionStatus(self.redaction_status))


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of evaluating a PolicyRequest."""

    allowed: bool
    effective_model_id: str
    effective_provider: str
    reason: str
    original_model_id: str
    was_fallback: bool = False
    required_steps: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["required_steps"] = list(self.required_steps)
        return data


class PolicyEngine:
    """Evaluates policy requests against the model registry.

    evaluate() is a pure function of its input and the registry contents:
    calling it twice with the same request yields equal decisions.
    """

    def __init__(self, registry: ModelRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    def evaluate(self, request: PolicyRequest) -> PolicyDecision:
        """Decide whether and where a request may be dispatched.

        Fallback candidates must support the request's required capability
        and are restricted to local models whenever the mode is offline or
        the matter is privileged/sealed. A substituted external model still
        goes through the sensitivity gates below.

        Args:
            request: The request to evaluate.

        Returns:
            A PolicyDecision. When ``allowed`` is False the caller must not
            dispatch to any model.
        """
        requested = request.requested_model_id
        offline = request.mode == RuntimeMode.RESTRICTED_OFFLINE
        protected = request.case_sensitivity in PROTECTED_CASES
        capability = request.required_capability
        notes: List[str] = []
        was_fallback = False

        # 1. Unknown model
        model = self._registry.lookup(requested)
        if model is None:
            fallback = self._registry.preferred_local_fallback(
                local_only=offline or protected, capability=capability
            )
            if fallback is None:
                return self._deny(
                    request,
                    provider="",
                    reason='Model "{}" not found in registry. No fallback available.'.format(
                        requested
                    ),
                )
            notes.append(
                'Model "{}" not found in registry. Using fallback: {}.'.format(
                    requested, fallback.display_name
                )
            )
            model, was_fallback = fallback, True

        # 2. Restricted offline mode
        if offline:
            if model.requires_internet:
                fallback = self._registry.preferred_local_fallback(
                    local_only=True, capability=capability
                )
                if fallback is None:
                    return self._deny(
                        request,
                        provider=model.provider,
                        reason=(
                            "Restricted offline mode active. No offline model available. "
                            "Cannot process request."
                        ),
                    )
                return self._allow(
                    request,
                    fallback,
                    was_fallback=True,
                    reason=(
                        "Restricted offline mode active. {} requires internet. "
                        "Using local model: {}.".format(model.display_name, fallback.display_name)
                    ),
                )
            notes.append("Restricted offline mode active. Local model approved.")
            return self._allow(request, model, was_fallback=was_fallback, reason=" ".join(notes))

        # 3. Missing credential (fallbacks are available by construction)
        if not model.available:
            fallback = self._registry.preferred_local_fallback(
                local_only=protected, capability=capability
            )
            if fallback is None:
                return self._deny(
                    request,
                    provider=model.provider,
                    reason="{} not available (missing credential). No fallback available.".format(
                        model.display_name
                    ),
                )
            notes.append(
                "{} not available (missing credential). Using fallback: {}.".format(
                    model.display_name, fallback.display_name
                )
            )
            model, was_fallback = fallback, True

        required_steps: List[str] = []
        if model.provider_type == ProviderType.EXTERNAL_API:
            raw = request.payload_classification == PayloadClassification.RAW

            # 4. Case sensitivity gate
            if protected:
                case = request.case_sensitivity.value
                fallback = self._registry.preferred_local_fallback(
                    local_only=True, capability=capability
                )
                if fallback is not None:
                    return self._allow(
                        request,
                        fallback,
                        was_fallback=True,
                        reason=" ".join(
                            notes
                            + [
                                "Case is {}. External models blocked. Using local: {}.".format(
                                    case, fallback.display_name
                                )
                            ]
                        ),
                    )
                return self._deny(
                    request,
                    provider=model.provider,
                    steps=(REDACT, SANITIZE) if raw else (),
                    reason=(
                        "Case is {}. External models blocked and no local models "
                        "available. Cannot process request.".format(case)
                    ),
                )

            # 5. Payload gate
            if raw and model.data_policy != DataPolicy.UNRESTRICTED:
                if request.redaction_status == RedactionStatus.FAILED:
                    return self._deny(
                        request,
                        provider=model.provider,
                        steps=(REDACT,),
                        reason=(
                            "Redaction failed. Cannot transmit raw data externally. "
                            "Fix redaction or switch to a local model."
                        ),
                    )
                if request.redaction_status in (None, RedactionStatus.NOT_RUN):
                    required_steps.append(REDACT)

            # 6. PII-heavy matters
            if (
                request.case_sensitivity == CaseSensitivity.PII_HEAVY
                and request.payload_classification != PayloadClassification.SANITIZED
            ):
                required_steps.append(PII_WASH)

        # 7. Allow
        if required_steps:
            notes.append(
                "Approved with conditions: {} required before processing.".format(
                    ", ".join(required_steps)
                )
            )
        elif not was_fallback:
            notes.append("Approved. Model and policy compatible.")
        return self._allow(
            request,
            model,
            was_fallback=was_fallback,
            steps=tuple(required_steps),
            reason=" ".join(notes),
        )

    @staticmethod
    def _allow(
        request: PolicyRequest,
        model: ModelCatalogEntry,
        was_fallback: bool,
        reason: str,
        steps: Tuple[str, ...] = (),
    ) -> PolicyDecision:
        return PolicyDecision(
            allowed=True,
            effective_model_id=model.model_id,
            effective_provider=model.provider,
            reason=reason,
            original_model_id=request.requested_model_id,
            was_fallback=was_fallback,
            required_steps=steps,
        )

    @staticmethod
    def _deny(
        request: PolicyRequest,
        provider: str,
        reason: str,
        steps: Tuple[str, ...] = (),
    ) -> PolicyDecision:
        return PolicyDecision(
            allowed=False,
            effective_model_id=request.requested_model_id,
            effective_provider=provider,
            reason=reason,
            original_model_id=request.requested_model_id,
            was_fallback=False,
            required_steps=steps,
        )


class RuntimeState:
    """Runtime mode and selected model, shared by the gateway and the API.

    Thread-safe. Inject one instance per application (or per test) instead
    of relying on process-wide globals.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        mode: RuntimeMode = RuntimeMode.ONLINE,
        selected_model_id: str = "claude-sonnet-4-5",
    ) -> None:
        self._registry = registry
        self._lock = threading.Lock()
        self._mode = RuntimeMode(mode)
        self._selected_model_id = registry.resolve_model_id(selected_model_id)

    def get_mode(self) -> RuntimeMode:
        with self._lock:
            return self._mode

    def set_mode(self, mode: RuntimeMode) -> RuntimeMode:
        """Switch the runtime mode and return the previous one."""
        new_mode = RuntimeMode(mode)
        with self._lock:
            previous = self._mode
            self._mode = new_mode
        _logger.info("Runtime mode changed: %s -> %s", previous.value, new_mode.value)
        return previous

    def get_selected_model(self) -> str:
        with self._lock:
            return self._selected_model_id

    def set_selected_model(self, model_id: str) -> str:
        """Select a model (legacy aliases are resolved) and return its id."""
        resolved = self._registry.resolve_model_id(model_id)
        with self._lock:
            self._selected_model_id = resolved
        _logger.info("Selected model changed to: %s", resolved)
        return resolved

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            mode, selected = self._mode, self._selected_model_id
        return {
            "mode": mode.value,
            "selected_model_id": selected,
            "mode_label": (
                "RESTRICTED OFFLINE (PRIVATE)"
                if mode == RuntimeMode.RESTRICTED_OFFLINE
                else "ONLINE"
            ),
        }
