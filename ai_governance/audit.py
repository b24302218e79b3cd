"""Policy audit log for the AI governance core.

Every decision the policy engine makes is appended here for compliance
review, whether the request was allowed or not.

Design principles:
- Append-only: entries are frozen and never edited or removed individually
- Bounded: a fixed-capacity ring buffer evicts the oldest entry first
- Volatile: the log lives in memory and is lost on restart
"""

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

from ai_governance.policy import PolicyDecision, PolicyRequest
from ai_governance.registry import ModelRegistry

DEFAULT_CAPACITY = 500


@dataclass(frozen=True)
class PolicyAuditEntry:
    """A single immutable record of a policy decision."""

    timestamp: str
    mode: str
    requested_model_id: str
    case_sensitivity: str
    payload_classification: str
    redaction_status: Optional[str]
    user_id: Optional[str]
    matter_id: Optional[str]
    caller: Optional[str]
    allowed: bool
    effective_model_id: str
    effective_provider: str
    was_fallback: bool
    reason: str
    external_call_made: bool
    required_steps: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the entry to a dictionary."""
        data = asdict(self)
        data["required_steps"] = list(self.required_steps)
        return data


class PolicyAuditLog:
    """Bounded, append-only log of policy decisions.

    Thread-safe. ``external_call_made`` is derived at record time from the
    registry: the decision was allowed and its effective model needs the
    internet.
    """

    def __init__(self, registry: ModelRegistry, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._registry = registry
        self._lock = threading.Lock()
        self._entries: Deque[PolicyAuditEntry] = deque(maxlen=capacity)

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(self, request: PolicyRequest, decision: PolicyDecision) -> PolicyAuditEntry:
        """Append one entry, evicting the oldest when the log is full.

        Args:
            request: The request that was evaluated.
            decision: The engine's decision for it.

        Returns:
            The appended entry.
        """
        effective = self._registry.lookup(decision.effective_model_id)
        entry = PolicyAuditEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            mode=request.mode.value,
            requested_model_id=decision.original_model_id,
            case_sensitivity=request.case_sensitivity.value,
            payload_classification=request.payload_classification.value,
            redaction_status=(
                request.redaction_status.value if request.redaction_status else None
            ),
            user_id=request.user_id,
            matter_id=request.matter_id,
            caller=request.caller,
            allowed=decision.allowed,
            effective_model_id=decision.effective_model_id,
            effective_provider=decision.effective_provider,
            was_fallback=decision.was_fallback,
            reason=decision.reason,
            external_call_made=bool(
                decision.allowed and effective is not None and effective.requires_internet
            ),
            required_steps=tuple(decision.required_steps),
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def query(self, limit: int = 50) -> List[PolicyAuditEntry]:
        """Return up to ``limit`` most recent entries, newest first."""
        if limit <= 0:
            return []
        with self._lock:
            snapshot = list(self._entries)
        return list(reversed(snapshot[-limit:]))
