"""AI operation tracker: lifecycle telemetry and cost accounting.

Every AI call is recorded in two phases. start() appends a pending
placeholder so in-flight calls are observable immediately; complete() fills
in the output fingerprint, token and cost estimates, latency and status.

Records hold content fingerprints, never the content itself. Token counts
are approximate (four characters per token) and costs are derived from a
per-model rate table expressed in USD per million tokens.
"""

import hashlib
import itertools
import logging
import math
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ai_governance.config import DEFAULT_MODEL_RATES, ModelRate

_logger = logging.getLogger("ai_governance")

DEFAULT_CAPACITY = 500
DEFAULT_RATE = ModelRate(input=1.0, output=3.0)
MAX_ERROR_LENGTH = 300
RECENT_ERRORS = 10

# Masked out of error messages before they are stored (precompiled for performance)
_PII_PATTERNS = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "credit_card": re.compile(r"\b(?:\d[ -]*?){13,19}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
    "phone_us": re.compile(
        r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"
    ),
    "api_key": re.compile(r"\b(?:sk|pk|key)-[A-Za-z0-9_-]{8,}\b"),
}


class OperationStatus(str, Enum):
    """Lifecycle of a tracked operation; records start as pending."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def hash_content(content: str) -> str:
    """Short SHA-256 fingerprint of content, for dedup and debugging.

    Not a cryptographic identity: only the first 16 hex characters are kept.
    Empty content maps to the literal ``"empty"``.
    """
    if not content:
        return "empty"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def sanitize_error(message: Optional[str]) -> Optional[str]:
    """Mask PII-like substrings, collapse whitespace, and truncate."""
    if message is None:
        return None
    cleaned = message
    for name, pattern in _PII_PATTERNS.items():
        cleaned = pattern.sub("[{}]".format(name), cleaned)
    cleaned = " ".join(cleaned.split())
    if len(cleaned) > MAX_ERROR_LENGTH:
        cleaned = cleaned[: MAX_ERROR_LENGTH - 3] + "..."
    return cleaned


@dataclass
class AIOperationRecord:
    """A single tracked AI call."""

    id: str
    timestamp: datetime
    provider: str
    model: str
    operation: str
    input_hash: str
    caller: str
    input_tokens_est: int
    output_hash: str = ""
    output_tokens_est: int = 0
    cost_est_usd: float = 0.0
    latency_ms: int = 0
    status: OperationStatus = OperationStatus.PENDING
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "provider": self.provider,
            "model": self.model,
            "operation": self.operation,
            "input_hash": self.input_hash,
            "output_hash": self.output_hash,
            "input_tokens_est": self.input_tokens_est,
            "output_tokens_est": self.output_tokens_est,
            "cost_est_usd": self.cost_est_usd,
            "latency_ms": self.latency_ms,
            "status": self.status.value,
            "error_message": self.error_message,
            "caller": self.caller,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class OperationHandle:
    """Returned by start(); pass both fields back to complete()."""

    id: str
    start_time: float


@dataclass
class OperationStats:
    """Per-model or per-operation aggregates in a summary."""

    calls: int = 0
    cost_usd: float = 0.0
    avg_latency_ms: int = 0
    error_count: int = 0


@dataclass
class OperationsSummary:
    """Aggregates computed on demand from the records in the buffer."""

    total_calls: int
    total_cost_usd: float
    avg_latency_ms: int
    success_rate: float
    by_model: Dict[str, OperationStats]
    by_operation: Dict[str, OperationStats]
    recent_errors: List[Dict[str, str]]
    last_24h_calls: int
    last_24h_cost_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "total_cost_usd": self.total_cost_usd,
            "avg_latency_ms": self.avg_latency_ms,
            "success_rate": self.success_rate,
            "by_model": {k: vars(v).copy() for k, v in self.by_model.items()},
            "by_operation": {k: vars(v).copy() for k, v in self.by_operation.items()},
            "recent_errors": list(self.recent_errors),
            "last_24h_calls": self.last_24h_calls,
            "last_24h_cost_usd": self.last_24h_cost_usd,
        }


class OperationTracker:
    """Bounded ring buffer of AI operation records.

    Thread-safe. Records are keyed by id in insertion order, so eviction of
    the oldest record and lookup by id are both O(1). complete() on an id
    that was already evicted is a silent no-op: under sustained load some
    telemetry is allowed to be lost.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        rates: Optional[Mapping[str, ModelRate]] = None,
        default_rate: ModelRate = DEFAULT_RATE,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._lock = threading.Lock()
        self._records: "OrderedDict[str, AIOperationRecord]" = OrderedDict()
        self._counter = itertools.count(1)
        if rates is None:
            rates = {k: ModelRate(**v) for k, v in DEFAULT_MODEL_RATES.items()}
        self._rates = dict(rates)
        self._default_rate = default_rate

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        rate = self._rates.get(model, self._default_rate)
        return (input_tokens * rate.input + output_tokens * rate.output) / 1_000_000

    def start(
        self,
        provider: str,
        model: str,
        operation: str,
        input_content: str,
        caller: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OperationHandle:
        """Record the start of an AI call and return its handle."""
        start_time = time.perf_counter()
        with self._lock:
            op_id = "aiop_{}_{}".format(int(time.time() * 1000), next(self._counter))
            record = AIOperationRecord(
                id=op_id,
                timestamp=datetime.now(timezone.utc),
                provider=provider,
                model=model,
                operation=operation,
                input_hash=hash_content(input_content),
                caller=caller,
                input_tokens_est=estimate_tokens(input_content),
                metadata=dict(metadata or {}),
            )
            self._records[op_id] = record
            while len(self._records) > self._capacity:
                self._records.popitem(last=False)
        return OperationHandle(id=op_id, start_time=start_time)

    def complete(
        self,
        op_id: str,
        start_time: float,
        output_content: str,
        status: OperationStatus = OperationStatus.SUCCESS,
        error_message: Optional[str] = None,
    ) -> Optional[AIOperationRecord]:
        """Fill in the result of a started call.

        Returns:
            A copy of the completed record, or None when the id is unknown
            (for example, evicted before completion).
        """
        latency_ms = max(0, int(round((time.perf_counter() - start_time) * 1000)))
        status = OperationStatus(status)
        with self._lock:
            record = self._records.get(op_id)
            if record is None:
                _logger.debug("AI op %s no longer tracked; completion dropped", op_id)
                return None
            record.output_hash = hash_content(output_content)
            record.output_tokens_est = estimate_tokens(output_content)
            record.cost_est_usd = self.estimate_cost(
                record.model, record.input_tokens_est, record.output_tokens_est
            )
            record.latency_ms = latency_ms
            record.status = status
            record.error_message = sanitize_error(error_message)
            completed = replace(record, metadata=dict(record.metadata))

        _logger.info(
            "AI op completed id=%s model=%s operation=%s latency_ms=%d "
            "input_tokens=%d output_tokens=%d cost_usd=%.6f status=%s caller=%s",
            completed.id,
            completed.model,
            completed.operation,
            completed.latency_ms,
            completed.input_tokens_est,
            completed.output_tokens_est,
            completed.cost_est_usd,
            completed.status.value,
            completed.caller,
        )
        return completed

    def get(self, op_id: str) -> Optional[AIOperationRecord]:
        with self._lock:
            record = self._records.get(op_id)
            return replace(record, metadata=dict(record.metadata)) if record else None

    def query(self, limit: int = 50, offset: int = 0) -> List[AIOperationRecord]:
        """Return records newest first, paginated."""
        if limit <= 0:
            return []
        offset = max(0, offset)
        with self._lock:
            newest_first = list(reversed(self._records.values()))
            page = newest_first[offset : offset + limit]
            return [replace(r, metadata=dict(r.metadata)) for r in page]

    def summarize(self, now: Optional[datetime] = None) -> OperationsSummary:
        """Aggregate the buffer. Nothing is cached; every call recomputes.

        ``success_rate`` and the latency means are computed over completed
        calls only, so pending calls neither raise nor lower them. The
        success rate is 100.0 when nothing completed.
        """
        now = now or datetime.now(timezone.utc)
        window_start = now - timedelta(hours=24)
        with self._lock:
            records = [replace(r) for r in self._records.values()]

        by_model: Dict[str, OperationStats] = {}
        by_operation: Dict[str, OperationStats] = {}
        model_latency: Dict[str, List[int]] = {}
        op_latency: Dict[str, List[int]] = {}
        errors: List[Dict[str, str]] = []
        total_cost = 0.0
        total_latency = 0
        completed = 0
        successes = 0
        last_24h_calls = 0
        last_24h_cost = 0.0

        for r in records:
            total_cost += r.cost_est_usd
            done = r.status != OperationStatus.PENDING
            if done:
                completed += 1
                total_latency += r.latency_ms
            if r.status == OperationStatus.SUCCESS:
                successes += 1
            if r.timestamp > window_start:
                last_24h_calls += 1
                last_24h_cost += r.cost_est_usd

            for name, table, latencies in (
                (r.model, by_model, model_latency),
                (r.operation, by_operation, op_latency),
            ):
                stats = table.setdefault(name, OperationStats())
                stats.calls += 1
                stats.cost_usd += r.cost_est_usd
                if done:
                    latencies.setdefault(name, []).append(r.latency_ms)
                if r.status == OperationStatus.ERROR:
                    stats.error_count += 1

            if r.status == OperationStatus.ERROR and r.error_message:
                errors.append(
                    {
                        "timestamp": r.timestamp.isoformat(),
                        "model": r.model,
                        "operation": r.operation,
                        "error": r.error_message,
                    }
                )

        for table, latencies in ((by_model, model_latency), (by_operation, op_latency)):
            for name, values in latencies.items():
                table[name].avg_latency_ms = int(round(sum(values) / len(values)))

        total_calls = len(records)
        return OperationsSummary(
            total_calls=total_calls,
            total_cost_usd=total_cost,
            avg_latency_ms=int(round(total_latency / completed)) if completed else 0,
            success_rate=(successes / completed) * 100 if completed else 100.0,
            by_model=by_model,
            by_operation=by_operation,
            recent_errors=list(reversed(errors[-RECENT_ERRORS:])),
            last_24h_calls=last_24h_calls,
            last_24h_cost_usd=last_24h_cost,
        )
