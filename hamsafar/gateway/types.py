"""Core types and DTOs for the admission & dispatch layer."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RequestKind(str, Enum):
    """What the caller wants generated."""

    REPLY = "reply"  # Conversational reply, appended to history on success
    SUMMARY = "summary"  # Narrative summary of a conversation, never appended


class ErrorKind(str, Enum):
    """Terminal failure classes surfaced to the caller."""

    THROTTLED = "rate_limit_exceeded"  # Retries exhausted on upstream 429s
    UPSTREAM_FAILURE = "upstream_failure"  # Any other upstream error, not retried
    QUEUE_FULL = "queue_full"  # Rejected at submission, never queued
    CANCELLED = "cancelled"  # Abandoned before resolution
    TIMEOUT = "timeout"  # Per-request deadline exceeded


class DispatchPolicy(str, Enum):
    """How submissions are sequenced toward the upstream."""

    SERIAL = "serial"  # Single worker draining a bounded FIFO queue
    CONCURRENT = "concurrent"  # One task per submission, bucket is the only gate


# ---------------------------------------------------------------------------
# Pending Request — input to the dispatcher
# ---------------------------------------------------------------------------


@dataclass
class PendingRequest:
    """A single generation request owned by the dispatcher until resolved."""

    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    prompt: str = ""
    kind: RequestKind = RequestKind.REPLY
    conversation_id: str | None = None
    submitted_at: float = field(default_factory=time.monotonic)
    queue_position: int = 0  # 1-based position at acceptance, 0 if rejected

    # History slot reserved at submission (REPLY with a conversation only)
    history_ticket: int | None = None
    resolved: bool = field(default=False, repr=False)

    @property
    def appends_history(self) -> bool:
        return self.kind == RequestKind.REPLY and self.conversation_id is not None


# ---------------------------------------------------------------------------
# Call Result — the uniform terminal outcome
# ---------------------------------------------------------------------------


@dataclass
class CallResult:
    """Terminal outcome of a submission: success text or a typed failure."""

    correlation_id: str = ""
    success: bool = False
    text: str = ""

    error_kind: ErrorKind | None = None
    error_message: str = ""
    retry_after_seconds: float | None = None  # Only set for THROTTLED

    attempts: int = 0  # Upstream calls actually issued
    latency_ms: int = 0  # Submission to resolution
    queue_position: int = 0

    @classmethod
    def ok(cls, request: PendingRequest, text: str, attempts: int) -> CallResult:
        return cls(
            correlation_id=request.correlation_id,
            success=True,
            text=text,
            attempts=attempts,
            latency_ms=_elapsed_ms(request),
            queue_position=request.queue_position,
        )

    @classmethod
    def failure(
        cls,
        request: PendingRequest,
        kind: ErrorKind,
        message: str = "",
        attempts: int = 0,
        retry_after: float | None = None,
    ) -> CallResult:
        return cls(
            correlation_id=request.correlation_id,
            success=False,
            error_kind=kind,
            error_message=message or kind.value,
            retry_after_seconds=retry_after,
            attempts=attempts,
            latency_ms=_elapsed_ms(request),
            queue_position=request.queue_position,
        )

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for logs/health surfaces."""
        return {
            "correlation_id": self.correlation_id,
            "success": self.success,
            "text": self.text,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "retry_after_seconds": self.retry_after_seconds,
            "attempts": self.attempts,
            "latency_ms": self.latency_ms,
            "queue_position": self.queue_position,
        }


def _elapsed_ms(request: PendingRequest) -> int:
    return int((time.monotonic() - request.submitted_at) * 1000)


# ---------------------------------------------------------------------------
# Dispatch config
# ---------------------------------------------------------------------------


@dataclass
class DispatchConfig:
    """Admission, retry and sequencing configuration."""

    bucket_capacity: int = 10  # Max burst
    refill_rate: float = 0.15  # Tokens per second (~60% of a 15 RPM quota)
    max_retries: int = 5  # Throttled attempts before giving up
    default_retry_after: float = 60.0  # Backoff base when upstream sends no hint
    backoff_ceiling: float = 300.0  # Cap on a single backoff sleep
    inter_request_delay: float = 0.0  # Extra spacing between serial requests
    max_queue_depth: int = 50  # Backlog bound (queued or in flight)
    request_timeout_seconds: float | None = None  # Optional per-request deadline
    policy: DispatchPolicy = DispatchPolicy.SERIAL

    def __post_init__(self) -> None:
        if self.bucket_capacity < 1:
            raise ValueError("bucket_capacity must be >= 1")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.max_queue_depth < 1:
            raise ValueError("max_queue_depth must be >= 1")
        self.policy = DispatchPolicy(self.policy)
