from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from refundkeeper.config.models import RetryPolicy
from refundkeeper.core.types import RefundIntent


class MarkerOutcome(StrEnum):
    RESERVED = "reserved"
    REFUND_SUBMITTED = "refund_submitted"
    REFUND_CONFIRMED = "refund_confirmed"
    REFUND_FAILED_TRANSIENT = "refund_failed_transient"
    REFUND_FAILED_PERMANENT = "refund_failed_permanent"
    FLAGGED_FOR_REVIEW = "flagged_for_review"


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    FUNDING = "funding"
    FATAL = "fatal"
    INTEGRITY = "integrity"
    QUEUED = "queued"


_ALLOWED_TRANSITIONS: dict[MarkerOutcome, frozenset[MarkerOutcome]] = {
    MarkerOutcome.RESERVED: frozenset(
        {
            MarkerOutcome.REFUND_SUBMITTED,
            MarkerOutcome.REFUND_FAILED_TRANSIENT,
            MarkerOutcome.REFUND_FAILED_PERMANENT,
            MarkerOutcome.FLAGGED_FOR_REVIEW,
        }
    ),
    MarkerOutcome.REFUND_FAILED_TRANSIENT: frozenset(
        {
            MarkerOutcome.REFUND_SUBMITTED,
            MarkerOutcome.REFUND_FAILED_TRANSIENT,
            MarkerOutcome.REFUND_FAILED_PERMANENT,
            MarkerOutcome.FLAGGED_FOR_REVIEW,
        }
    ),
    MarkerOutcome.REFUND_FAILED_PERMANENT: frozenset(
        {
            MarkerOutcome.REFUND_SUBMITTED,
            MarkerOutcome.REFUND_FAILED_TRANSIENT,
            MarkerOutcome.REFUND_FAILED_PERMANENT,
        }
    ),
    MarkerOutcome.REFUND_SUBMITTED: frozenset(
        {
            MarkerOutcome.REFUND_CONFIRMED,
            MarkerOutcome.REFUND_FAILED_PERMANENT,
        }
    ),
    MarkerOutcome.REFUND_CONFIRMED: frozenset(),
    MarkerOutcome.FLAGGED_FOR_REVIEW: frozenset(),
}

TERMINAL_OUTCOMES = frozenset({MarkerOutcome.REFUND_CONFIRMED, MarkerOutcome.FLAGGED_FOR_REVIEW})


class InvalidMarkerTransition(ValueError):
    def __init__(self, tx_hash: str, old: MarkerOutcome, new: MarkerOutcome) -> None:
        super().__init__(f"invalid_marker_transition:{tx_hash}:{old.value}->{new.value}")
        self.tx_hash = tx_hash
        self.old = old
        self.new = new


@dataclass(slots=True)
class ProcessedMarker:
    tx_hash: str
    outcome: MarkerOutcome
    sender_address: str
    amount: int
    block_height: int
    attempts: int = 0
    error_kind: ErrorKind | None = None
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    intent: RefundIntent | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def check_transition(tx_hash: str, old: MarkerOutcome, new: MarkerOutcome) -> None:
    if new not in _ALLOWED_TRANSITIONS[old]:
        raise InvalidMarkerTransition(tx_hash, old, new)


def retry_delay_seconds(policy: RetryPolicy, attempts: int) -> int:
    """Exponential backoff for the given 1-based attempt count, capped."""
    exponent = max(0, int(attempts) - 1)
    delay = policy.initial_delay_seconds * (policy.multiplier**exponent)
    return int(min(delay, policy.max_delay_seconds))


def next_attempt_after(policy: RetryPolicy, attempts: int, now: datetime) -> datetime:
    return now + timedelta(seconds=retry_delay_seconds(policy, attempts))


def funding_retries_exhausted(policy: RetryPolicy, attempts: int) -> bool:
    cap = policy.permanent_failure_retry_cap
    return cap > 0 and attempts >= cap
