from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime


@dataclass(frozen=True, slots=True)
class AlertEvent:
    kind: str
    title: str
    message: str
    tx_hash: str | None = None


@dataclass(slots=True)
class FailureStreak:
    """Consecutive failed poll cycles; alerts once per streak at the threshold."""

    count: int = 0
    alerted: bool = False

    def record_failure(self, threshold: int) -> bool:
        self.count += 1
        if self.count >= max(1, threshold) and not self.alerted:
            self.alerted = True
            return True
        return False

    def record_success(self) -> int:
        previous = self.count
        self.count = 0
        self.alerted = False
        return previous


def funding_alert(*, tx_hash: str, sender_address: str, amount: int, reason: str) -> AlertEvent:
    return AlertEvent(
        kind="refund_funding_shortfall",
        title="RefundKeeper: custodial balance too low",
        message=(
            f"Refund of {amount} mojos to {sender_address} for deposit {tx_hash} "
            f"is blocked: {reason}. Fund the custodial address to resume."
        ),
        tx_hash=tx_hash,
    )


def funding_cap_alert(*, tx_hash: str, attempts: int) -> AlertEvent:
    return AlertEvent(
        kind="refund_funding_retries_exhausted",
        title="RefundKeeper: refund retries exhausted",
        message=(
            f"Deposit {tx_hash} stopped retrying after {attempts} funding failures. "
            "Requeue it once the custodial address is funded."
        ),
        tx_hash=tx_hash,
    )


def fatal_alert(*, tx_hash: str, reason: str) -> AlertEvent:
    return AlertEvent(
        kind="refund_fatal",
        title="RefundKeeper: refund needs operator attention",
        message=f"Refund for deposit {tx_hash} failed and will not be retried: {reason}",
        tx_hash=tx_hash,
    )


def stalled_queue_alert(*, tx_hash: str, sender_address: str, blocking_tx_hash: str) -> AlertEvent:
    return AlertEvent(
        kind="deposit_queued_behind_stalled_refund",
        title="RefundKeeper: deposit waiting on a stalled refund",
        message=(
            f"Deposit {tx_hash} from {sender_address} is queued behind deposit "
            f"{blocking_tx_hash}, whose refund is no longer retried automatically. "
            "Requeue or resolve the earlier deposit to release it."
        ),
        tx_hash=tx_hash,
    )


def review_alert(*, tx_hash: str, sender_address: str, amount: int, expected: int) -> AlertEvent:
    return AlertEvent(
        kind="deposit_flagged_for_review",
        title="RefundKeeper: deposit flagged for review",
        message=(
            f"Deposit {tx_hash} from {sender_address} paid {amount} mojos "
            f"(expected {expected}). It was not refunded automatically."
        ),
        tx_hash=tx_hash,
    )


def indexer_outage_alert(*, failures: int, error: str) -> AlertEvent:
    return AlertEvent(
        kind="indexer_unavailable",
        title="RefundKeeper: indexer unavailable",
        message=f"{failures} consecutive poll cycles failed to fetch deposits. Last error: {error}",
    )


def utcnow() -> datetime:
    return datetime.now(UTC)
