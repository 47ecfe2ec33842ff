from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Protocol

from refundkeeper.adapters.coinset import CoinsetError
from refundkeeper.config.models import RetryPolicy
from refundkeeper.core.cursor import plan_cursor_advance
from refundkeeper.core.markers import (
    ErrorKind,
    InvalidMarkerTransition,
    MarkerOutcome,
    ProcessedMarker,
    funding_retries_exhausted,
    next_attempt_after,
)
from refundkeeper.core.notifications import (
    AlertEvent,
    FailureStreak,
    fatal_alert,
    funding_alert,
    funding_cap_alert,
    indexer_outage_alert,
    review_alert,
    stalled_queue_alert,
    utcnow,
)
from refundkeeper.core.types import IndexedDeposit, ReserveResult
from refundkeeper.engine.errors import (
    DepositFlagged,
    DepositQueued,
    FatalRefundError,
    InsufficientFundsError,
    TransientRefundError,
)
from refundkeeper.engine.reconcile import RefundReconciler
from refundkeeper.engine.resolver import DepositResolver
from refundkeeper.engine.submitter import RefundSubmitter
from refundkeeper.storage.cursor import CursorStore
from refundkeeper.storage.markers import IdempotencyLedger
from refundkeeper.storage.refunds import RefundLedger
from refundkeeper.storage.sqlite import SqliteStore

_engine_logger = logging.getLogger("refundkeeper.engine")


class DepositIndexer(Protocol):
    def fetch_since(self, cursor: int) -> list[IndexedDeposit]: ...


@dataclass(slots=True)
class CycleReport:
    cursor_before: int = 0
    cursor_after: int = 0
    fetched: int = 0
    retried: int = 0
    redelivered: int = 0
    awaiting_confirmations: int = 0
    refunds_submitted: int = 0
    queued: int = 0
    flagged: int = 0
    failed_transient: int = 0
    failed_permanent: int = 0
    refunds_confirmed: int = 0
    refunds_failed: int = 0
    indexer_error: str | None = None
    stopped_early: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _no_alert(event: AlertEvent) -> None:
    return None


class PollOrchestrator:
    """One deposit-monitoring engine: sweep, fetch, process, advance, reconcile.

    Collaborators are injected so each instance owns its own state; tests run
    several engines side by side against separate SQLite files.
    """

    def __init__(
        self,
        *,
        store: SqliteStore,
        indexer: DepositIndexer,
        cursor: CursorStore,
        markers: IdempotencyLedger,
        resolver: DepositResolver,
        submitter: RefundSubmitter,
        refunds: RefundLedger,
        reconciler: RefundReconciler | None,
        retry_policy: RetryPolicy,
        required_amount: int,
        min_deposit_confirmations: int = 1,
        alert: Callable[[AlertEvent], None] | None = None,
        stop_event: threading.Event | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._indexer = indexer
        self._cursor = cursor
        self._markers = markers
        self._resolver = resolver
        self._submitter = submitter
        self._refunds = refunds
        self._reconciler = reconciler
        self._policy = retry_policy
        self._required_amount = int(required_amount)
        self._min_deposit_confirmations = max(1, int(min_deposit_confirmations))
        self._alert = alert or _no_alert
        self._stop_event = stop_event or threading.Event()
        self._now_fn = now_fn
        self._cycle_lock = threading.Lock()
        self.indexer_failures = FailureStreak()

    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def run_cycle(self) -> CycleReport | None:
        if not self._cycle_lock.acquire(blocking=False):
            _engine_logger.warning("poll_cycle_skipped reason=cycle_in_progress")
            return None
        try:
            return self._run_cycle_locked()
        finally:
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> CycleReport:
        report = CycleReport()
        self._retry_sweep(report)
        if self._stopping():
            report.stopped_early = True
            return report

        cursor = self._cursor.get()
        report.cursor_before = cursor
        report.cursor_after = cursor
        try:
            batch = self._indexer.fetch_since(cursor)
        except CoinsetError as exc:
            report.indexer_error = str(exc)
            self._on_indexer_failure(exc)
            return report
        recovered = self.indexer_failures.record_success()
        if recovered:
            _engine_logger.info("indexer_recovered failed_cycles=%s", recovered)
        report.fetched = len(batch)

        accounted: set[str] = set()
        for deposit in batch:
            if self._stopping():
                report.stopped_early = True
                break
            if deposit.confirmations < self._min_deposit_confirmations:
                report.awaiting_confirmations += 1
                continue
            if self._process_new_deposit(deposit, report):
                accounted.add(deposit.tx_hash)

        new_cursor = plan_cursor_advance(cursor, batch, accounted)
        if new_cursor != cursor:
            report.cursor_after = self._cursor.advance(new_cursor)
            self._store.add_audit_event(
                "cursor_advanced", {"from": cursor, "to": report.cursor_after}
            )
            _engine_logger.debug("cursor_advanced from=%s to=%s", cursor, report.cursor_after)

        if not report.stopped_early:
            self._reconcile(report)
        _engine_logger.info(
            "poll_cycle_complete cursor=%s fetched=%s submitted=%s queued=%s flagged=%s "
            "transient=%s permanent=%s",
            report.cursor_after,
            report.fetched,
            report.refunds_submitted,
            report.queued,
            report.flagged,
            report.failed_transient,
            report.failed_permanent,
        )
        return report

    def _on_indexer_failure(self, exc: CoinsetError) -> None:
        threshold = self._policy.consecutive_failure_alert_threshold
        should_alert = self.indexer_failures.record_failure(threshold)
        _engine_logger.warning(
            "indexer_fetch_failed consecutive_failures=%s error=%s",
            self.indexer_failures.count,
            exc,
        )
        self._store.add_audit_event(
            "indexer_error",
            {"error": str(exc), "consecutive_failures": self.indexer_failures.count},
        )
        if should_alert:
            self._alert(indexer_outage_alert(failures=self.indexer_failures.count, error=str(exc)))

    def _retry_sweep(self, report: CycleReport) -> None:
        for marker in self._markers.due_for_retry(now=self._now_fn(), policy=self._policy):
            if self._stopping():
                report.stopped_early = True
                return
            report.retried += 1
            self._process(marker.tx_hash, marker.sender_address, marker.amount, report)

    def _process_new_deposit(self, deposit: IndexedDeposit, report: CycleReport) -> bool:
        """Reserve and process one deposit; returns whether it is accounted for."""
        try:
            reserved = self._markers.reserve(deposit)
        except sqlite3.Error as exc:
            self._store.rollback()
            _engine_logger.error(
                "marker_reserve_failed tx_hash=%s sender=%s amount=%s error=%s",
                deposit.tx_hash,
                deposit.sender_address,
                deposit.amount,
                exc,
            )
            return False
        if reserved == ReserveResult.ALREADY_RESERVED:
            report.redelivered += 1
            return True
        self._process(deposit.tx_hash, deposit.sender_address, deposit.amount, report)
        return True

    def _process(self, tx_hash: str, sender_address: str, amount: int, report: CycleReport) -> None:
        try:
            record = self._resolver.resolve(sender_address, amount, tx_hash)
            refund = self._submitter.submit_refund(record)
            if self._refunds.get_by_deposit(tx_hash) is None:
                self._refunds.record_refund(record, refund)
            report.refunds_submitted += 1
            _engine_logger.info(
                "refund_submitted tx_hash=%s refund_tx=%s sender=%s amount=%s",
                tx_hash,
                refund.refund_tx_hash,
                sender_address,
                amount,
            )
        except DepositFlagged as exc:
            self._on_flagged(tx_hash, sender_address, amount, exc, report)
        except DepositQueued as exc:
            self._on_queued(tx_hash, sender_address, exc, report)
        except InsufficientFundsError as exc:
            self._on_funding_failure(tx_hash, sender_address, amount, exc.reason, report)
        except TransientRefundError as exc:
            self._on_transient_failure(tx_hash, ErrorKind.TRANSIENT, exc.reason, report)
        except FatalRefundError as exc:
            self._on_fatal_failure(tx_hash, exc.reason, report)
        except sqlite3.Error as exc:
            self._store.rollback()
            _engine_logger.error(
                "deposit_integrity_error tx_hash=%s sender=%s amount=%s error=%s",
                tx_hash,
                sender_address,
                amount,
                exc,
            )
            self._on_transient_failure(tx_hash, ErrorKind.INTEGRITY, f"sqlite:{exc}", report)
        except Exception as exc:
            self._store.rollback()
            _engine_logger.exception(
                "deposit_processing_error tx_hash=%s sender=%s amount=%s",
                tx_hash,
                sender_address,
                amount,
            )
            self._on_transient_failure(
                tx_hash, ErrorKind.INTEGRITY, f"unexpected:{type(exc).__name__}:{exc}", report
            )

    def _on_flagged(
        self,
        tx_hash: str,
        sender_address: str,
        amount: int,
        exc: DepositFlagged,
        report: CycleReport,
    ) -> None:
        marker = self._markers.get(tx_hash)
        if marker is not None and marker.outcome == MarkerOutcome.FLAGGED_FOR_REVIEW:
            return
        self._transition(tx_hash, MarkerOutcome.FLAGGED_FOR_REVIEW, last_error=exc.reason)
        report.flagged += 1
        _engine_logger.warning(
            "deposit_flagged tx_hash=%s sender=%s amount=%s expected=%s reason=%s",
            tx_hash,
            sender_address,
            amount,
            self._required_amount,
            exc.reason,
        )
        self._alert(
            review_alert(
                tx_hash=tx_hash,
                sender_address=sender_address,
                amount=amount,
                expected=self._required_amount,
            )
        )

    def _on_queued(
        self, tx_hash: str, sender_address: str, exc: DepositQueued, report: CycleReport
    ) -> None:
        report.queued += 1
        blocking_tx_hash = exc.blocking_record.deposit_tx_hash or ""
        blocker = self._markers.get(blocking_tx_hash) if blocking_tx_hash else None
        if blocker is None or not self._is_stalled(blocker):
            self._markers.annotate(tx_hash, error_kind=ErrorKind.QUEUED, last_error=str(exc))
            _engine_logger.info(
                "deposit_queued tx_hash=%s sender=%s blocking_deposit=%s",
                tx_hash,
                sender_address,
                blocking_tx_hash,
            )
            return

        reason = f"queued_behind_stalled_refund:{blocking_tx_hash}"
        previous = self._markers.get(tx_hash)
        self._markers.annotate(tx_hash, error_kind=ErrorKind.QUEUED, last_error=reason)
        _engine_logger.warning(
            "deposit_queued_behind_stalled_refund tx_hash=%s sender=%s blocking_deposit=%s "
            "blocking_error=%s",
            tx_hash,
            sender_address,
            blocking_tx_hash,
            blocker.last_error,
        )
        if previous is not None and previous.last_error == reason:
            return
        self._store.add_audit_event(
            "deposit_queued_behind_stalled_refund",
            {
                "sender_address": sender_address,
                "blocking_tx_hash": blocking_tx_hash,
                "blocking_error": blocker.last_error,
            },
            tx_hash=tx_hash,
        )
        self._alert(
            stalled_queue_alert(
                tx_hash=tx_hash, sender_address=sender_address, blocking_tx_hash=blocking_tx_hash
            )
        )

    def _is_stalled(self, marker: ProcessedMarker) -> bool:
        """Permanently failed and no longer picked up by the retry sweep."""
        if marker.outcome != MarkerOutcome.REFUND_FAILED_PERMANENT:
            return False
        if marker.error_kind == ErrorKind.FUNDING:
            return funding_retries_exhausted(self._policy, marker.attempts)
        return True

    def _on_funding_failure(
        self, tx_hash: str, sender_address: str, amount: int, reason: str, report: CycleReport
    ) -> None:
        previous = self._markers.get(tx_hash)
        first_shortfall = previous is None or previous.error_kind != ErrorKind.FUNDING
        marker = self._transition(
            tx_hash,
            MarkerOutcome.REFUND_FAILED_PERMANENT,
            error_kind=ErrorKind.FUNDING,
            last_error=reason,
            count_attempt=True,
        )
        self._store.add_audit_event(
            "refund_funding_failed",
            {
                "sender_address": sender_address,
                "amount": int(amount),
                "reason": reason,
                "attempts": marker.attempts if marker is not None else None,
            },
            tx_hash=tx_hash,
        )
        report.failed_permanent += 1
        _engine_logger.error(
            "refund_funding_failed tx_hash=%s sender=%s amount=%s reason=%s",
            tx_hash,
            sender_address,
            amount,
            reason,
        )
        if first_shortfall:
            self._alert(
                funding_alert(
                    tx_hash=tx_hash, sender_address=sender_address, amount=amount, reason=reason
                )
            )
        if marker is not None and funding_retries_exhausted(self._policy, marker.attempts):
            self._alert(funding_cap_alert(tx_hash=tx_hash, attempts=marker.attempts))

    def _on_transient_failure(
        self, tx_hash: str, error_kind: ErrorKind, reason: str, report: CycleReport
    ) -> None:
        previous = self._markers.get(tx_hash)
        attempts = (previous.attempts if previous is not None else 0) + 1
        next_attempt_at = next_attempt_after(self._policy, attempts, self._now_fn())
        marker = self._transition(
            tx_hash,
            MarkerOutcome.REFUND_FAILED_TRANSIENT,
            error_kind=error_kind,
            last_error=reason,
            next_attempt_at=next_attempt_at,
            count_attempt=True,
        )
        if marker is None:
            return
        report.failed_transient += 1
        _engine_logger.warning(
            "refund_transient_failure tx_hash=%s kind=%s attempts=%s next_attempt_at=%s reason=%s",
            tx_hash,
            error_kind.value,
            marker.attempts,
            next_attempt_at.isoformat(),
            reason,
        )

    def _on_fatal_failure(self, tx_hash: str, reason: str, report: CycleReport) -> None:
        self._transition(
            tx_hash,
            MarkerOutcome.REFUND_FAILED_PERMANENT,
            error_kind=ErrorKind.FATAL,
            last_error=reason,
            count_attempt=True,
        )
        self._store.add_audit_event("refund_fatal", {"reason": reason}, tx_hash=tx_hash)
        report.failed_permanent += 1
        _engine_logger.critical("refund_fatal tx_hash=%s reason=%s", tx_hash, reason)
        self._alert(fatal_alert(tx_hash=tx_hash, reason=reason))

    def _transition(self, tx_hash: str, outcome: MarkerOutcome, **kwargs):
        try:
            return self._markers.transition(tx_hash, outcome, **kwargs)
        except InvalidMarkerTransition as exc:
            _engine_logger.error("marker_transition_rejected tx_hash=%s error=%s", tx_hash, exc)
            return None

    def _reconcile(self, report: CycleReport) -> None:
        if self._reconciler is None:
            return
        try:
            counts = self._reconciler.reconcile()
        except (CoinsetError, ValueError) as exc:
            _engine_logger.warning("refund_reconcile_skipped error=%s", exc)
            return
        report.refunds_confirmed += counts.get("confirmed", 0)
        report.refunds_failed += counts.get("failed", 0)
