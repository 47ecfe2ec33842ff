from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta

from refundkeeper.adapters.coinset import CoinsetAdapter, CoinsetError
from refundkeeper.core.notifications import AlertEvent, fatal_alert, utcnow
from refundkeeper.core.types import RefundStatus, RefundTransaction
from refundkeeper.engine.submitter import classify_push_response
from refundkeeper.storage.refunds import RefundLedger
from refundkeeper.storage.sqlite import SqliteStore

_reconcile_logger = logging.getLogger("refundkeeper.engine.reconcile")


def _no_alert(event: AlertEvent) -> None:
    return None


class RefundReconciler:
    """Tracks pending refunds until they confirm, rebroadcasting stale ones."""

    def __init__(
        self,
        *,
        store: SqliteStore,
        coinset: CoinsetAdapter,
        refunds: RefundLedger,
        min_confirmations: int,
        stale_after_seconds: int,
        alert: Callable[[AlertEvent], None] | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._coinset = coinset
        self._refunds = refunds
        self._min_confirmations = max(1, int(min_confirmations))
        self._stale_after = timedelta(seconds=int(stale_after_seconds))
        self._alert = alert or _no_alert
        self._now_fn = now_fn

    def reconcile(self) -> dict[str, int]:
        counts = {"checked": 0, "confirmed": 0, "failed": 0, "rebroadcast": 0, "errors": 0}
        pending = self._refunds.list_by_status(RefundStatus.PENDING)
        if not pending:
            return counts
        peak_height = self._coinset.get_peak_height()
        mempool: set[str] | None = None
        for refund in pending:
            counts["checked"] += 1
            try:
                spent_height = self._inputs_spent_height(refund)
                if spent_height is None:
                    if not self._is_stale(refund):
                        continue
                    if mempool is None:
                        mempool = set(self._coinset.get_all_mempool_tx_ids())
                    if refund.refund_tx_hash in mempool:
                        continue
                    self._rebroadcast(refund)
                    counts["rebroadcast"] += 1
                    continue
                outcome = self._settle(refund, peak_height, spent_height)
                if outcome in counts:
                    counts[outcome] += 1
            except CoinsetError as exc:
                counts["errors"] += 1
                _reconcile_logger.warning(
                    "refund_reconcile_unavailable refund_tx=%s error=%s",
                    refund.refund_tx_hash,
                    exc,
                )
            except (ValueError, TypeError, sqlite3.Error) as exc:
                # Malformed coin records and rejected marker transitions stay with this refund.
                self._store.rollback()
                counts["errors"] += 1
                _reconcile_logger.error(
                    "refund_reconcile_failed refund_tx=%s deposit=%s error=%s",
                    refund.refund_tx_hash,
                    refund.deposit_tx_hash,
                    exc,
                )
        return counts

    def _inputs_spent_height(self, refund: RefundTransaction) -> int | None:
        """Height at which the refund's inputs were spent, or None while any is unspent."""
        if not refund.input_coin_ids:
            return None
        heights: list[int] = []
        for coin_id in refund.input_coin_ids:
            record = self._coinset.get_coin_record_by_name(coin_name_hex=coin_id)
            if record is None:
                return None
            spent_height = int(record.get("spent_block_index") or 0)
            if spent_height <= 0:
                return None
            heights.append(spent_height)
        return min(heights)

    def _is_stale(self, refund: RefundTransaction) -> bool:
        if refund.submitted_at is None:
            return True
        return self._now_fn() - refund.submitted_at >= self._stale_after

    def _rebroadcast(self, refund: RefundTransaction) -> None:
        response = self._coinset.push_tx(spend_bundle_hex=refund.spend_bundle_hex)
        verdict, reason = classify_push_response(response)
        self._refunds.touch_submitted(refund)
        self._store.add_audit_event(
            "refund_rebroadcast",
            {"refund_tx_hash": refund.refund_tx_hash, "verdict": verdict, "reason": reason},
            tx_hash=refund.deposit_tx_hash,
        )
        _reconcile_logger.info(
            "refund_rebroadcast refund_tx=%s deposit=%s verdict=%s reason=%s",
            refund.refund_tx_hash,
            refund.deposit_tx_hash,
            verdict,
            reason,
        )

    def _settle(self, refund: RefundTransaction, peak_height: int, spent_height: int) -> str:
        coin_record = self._coinset.find_refund_coin(
            destination_puzzle_hash=refund.destination_address,
            amount=refund.amount,
            parent_coin_ids=refund.input_coin_ids,
            start_height=spent_height,
        )
        if coin_record is None:
            reason = "refund_inputs_spent_without_refund_coin"
            self._refunds.mark_failed(refund, reason=reason)
            _reconcile_logger.critical(
                "refund_fatal deposit=%s refund_tx=%s reason=%s",
                refund.deposit_tx_hash,
                refund.refund_tx_hash,
                reason,
            )
            self._alert(fatal_alert(tx_hash=refund.deposit_tx_hash, reason=reason))
            return "failed"

        height = int(coin_record.get("confirmed_block_index") or spent_height)
        confirmations = max(0, peak_height - height + 1)
        if confirmations >= self._min_confirmations:
            self._refunds.mark_confirmed(refund, confirmations=confirmations, height=height)
            _reconcile_logger.info(
                "refund_confirmed deposit=%s refund_tx=%s height=%s confirmations=%s",
                refund.deposit_tx_hash,
                refund.refund_tx_hash,
                height,
                confirmations,
            )
            return "confirmed"
        self._refunds.update_confirmations(
            refund.refund_tx_hash, confirmations=confirmations, height=height
        )
        return "pending"
