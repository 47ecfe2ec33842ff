from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from refundkeeper.adapters.coinset import CoinsetError
from refundkeeper.core.markers import ErrorKind, MarkerOutcome
from refundkeeper.core.notifications import AlertEvent
from refundkeeper.core.types import RefundStatus, RefundTransaction
from refundkeeper.engine.reconcile import RefundReconciler
from refundkeeper.engine.submitter import RefundSubmitter
from refundkeeper.storage.deposits import DepositStore
from refundkeeper.storage.markers import IdempotencyLedger
from refundkeeper.storage.refunds import RefundLedger
from refundkeeper.storage.sqlite import SqliteStore
from tests.engine_fakes import (
    CUSTODIAL,
    REQUIRED_AMOUNT,
    SENDER_A,
    FakeBuilder,
    FakeClock,
    FakeCoinset,
    make_deposit,
)


@dataclass
class _Setup:
    store: SqliteStore
    markers: IdempotencyLedger
    refunds: RefundLedger
    coinset: FakeCoinset
    clock: FakeClock
    alerts: list[AlertEvent]
    reconciler: RefundReconciler
    refund: RefundTransaction


def _pending_refund(tmp_path: Path, *, min_confirmations: int = 3) -> _Setup:
    store = SqliteStore(tmp_path / "rk.sqlite")
    markers = IdempotencyLedger(store)
    deposits = DepositStore(store)
    refunds = RefundLedger(store, markers)
    coinset = FakeCoinset(peak=100)
    clock = FakeClock()
    alerts: list[AlertEvent] = []

    deposit = make_deposit("reconcile", height=40)
    markers.reserve(deposit)
    owner_id = deposits.create_owner(sender_address=SENDER_A, placeholder=True)
    record = deposits.insert_record(
        sender_address=SENDER_A,
        owner_id=owner_id,
        amount=REQUIRED_AMOUNT,
        deposit_tx_hash=deposit.tx_hash,
        verified=True,
    )
    submitter = RefundSubmitter(
        coinset=coinset,  # type: ignore[arg-type]
        markers=markers,
        refunds=refunds,
        custodial=CUSTODIAL,
        network="mainnet",
        build_fn=FakeBuilder(),
    )
    refund = submitter.submit_refund(record)
    refunds.record_refund(record, refund)
    reconciler = RefundReconciler(
        store=store,
        coinset=coinset,  # type: ignore[arg-type]
        refunds=refunds,
        min_confirmations=min_confirmations,
        stale_after_seconds=600,
        alert=alerts.append,
        now_fn=clock,
    )
    return _Setup(store, markers, refunds, coinset, clock, alerts, reconciler, refund)


def test_reconcile_without_pending_refunds_skips_peak_lookup(tmp_path: Path) -> None:
    store = SqliteStore(tmp_path / "rk.sqlite")
    try:
        coinset = FakeCoinset()
        coinset.get_peak_height = None  # type: ignore[assignment,method-assign]
        reconciler = RefundReconciler(
            store=store,
            coinset=coinset,  # type: ignore[arg-type]
            refunds=RefundLedger(store, IdempotencyLedger(store)),
            min_confirmations=3,
            stale_after_seconds=600,
        )
        assert reconciler.reconcile() == {
            "checked": 0,
            "confirmed": 0,
            "failed": 0,
            "rebroadcast": 0,
            "errors": 0,
        }
    finally:
        store.close()


def test_fresh_unspent_refund_is_left_alone(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path)
    try:
        counts = s.reconciler.reconcile()
        assert counts["checked"] == 1
        assert counts["rebroadcast"] == 0
        assert len(s.coinset.pushed) == 1
    finally:
        s.store.close()


def test_stale_refund_in_mempool_is_not_rebroadcast(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path)
    try:
        s.clock.advance(601)
        s.coinset.mempool.append(s.refund.refund_tx_hash)
        counts = s.reconciler.reconcile()
        assert counts["rebroadcast"] == 0
        assert len(s.coinset.pushed) == 1
    finally:
        s.store.close()


def test_stale_refund_missing_from_mempool_is_rebroadcast(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path)
    try:
        s.clock.advance(601)
        counts = s.reconciler.reconcile()
        assert counts["rebroadcast"] == 1
        assert s.coinset.pushed == [s.refund.spend_bundle_hex, s.refund.spend_bundle_hex]
        events = s.store.list_recent_audit_events(event_types=["refund_rebroadcast"])
        assert events[0]["tx_hash"] == s.refund.deposit_tx_hash
        assert events[0]["payload"]["verdict"] == "accepted"
    finally:
        s.store.close()


def test_refund_confirms_once_depth_is_reached(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path, min_confirmations=3)
    try:
        s.coinset.settle(
            input_coin_ids=s.refund.input_coin_ids,
            destination=SENDER_A,
            amount=REQUIRED_AMOUNT,
            height=99,
        )
        counts = s.reconciler.reconcile()
        assert counts["confirmed"] == 0
        pending = s.refunds.get(s.refund.refund_tx_hash)
        assert pending is not None
        assert pending.status == RefundStatus.PENDING
        assert pending.confirmations == 2
        assert pending.confirmed_height == 99

        s.coinset.peak = 101
        counts = s.reconciler.reconcile()
        assert counts["confirmed"] == 1
        confirmed = s.refunds.get(s.refund.refund_tx_hash)
        assert confirmed is not None
        assert confirmed.status == RefundStatus.CONFIRMED
        assert confirmed.confirmations == 3
        marker = s.markers.get(s.refund.deposit_tx_hash)
        assert marker is not None and marker.outcome == MarkerOutcome.REFUND_CONFIRMED
        assert s.reconciler.reconcile()["checked"] == 0
    finally:
        s.store.close()


def test_inputs_spent_without_refund_coin_fails_and_alerts(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path)
    try:
        s.coinset.settle(
            input_coin_ids=s.refund.input_coin_ids,
            destination=SENDER_A,
            amount=REQUIRED_AMOUNT,
            height=98,
            pay_refund=False,
        )
        counts = s.reconciler.reconcile()
        assert counts["failed"] == 1
        failed = s.refunds.get(s.refund.refund_tx_hash)
        assert failed is not None and failed.status == RefundStatus.FAILED
        marker = s.markers.get(s.refund.deposit_tx_hash)
        assert marker is not None
        assert marker.outcome == MarkerOutcome.REFUND_FAILED_PERMANENT
        assert marker.error_kind == ErrorKind.FATAL
        assert [a.kind for a in s.alerts] == ["refund_fatal"]
    finally:
        s.store.close()


def test_lookup_errors_are_counted_per_refund(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path)
    try:

        def _unavailable(*, coin_name_hex: str):
            raise CoinsetError("coinset_network_error:timeout")

        s.coinset.get_coin_record_by_name = _unavailable  # type: ignore[method-assign]
        counts = s.reconciler.reconcile()
        assert counts["checked"] == 1
        assert counts["errors"] == 1
        still_pending = s.refunds.get(s.refund.refund_tx_hash)
        assert still_pending is not None and still_pending.status == RefundStatus.PENDING
    finally:
        s.store.close()


def test_malformed_coin_record_is_isolated_to_its_refund(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path)
    try:
        s.coinset.coin_records[s.refund.input_coin_ids[0]] = {
            "coin": {"parent_coin_info": "00" * 32, "puzzle_hash": "cc" * 32, "amount": 1},
            "spent_block_index": "not-a-height",
        }
        counts = s.reconciler.reconcile()
        assert counts["checked"] == 1
        assert counts["errors"] == 1
        still_pending = s.refunds.get(s.refund.refund_tx_hash)
        assert still_pending is not None and still_pending.status == RefundStatus.PENDING
    finally:
        s.store.close()


def test_rejected_marker_transition_is_isolated_and_rolled_back(tmp_path: Path) -> None:
    s = _pending_refund(tmp_path)
    try:
        s.coinset.settle(
            input_coin_ids=s.refund.input_coin_ids,
            destination=SENDER_A,
            amount=REQUIRED_AMOUNT,
            height=90,
        )
        s.store.conn.execute(
            "UPDATE processed_marker SET outcome = ? WHERE tx_hash = ?",
            (MarkerOutcome.FLAGGED_FOR_REVIEW.value, s.refund.deposit_tx_hash),
        )
        s.store.conn.commit()

        counts = s.reconciler.reconcile()
        assert counts["errors"] == 1
        assert counts["confirmed"] == 0
        still_pending = s.refunds.get(s.refund.refund_tx_hash)
        assert still_pending is not None and still_pending.status == RefundStatus.PENDING
        assert s.store.list_recent_audit_events(event_types=["refund_confirmed"]) == []
    finally:
        s.store.close()
