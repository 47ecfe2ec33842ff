"""Restart at each step between reservation and confirmation converges on one refund."""

from __future__ import annotations

from pathlib import Path

import pytest

from refundkeeper.core.markers import MarkerOutcome
from refundkeeper.core.types import RefundStatus
from refundkeeper.engine.errors import DepositFlagged
from refundkeeper.engine.resolver import DepositResolver
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
    FakeCoinset,
    FakeIndexer,
    build_harness,
    make_deposit,
)


def _submit_then_crash(db_path: Path, deposit, coinset: FakeCoinset) -> str:
    """Reserve, resolve and push a refund, then stop before it is recorded."""
    store = SqliteStore(db_path)
    try:
        markers = IdempotencyLedger(store)
        deposits = DepositStore(store)
        markers.reserve(deposit)
        record = DepositResolver(
            store=store, deposits=deposits, required_amount=REQUIRED_AMOUNT
        ).resolve(deposit.sender_address, deposit.amount, deposit.tx_hash)
        refund = RefundSubmitter(
            coinset=coinset,  # type: ignore[arg-type]
            markers=markers,
            refunds=RefundLedger(store, markers),
            custodial=CUSTODIAL,
            network="mainnet",
            build_fn=FakeBuilder(prefix="before-crash"),
        ).submit_refund(record)
        return refund.refund_tx_hash
    finally:
        store.close()


def _assert_single_refund(h, deposit, refund_tx_hash: str | None = None) -> None:
    record = h.deposits.get_by_deposit_tx_hash(deposit.tx_hash)
    assert record is not None
    assert record.refunded is True
    refund = h.refunds.get_by_deposit(deposit.tx_hash)
    assert refund is not None
    if refund_tx_hash is not None:
        assert refund.refund_tx_hash == refund_tx_hash
    rows = h.store.conn.execute(
        "SELECT COUNT(*) AS n FROM refund_transaction WHERE deposit_tx_hash = ?",
        (deposit.tx_hash,),
    ).fetchone()
    assert int(rows["n"]) == 1


def test_crash_after_reserve_is_finished_by_retry_sweep(tmp_path: Path) -> None:
    db_path = tmp_path / "rk.sqlite"
    deposit = make_deposit("reserved-only", height=10)
    store = SqliteStore(db_path)
    IdempotencyLedger(store).reserve(deposit)
    store.close()

    h = build_harness(db_path, indexer=FakeIndexer([deposit]))
    try:
        report = h.orchestrator.run_cycle()
        assert report is not None
        assert report.retried == 1
        assert report.redelivered == 1
        assert len(h.builder.payloads) == 1
        _assert_single_refund(h, deposit)
    finally:
        h.close()


def test_crash_after_push_rebroadcasts_stored_bundle(tmp_path: Path) -> None:
    db_path = tmp_path / "rk.sqlite"
    deposit = make_deposit("pushed", height=10)
    coinset = FakeCoinset()
    refund_tx_hash = _submit_then_crash(db_path, deposit, coinset)
    coinset.push_responses.append(
        {
            "success": False,
            "error": "Failed to include transaction, error ALREADY_INCLUDING_TRANSACTION",
        }
    )

    h = build_harness(db_path, indexer=FakeIndexer([deposit]), coinset=coinset)
    try:
        h.orchestrator.run_cycle()
        assert h.builder.payloads == []
        assert len(coinset.pushed) == 2
        assert coinset.pushed[0] == coinset.pushed[1]
        _assert_single_refund(h, deposit, refund_tx_hash)
        marker = h.markers.get(deposit.tx_hash)
        assert marker is not None
        assert marker.outcome == MarkerOutcome.REFUND_SUBMITTED
        assert marker.intent is None
    finally:
        h.close()


def test_crash_after_refund_mined_is_recorded_and_confirmed(tmp_path: Path) -> None:
    db_path = tmp_path / "rk.sqlite"
    deposit = make_deposit("mined", height=10)
    coinset = FakeCoinset(peak=110)
    refund_tx_hash = _submit_then_crash(db_path, deposit, coinset)

    store = SqliteStore(db_path)
    intent = IdempotencyLedger(store).get(deposit.tx_hash).intent  # type: ignore[union-attr]
    store.close()
    assert intent is not None
    coinset.settle(
        input_coin_ids=intent.input_coin_ids,
        destination=SENDER_A,
        amount=REQUIRED_AMOUNT,
        height=105,
    )
    coinset.push_responses.append({"success": False, "error": "DOUBLE_SPEND"})

    h = build_harness(db_path, indexer=FakeIndexer([deposit]), coinset=coinset)
    try:
        report = h.orchestrator.run_cycle()
        assert report is not None
        assert report.refunds_confirmed == 1
        assert h.builder.payloads == []
        _assert_single_refund(h, deposit, refund_tx_hash)
        refund = h.refunds.get_by_deposit(deposit.tx_hash)
        assert refund is not None
        assert refund.status == RefundStatus.CONFIRMED
        assert refund.confirmations == 6
        marker = h.markers.get(deposit.tx_hash)
        assert marker is not None and marker.outcome == MarkerOutcome.REFUND_CONFIRMED
    finally:
        h.close()


def test_stored_bundle_with_inputs_spent_elsewhere_is_rebuilt(tmp_path: Path) -> None:
    db_path = tmp_path / "rk.sqlite"
    deposit = make_deposit("conflict", height=10)
    coinset = FakeCoinset()
    first_tx_hash = _submit_then_crash(db_path, deposit, coinset)

    store = SqliteStore(db_path)
    intent = IdempotencyLedger(store).get(deposit.tx_hash).intent  # type: ignore[union-attr]
    store.close()
    assert intent is not None
    coinset.settle(
        input_coin_ids=intent.input_coin_ids,
        destination=SENDER_A,
        amount=REQUIRED_AMOUNT,
        height=90,
        pay_refund=False,
    )
    coinset.push_responses.append({"success": False, "error": "DOUBLE_SPEND"})

    h = build_harness(db_path, indexer=FakeIndexer([deposit]), coinset=coinset)
    try:
        report = h.orchestrator.run_cycle()
        assert report is not None
        assert report.failed_transient == 1
        marker = h.markers.get(deposit.tx_hash)
        assert marker is not None
        assert marker.outcome == MarkerOutcome.REFUND_FAILED_TRANSIENT
        assert marker.intent is None

        h.clock.advance(60)
        report = h.orchestrator.run_cycle()
        assert report is not None
        assert report.refunds_submitted == 1
        assert len(h.builder.payloads) == 1
        refund = h.refunds.get_by_deposit(deposit.tx_hash)
        assert refund is not None
        assert refund.refund_tx_hash != first_tx_hash
        _assert_single_refund(h, deposit)
    finally:
        h.close()


def test_crash_before_cursor_advance_redelivers_without_second_refund(tmp_path: Path) -> None:
    db_path = tmp_path / "rk.sqlite"
    deposit = make_deposit("cursor", height=10)
    h = build_harness(db_path, indexer=FakeIndexer([deposit]))
    h.orchestrator.run_cycle()
    h.store.conn.execute("DELETE FROM cursor")
    h.store.conn.commit()
    h.close()

    restarted = build_harness(db_path, indexer=FakeIndexer([deposit]))
    try:
        report = restarted.orchestrator.run_cycle()
        assert report is not None
        assert report.redelivered == 1
        assert restarted.builder.payloads == []
        assert restarted.cursor.get() == 10
        _assert_single_refund(restarted, deposit)
    finally:
        restarted.close()


def test_crash_after_flag_keeps_deposit_out_of_refunds(tmp_path: Path) -> None:
    db_path = tmp_path / "rk.sqlite"
    deposit = make_deposit("flag-crash", amount=REQUIRED_AMOUNT + 5, height=10)
    store = SqliteStore(db_path)
    markers = IdempotencyLedger(store)
    markers.reserve(deposit)
    resolver = DepositResolver(
        store=store, deposits=DepositStore(store), required_amount=REQUIRED_AMOUNT
    )
    with pytest.raises(DepositFlagged):
        resolver.resolve(deposit.sender_address, deposit.amount, deposit.tx_hash)
    store.close()

    h = build_harness(db_path, indexer=FakeIndexer([deposit]))
    try:
        h.orchestrator.run_cycle()
        marker = h.markers.get(deposit.tx_hash)
        assert marker is not None
        assert marker.outcome == MarkerOutcome.FLAGGED_FOR_REVIEW
        assert h.builder.payloads == []
        assert h.refunds.get_by_deposit(deposit.tx_hash) is None
    finally:
        h.close()
