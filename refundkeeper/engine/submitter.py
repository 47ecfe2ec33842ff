from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from refundkeeper.adapters.coinset import CoinsetAdapter, CoinsetError, normalize_hex
from refundkeeper.config.models import CustodialKeyConfig
from refundkeeper.core.types import DepositRecord, RefundIntent, RefundStatus, RefundTransaction
from refundkeeper.engine.errors import (
    FatalRefundError,
    TransientRefundError,
    refund_error_for_kind,
)
from refundkeeper.storage.markers import IdempotencyLedger
from refundkeeper.storage.refunds import RefundLedger

BuildFn = Callable[[dict[str, Any]], dict[str, Any]]

_ACCEPTED_STATUSES = {"SUCCESS", "PENDING"}
_ALREADY_ACCEPTED_MARKERS = ("ALREADY_INCLUDING_TRANSACTION",)
_INPUTS_CONSUMED_MARKERS = ("DOUBLE_SPEND", "UNKNOWN_UNSPENT", "MINTING_COIN")
_TRANSIENT_MARKERS = (
    "MEMPOOL_IS_FULL",
    "MEMPOOL_CONFLICT",
    "INVALID_FEE_LOW_FEE",
    "INVALID_FEE_TOO_CLOSE_TO_ZERO",
    "NO_TRANSACTIONS_WHILE_SYNCING",
)
_FATAL_MARKERS = (
    "BAD_AGGREGATE_SIGNATURE",
    "INVALID_SPEND_BUNDLE",
    "GENERATOR_RUNTIME_ERROR",
    "INVALID_CONDITION",
    "COST_EXCEEDS_MAX",
    "WRONG_PUZZLE_HASH",
    "RESERVE_FEE_CONDITION_FAILED",
)

_submitter_logger = logging.getLogger("refundkeeper.engine.submitter")


def classify_push_response(response: dict[str, Any]) -> tuple[str, str]:
    """Map a push_tx payload to (verdict, reason).

    Verdicts: ``accepted``, ``inputs_consumed``, ``transient`` and ``fatal``.
    """
    status = str(response.get("status") or "").strip().upper()
    if bool(response.get("success", False)) and status in _ACCEPTED_STATUSES | {""}:
        return "accepted", status.lower() or "success"
    error = str(response.get("error") or status or "push_tx_rejected")
    upper = error.upper()
    if any(marker in upper for marker in _ALREADY_ACCEPTED_MARKERS):
        return "accepted", "already_in_mempool"
    if any(marker in upper for marker in _INPUTS_CONSUMED_MARKERS):
        return "inputs_consumed", error
    if any(marker in upper for marker in _TRANSIENT_MARKERS):
        return "transient", error
    if any(marker in upper for marker in _FATAL_MARKERS):
        return "fatal", error
    return "transient", error


class RefundSubmitter:
    """Builds, persists and broadcasts one refund per verified deposit.

    All calls serialize on the custodial lock, and every build excludes the
    custodial coins held by pending refunds and stored intents, so two refunds
    never select the same coins even while the first is still in the mempool.
    The signed bundle is stored on the deposit marker before it is pushed; a
    retry after a crash or network failure rebroadcasts that exact bundle
    instead of signing a new one, so a deposit can only ever be paid back once.
    A refund is rebuilt only after its predecessor has been marked failed.
    """

    def __init__(
        self,
        *,
        coinset: CoinsetAdapter,
        markers: IdempotencyLedger,
        refunds: RefundLedger,
        custodial: CustodialKeyConfig,
        network: str,
        fee_mojos: int = 0,
        build_fn: BuildFn | None = None,
        custodial_lock: threading.Lock | None = None,
    ) -> None:
        self._coinset = coinset
        self._markers = markers
        self._refunds = refunds
        self._custodial = custodial
        self._network = network
        self._fee_mojos = int(fee_mojos)
        if build_fn is None:
            from refundkeeper.signing import build_refund_spend_bundle

            build_fn = build_refund_spend_bundle
        self._build_fn = build_fn
        self._lock = custodial_lock or threading.Lock()

    def submit_refund(self, record: DepositRecord) -> RefundTransaction:
        if not record.verified or record.deposit_tx_hash is None:
            raise FatalRefundError(f"deposit_not_verified:{record.id}")
        if record.refunded and not self._refunds.is_replaceable(record.deposit_tx_hash):
            raise FatalRefundError(f"deposit_already_refunded:{record.id}")
        with self._lock:
            existing = self._refunds.get_by_deposit(record.deposit_tx_hash)
            if existing is not None:
                return existing
            marker = self._markers.get(record.deposit_tx_hash)
            if marker is not None and marker.intent is not None:
                _submitter_logger.info(
                    "refund_rebroadcast deposit=%s refund_tx=%s",
                    record.deposit_tx_hash,
                    marker.intent.tx_id,
                )
                return self._push(record, marker.intent)
            intent = self._build(record)
            self._markers.record_intent(record.deposit_tx_hash, intent)
            return self._push(record, intent)

    def _build(self, record: DepositRecord) -> RefundIntent:
        payload = {
            "network": self._network,
            "custodial_address": self._custodial.address,
            "keyring_yaml_path": self._custodial.keyring_yaml_path,
            "fingerprint": self._custodial.fingerprint,
            "destination_puzzle_hash": record.sender_address,
            "amount": int(record.amount),
            "fee": self._fee_mojos,
            "exclude_coin_ids": sorted(
                self._refunds.pending_input_coin_ids() | self._markers.intent_input_coin_ids()
            ),
        }
        result = self._build_fn(payload)
        if str(result.get("status", "")) != "executed":
            reason = str(result.get("reason", "refund_build_failed"))
            raise refund_error_for_kind(str(result.get("error_kind", "fatal")), reason)
        tx_id = normalize_hex(result.get("tx_id"))
        spend_bundle_hex = normalize_hex(result.get("spend_bundle_hex"))
        if not tx_id or not spend_bundle_hex:
            raise FatalRefundError("refund_build_missing_spend_bundle")
        return RefundIntent(
            tx_id=tx_id,
            spend_bundle_hex=spend_bundle_hex,
            input_coin_ids=[normalize_hex(c) for c in result.get("input_coin_ids") or []],
        )

    def _push(self, record: DepositRecord, intent: RefundIntent) -> RefundTransaction:
        assert record.deposit_tx_hash is not None
        try:
            response = self._coinset.push_tx(spend_bundle_hex=intent.spend_bundle_hex)
        except CoinsetError as exc:
            # The intent stays on the marker; the next attempt rebroadcasts it.
            raise TransientRefundError(f"push_tx_unavailable:{exc}") from exc

        verdict, reason = classify_push_response(response)
        if verdict == "accepted":
            _submitter_logger.info(
                "refund_pushed deposit=%s refund_tx=%s amount=%s result=%s",
                record.deposit_tx_hash,
                intent.tx_id,
                record.amount,
                reason,
            )
            return self._refund_from_intent(record, intent)
        if verdict == "inputs_consumed":
            if self._refund_already_on_chain(record, intent):
                _submitter_logger.info(
                    "refund_found_on_chain deposit=%s refund_tx=%s",
                    record.deposit_tx_hash,
                    intent.tx_id,
                )
                return self._refund_from_intent(record, intent)
            self._markers.clear_intent(record.deposit_tx_hash)
            raise TransientRefundError(f"refund_inputs_spent_elsewhere:{reason}")
        if verdict == "fatal":
            self._markers.clear_intent(record.deposit_tx_hash)
            raise FatalRefundError(f"push_tx_rejected:{reason}")
        raise TransientRefundError(f"push_tx_rejected:{reason}")

    def _refund_already_on_chain(self, record: DepositRecord, intent: RefundIntent) -> bool:
        spent_heights: list[int] = []
        for coin_id in intent.input_coin_ids:
            try:
                coin_record = self._coinset.get_coin_record_by_name(coin_name_hex=coin_id)
            except CoinsetError as exc:
                raise TransientRefundError(f"refund_lookup_unavailable:{exc}") from exc
            if coin_record is None:
                continue
            spent_height = int(coin_record.get("spent_block_index") or 0)
            if spent_height > 0:
                spent_heights.append(spent_height)
        if not spent_heights:
            return False
        try:
            refund_coin = self._coinset.find_refund_coin(
                destination_puzzle_hash=record.sender_address,
                amount=record.amount,
                parent_coin_ids=intent.input_coin_ids,
                start_height=min(spent_heights),
            )
        except CoinsetError as exc:
            raise TransientRefundError(f"refund_lookup_unavailable:{exc}") from exc
        return refund_coin is not None

    @staticmethod
    def _refund_from_intent(record: DepositRecord, intent: RefundIntent) -> RefundTransaction:
        assert record.deposit_tx_hash is not None
        return RefundTransaction(
            refund_tx_hash=intent.tx_id,
            deposit_tx_hash=record.deposit_tx_hash,
            destination_address=record.sender_address,
            amount=int(record.amount),
            status=RefundStatus.PENDING,
            input_coin_ids=list(intent.input_coin_ids),
            spend_bundle_hex=intent.spend_bundle_hex,
        )
