from __future__ import annotations

import logging

from refundkeeper.adapters.proofs import NullProofCapability, ProofCapability
from refundkeeper.core.types import DepositRecord
from refundkeeper.engine.errors import DepositFlagged, DepositQueued
from refundkeeper.storage.deposits import DepositStore
from refundkeeper.storage.sqlite import SqliteStore

AMOUNT_MISMATCH = "amount_mismatch"

_resolver_logger = logging.getLogger("refundkeeper.engine.resolver")


class DepositResolver:
    """Maps an observed deposit to a verified DepositRecord.

    Policy:
      * amounts must match exactly; anything else is flagged for review;
      * a sender with an unrefunded verified deposit queues further deposits;
      * a proactively registered record is verified in place;
      * otherwise a placeholder owner and a fresh verified record are created.
    """

    def __init__(
        self,
        *,
        store: SqliteStore,
        deposits: DepositStore,
        required_amount: int,
        proofs: ProofCapability | None = None,
    ) -> None:
        self._store = store
        self._deposits = deposits
        self._required_amount = int(required_amount)
        self._proofs = proofs or NullProofCapability()

    def resolve(self, sender_address: str, amount: int, tx_hash: str) -> DepositRecord:
        existing = self._deposits.get_by_deposit_tx_hash(tx_hash)
        if existing is not None:
            if existing.review_reason:
                raise DepositFlagged(existing, existing.review_reason)
            return existing

        pending = self._deposits.get_pending_signup(sender_address)

        if int(amount) != self._required_amount:
            with self._store.transaction():
                record = self._deposits.insert_record(
                    sender_address=sender_address,
                    owner_id=pending.owner_id if pending is not None else None,
                    amount=amount,
                    deposit_tx_hash=tx_hash,
                    verified=False,
                    review_reason=AMOUNT_MISMATCH,
                )
                self._store.add_audit_event(
                    "deposit_flagged",
                    {
                        "reason": AMOUNT_MISMATCH,
                        "sender_address": sender_address,
                        "amount": int(amount),
                        "required_amount": self._required_amount,
                    },
                    tx_hash=tx_hash,
                )
            raise DepositFlagged(record, AMOUNT_MISMATCH)

        open_record = self._deposits.get_open_verified(sender_address)
        if open_record is not None:
            raise DepositQueued(open_record)

        if pending is not None:
            record = self._deposits.mark_verified(
                pending.id, deposit_tx_hash=tx_hash, amount=amount
            )
            _resolver_logger.info(
                "deposit_verified record_id=%s sender=%s tx_hash=%s source=signup",
                record.id,
                sender_address,
                tx_hash,
            )
            return record

        with self._store.transaction():
            owner_id = self._deposits.create_owner(sender_address=sender_address, placeholder=True)
            record = self._deposits.insert_record(
                sender_address=sender_address,
                owner_id=owner_id,
                amount=amount,
                deposit_tx_hash=tx_hash,
                verified=True,
            )
            self._store.add_audit_event(
                "placeholder_owner_created",
                {"owner_id": owner_id, "sender_address": sender_address, "record_id": record.id},
                tx_hash=tx_hash,
            )
        _resolver_logger.info(
            "deposit_verified record_id=%s sender=%s tx_hash=%s source=placeholder owner_id=%s",
            record.id,
            sender_address,
            tx_hash,
            owner_id,
        )
        self._attach_commitment(owner_id, sender_address)
        return record

    def _attach_commitment(self, owner_id: str, sender_address: str) -> None:
        # Proof generation never blocks the refund.
        try:
            commitment = self._proofs.generate(owner_id, sender_address)
        except Exception as exc:
            _resolver_logger.warning(
                "proof_generation_failed owner_id=%s sender=%s error=%s",
                owner_id,
                sender_address,
                exc,
            )
            return
        if commitment:
            self._deposits.set_owner_commitment(owner_id, commitment)
