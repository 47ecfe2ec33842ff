from __future__ import annotations

import json
import sqlite3

from refundkeeper.core.markers import ErrorKind, MarkerOutcome
from refundkeeper.core.types import DepositRecord, RefundStatus, RefundTransaction
from refundkeeper.storage.markers import IdempotencyLedger
from refundkeeper.storage.sqlite import SqliteStore, parse_iso, utcnow_iso


class RefundLedgerError(RuntimeError):
    pass


def _refund_from_row(row: sqlite3.Row) -> RefundTransaction:
    return RefundTransaction(
        refund_tx_hash=str(row["refund_tx_hash"]),
        deposit_tx_hash=str(row["deposit_tx_hash"]),
        destination_address=str(row["destination_address"]),
        amount=int(row["amount"]),
        status=RefundStatus(row["status"]),
        confirmations=int(row["confirmations"]),
        input_coin_ids=list(json.loads(row["input_coin_ids_json"] or "[]")),
        spend_bundle_hex=str(row["spend_bundle_hex"]),
        confirmed_height=(
            int(row["confirmed_height"]) if row["confirmed_height"] is not None else None
        ),
        submitted_at=parse_iso(row["submitted_at"]),
    )


class RefundLedger:
    """Refund transactions plus the deposit and marker state they prove."""

    def __init__(self, store: SqliteStore, markers: IdempotencyLedger) -> None:
        self._store = store
        self._markers = markers

    def get_by_deposit(self, deposit_tx_hash: str) -> RefundTransaction | None:
        """The deposit's live refund; failed refunds stay behind as history only."""
        row = self._store.conn.execute(
            """
            SELECT * FROM refund_transaction
            WHERE deposit_tx_hash = ? AND status != ?
            """,
            (deposit_tx_hash, RefundStatus.FAILED.value),
        ).fetchone()
        return _refund_from_row(row) if row is not None else None

    def list_for_deposit(self, deposit_tx_hash: str) -> list[RefundTransaction]:
        rows = self._store.conn.execute(
            """
            SELECT * FROM refund_transaction
            WHERE deposit_tx_hash = ?
            ORDER BY submitted_at ASC, rowid ASC
            """,
            (deposit_tx_hash,),
        ).fetchall()
        return [_refund_from_row(row) for row in rows]

    def is_replaceable(self, deposit_tx_hash: str) -> bool:
        """True when every refund written for the deposit has failed."""
        refunds = self.list_for_deposit(deposit_tx_hash)
        return bool(refunds) and all(r.status == RefundStatus.FAILED for r in refunds)

    def pending_input_coin_ids(self) -> set[str]:
        rows = self._store.conn.execute(
            "SELECT input_coin_ids_json FROM refund_transaction WHERE status = ?",
            (RefundStatus.PENDING.value,),
        ).fetchall()
        coin_ids: set[str] = set()
        for row in rows:
            coin_ids.update(json.loads(row["input_coin_ids_json"] or "[]"))
        return coin_ids

    def get(self, refund_tx_hash: str) -> RefundTransaction | None:
        row = self._store.conn.execute(
            "SELECT * FROM refund_transaction WHERE refund_tx_hash = ?", (refund_tx_hash,)
        ).fetchone()
        return _refund_from_row(row) if row is not None else None

    def list_by_status(self, status: RefundStatus, *, limit: int = 500) -> list[RefundTransaction]:
        rows = self._store.conn.execute(
            """
            SELECT * FROM refund_transaction
            WHERE status = ?
            ORDER BY submitted_at ASC
            LIMIT ?
            """,
            (status.value, int(limit)),
        ).fetchall()
        return [_refund_from_row(row) for row in rows]

    def record_refund(self, record: DepositRecord, refund: RefundTransaction) -> None:
        """Write the refund, flip the deposit to refunded and advance the marker as one unit.

        A deposit whose previous refund failed takes the new refund as a replacement;
        ``refunded`` stays set and ``refund_tx_hash`` moves to the new transaction.
        """
        if record.deposit_tx_hash is None or record.deposit_tx_hash != refund.deposit_tx_hash:
            raise RefundLedgerError(
                f"refund_deposit_mismatch:{record.deposit_tx_hash}:{refund.deposit_tx_hash}"
            )
        now = utcnow_iso()
        with self._store.transaction() as conn:
            previous = conn.execute(
                "SELECT refund_tx_hash FROM deposit_record WHERE id = ?", (int(record.id),)
            ).fetchone()
            cur = conn.execute(
                """
                UPDATE deposit_record
                SET refunded = 1, refund_tx_hash = ?, refund_timestamp = ?, updated_at = ?
                WHERE id = ? AND verified = 1
                  AND (
                    refunded = 0
                    OR refund_tx_hash IN (
                      SELECT refund_tx_hash FROM refund_transaction WHERE status = ?
                    )
                  )
                """,
                (refund.refund_tx_hash, now, now, int(record.id), RefundStatus.FAILED.value),
            )
            if int(cur.rowcount or 0) != 1:
                raise RefundLedgerError(f"deposit_not_refundable:{record.id}")
            conn.execute(
                """
                INSERT INTO refund_transaction
                  (refund_tx_hash, deposit_tx_hash, destination_address, amount, status,
                   confirmations, input_coin_ids_json, spend_bundle_hex, confirmed_height,
                   submitted_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (
                    refund.refund_tx_hash,
                    refund.deposit_tx_hash,
                    refund.destination_address,
                    int(refund.amount),
                    refund.status.value,
                    int(refund.confirmations),
                    json.dumps(refund.input_coin_ids),
                    refund.spend_bundle_hex,
                    now,
                    now,
                ),
            )
            self._markers.transition(refund.deposit_tx_hash, MarkerOutcome.REFUND_SUBMITTED)
            self._markers.clear_intent(refund.deposit_tx_hash)
            payload = {
                "refund_tx_hash": refund.refund_tx_hash,
                "destination_address": refund.destination_address,
                "amount": int(refund.amount),
            }
            if previous is not None and previous["refund_tx_hash"]:
                payload["replaces_refund_tx_hash"] = str(previous["refund_tx_hash"])
            self._store.add_audit_event("refund_submitted", payload, tx_hash=refund.deposit_tx_hash)
        record.refunded = True
        record.refund_tx_hash = refund.refund_tx_hash
        record.refund_timestamp = parse_iso(now)
        refund.submitted_at = parse_iso(now)

    def update_confirmations(
        self, refund_tx_hash: str, *, confirmations: int, height: int | None
    ) -> None:
        self._store.conn.execute(
            """
            UPDATE refund_transaction
            SET confirmations = ?, confirmed_height = ?, updated_at = ?
            WHERE refund_tx_hash = ? AND status = ?
            """,
            (
                int(confirmations),
                height,
                utcnow_iso(),
                refund_tx_hash,
                RefundStatus.PENDING.value,
            ),
        )
        self._store.commit()

    def mark_confirmed(self, refund: RefundTransaction, *, confirmations: int, height: int) -> None:
        with self._store.transaction() as conn:
            conn.execute(
                """
                UPDATE refund_transaction
                SET status = ?, confirmations = ?, confirmed_height = ?, updated_at = ?
                WHERE refund_tx_hash = ?
                """,
                (
                    RefundStatus.CONFIRMED.value,
                    int(confirmations),
                    int(height),
                    utcnow_iso(),
                    refund.refund_tx_hash,
                ),
            )
            self._markers.transition(refund.deposit_tx_hash, MarkerOutcome.REFUND_CONFIRMED)
            self._store.add_audit_event(
                "refund_confirmed",
                {
                    "refund_tx_hash": refund.refund_tx_hash,
                    "confirmations": int(confirmations),
                    "height": int(height),
                },
                tx_hash=refund.deposit_tx_hash,
            )
        refund.status = RefundStatus.CONFIRMED
        refund.confirmations = int(confirmations)
        refund.confirmed_height = int(height)

    def mark_failed(self, refund: RefundTransaction, *, reason: str) -> None:
        with self._store.transaction() as conn:
            conn.execute(
                """
                UPDATE refund_transaction
                SET status = ?, updated_at = ?
                WHERE refund_tx_hash = ? AND status = ?
                """,
                (
                    RefundStatus.FAILED.value,
                    utcnow_iso(),
                    refund.refund_tx_hash,
                    RefundStatus.PENDING.value,
                ),
            )
            self._markers.transition(
                refund.deposit_tx_hash,
                MarkerOutcome.REFUND_FAILED_PERMANENT,
                error_kind=ErrorKind.FATAL,
                last_error=reason,
            )
            self._store.add_audit_event(
                "refund_failed",
                {"refund_tx_hash": refund.refund_tx_hash, "reason": reason},
                tx_hash=refund.deposit_tx_hash,
            )
        refund.status = RefundStatus.FAILED

    def touch_submitted(self, refund: RefundTransaction) -> None:
        now = utcnow_iso()
        self._store.conn.execute(
            """
            UPDATE refund_transaction SET submitted_at = ?, updated_at = ?
            WHERE refund_tx_hash = ?
            """,
            (now, now, refund.refund_tx_hash),
        )
        self._store.commit()
        refund.submitted_at = parse_iso(now)

    def count_by_status(self) -> dict[str, int]:
        rows = self._store.conn.execute(
            "SELECT status, COUNT(*) AS n FROM refund_transaction GROUP BY status"
        ).fetchall()
        counts = {status.value: 0 for status in RefundStatus}
        for row in rows:
            counts[str(row["status"])] = int(row["n"])
        return counts
