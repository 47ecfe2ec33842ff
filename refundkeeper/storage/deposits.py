from __future__ import annotations

import secrets
import sqlite3

from refundkeeper.core.types import DepositRecord
from refundkeeper.storage.sqlite import SqliteStore, parse_iso, utcnow_iso

_RECORD_COLUMNS = """
  id, sender_address, owner_id, amount, deposit_tx_hash, verified, refunded,
  refund_tx_hash, refund_timestamp, review_reason
"""


def _record_from_row(row: sqlite3.Row) -> DepositRecord:
    return DepositRecord(
        id=int(row["id"]),
        sender_address=str(row["sender_address"]),
        owner_id=row["owner_id"],
        amount=int(row["amount"]),
        deposit_tx_hash=row["deposit_tx_hash"],
        verified=bool(row["verified"]),
        refunded=bool(row["refunded"]),
        refund_tx_hash=row["refund_tx_hash"],
        refund_timestamp=parse_iso(row["refund_timestamp"]),
        review_reason=row["review_reason"],
    )


class DepositStore:
    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def _fetch_one(self, where_sql: str, params: tuple) -> DepositRecord | None:
        row = self._store.conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM deposit_record WHERE {where_sql} "
            "ORDER BY id ASC LIMIT 1",
            params,
        ).fetchone()
        return _record_from_row(row) if row is not None else None

    def get(self, record_id: int) -> DepositRecord | None:
        return self._fetch_one("id = ?", (int(record_id),))

    def get_by_deposit_tx_hash(self, tx_hash: str) -> DepositRecord | None:
        return self._fetch_one("deposit_tx_hash = ?", (tx_hash,))

    def get_open_verified(self, sender_address: str) -> DepositRecord | None:
        return self._fetch_one(
            "sender_address = ? AND verified = 1 AND refunded = 0", (sender_address,)
        )

    def get_pending_signup(self, sender_address: str) -> DepositRecord | None:
        """Oldest proactively registered record still waiting for its deposit."""
        return self._fetch_one(
            """
            sender_address = ? AND verified = 0 AND refunded = 0
              AND deposit_tx_hash IS NULL AND review_reason IS NULL
            """,
            (sender_address,),
        )

    def list_for_sender(self, sender_address: str) -> list[DepositRecord]:
        rows = self._store.conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM deposit_record WHERE sender_address = ? ORDER BY id",
            (sender_address,),
        ).fetchall()
        return [_record_from_row(row) for row in rows]

    def list_flagged(self, *, limit: int = 100) -> list[DepositRecord]:
        rows = self._store.conn.execute(
            f"""
            SELECT {_RECORD_COLUMNS} FROM deposit_record
            WHERE review_reason IS NOT NULL
            ORDER BY id DESC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [_record_from_row(row) for row in rows]

    def create_owner(
        self,
        *,
        sender_address: str,
        placeholder: bool,
        owner_id: str | None = None,
        proof_commitment: str | None = None,
    ) -> str:
        resolved_owner_id = owner_id or f"auto_{secrets.token_hex(8)}"
        self._store.conn.execute(
            """
            INSERT INTO owner (owner_id, sender_address, placeholder, proof_commitment, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                resolved_owner_id,
                sender_address,
                1 if placeholder else 0,
                proof_commitment or None,
                utcnow_iso(),
            ),
        )
        self._store.commit()
        return resolved_owner_id

    def get_owner(self, owner_id: str) -> dict | None:
        row = self._store.conn.execute(
            """
            SELECT owner_id, sender_address, placeholder, proof_commitment, created_at
            FROM owner WHERE owner_id = ?
            """,
            (owner_id,),
        ).fetchone()
        if row is None:
            return None
        return {
            "owner_id": str(row["owner_id"]),
            "sender_address": str(row["sender_address"]),
            "placeholder": bool(row["placeholder"]),
            "proof_commitment": row["proof_commitment"],
            "created_at": str(row["created_at"]),
        }

    def set_owner_commitment(self, owner_id: str, commitment: str) -> None:
        self._store.conn.execute(
            "UPDATE owner SET proof_commitment = ? WHERE owner_id = ?",
            (commitment, owner_id),
        )
        self._store.commit()

    def insert_record(
        self,
        *,
        sender_address: str,
        owner_id: str | None,
        amount: int,
        deposit_tx_hash: str | None,
        verified: bool,
        review_reason: str | None = None,
    ) -> DepositRecord:
        now = utcnow_iso()
        cur = self._store.conn.execute(
            """
            INSERT INTO deposit_record
              (sender_address, owner_id, amount, deposit_tx_hash, verified, refunded,
               review_reason, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
            """,
            (
                sender_address,
                owner_id,
                int(amount),
                deposit_tx_hash,
                1 if verified else 0,
                review_reason,
                now,
                now,
            ),
        )
        self._store.commit()
        record = self.get(int(cur.lastrowid))
        assert record is not None
        return record

    def mark_verified(self, record_id: int, *, deposit_tx_hash: str, amount: int) -> DepositRecord:
        self._store.conn.execute(
            """
            UPDATE deposit_record
            SET verified = 1, deposit_tx_hash = ?, amount = ?, updated_at = ?
            WHERE id = ? AND verified = 0 AND refunded = 0
            """,
            (deposit_tx_hash, int(amount), utcnow_iso(), int(record_id)),
        )
        self._store.commit()
        record = self.get(record_id)
        assert record is not None
        return record

    def register_pending_deposit(
        self, *, sender_address: str, amount: int, owner_id: str | None = None
    ) -> DepositRecord:
        """Proactive record created when a user starts signup, before paying."""
        with self._store.transaction():
            if owner_id is None or self.get_owner(owner_id) is None:
                owner_id = self.create_owner(
                    sender_address=sender_address, placeholder=False, owner_id=owner_id
                )
            return self.insert_record(
                sender_address=sender_address,
                owner_id=owner_id,
                amount=amount,
                deposit_tx_hash=None,
                verified=False,
            )
