from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SqliteStore:
    """Owns the connection and schema shared by the cursor, marker, deposit and refund stores."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._transaction_depth = 0
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS owner (
              owner_id TEXT PRIMARY KEY,
              sender_address TEXT NOT NULL,
              placeholder INTEGER NOT NULL,
              proof_commitment TEXT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deposit_record (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              sender_address TEXT NOT NULL,
              owner_id TEXT NULL REFERENCES owner(owner_id),
              amount INTEGER NOT NULL,
              deposit_tx_hash TEXT NULL,
              verified INTEGER NOT NULL DEFAULT 0,
              refunded INTEGER NOT NULL DEFAULT 0,
              refund_tx_hash TEXT NULL,
              refund_timestamp TEXT NULL,
              review_reason TEXT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS deposit_record_one_open_per_sender
              ON deposit_record(sender_address) WHERE verified = 1 AND refunded = 0;

            CREATE UNIQUE INDEX IF NOT EXISTS deposit_record_tx_hash
              ON deposit_record(deposit_tx_hash) WHERE deposit_tx_hash IS NOT NULL;

            CREATE TRIGGER IF NOT EXISTS deposit_record_refund_is_final
            BEFORE UPDATE OF refunded ON deposit_record
            WHEN OLD.refunded = 1 AND NEW.refunded = 0
            BEGIN
              SELECT RAISE(ABORT, 'deposit_refunded_is_final');
            END;

            CREATE TABLE IF NOT EXISTS processed_marker (
              tx_hash TEXT PRIMARY KEY,
              outcome TEXT NOT NULL,
              sender_address TEXT NOT NULL,
              amount INTEGER NOT NULL,
              block_height INTEGER NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              error_kind TEXT NULL,
              last_error TEXT NULL,
              next_attempt_at TEXT NULL,
              intent_tx_id TEXT NULL,
              intent_spend_bundle_hex TEXT NULL,
              intent_input_coin_ids_json TEXT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cursor (
              id INTEGER PRIMARY KEY CHECK (id = 1),
              position INTEGER NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS refund_transaction (
              refund_tx_hash TEXT PRIMARY KEY,
              deposit_tx_hash TEXT NOT NULL,
              destination_address TEXT NOT NULL,
              amount INTEGER NOT NULL,
              status TEXT NOT NULL,
              confirmations INTEGER NOT NULL DEFAULT 0,
              input_coin_ids_json TEXT NOT NULL,
              spend_bundle_hex TEXT NOT NULL,
              confirmed_height INTEGER NULL,
              submitted_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS refund_transaction_one_live_per_deposit
              ON refund_transaction(deposit_tx_hash) WHERE status != 'failed';

            CREATE TRIGGER IF NOT EXISTS refund_transaction_confirmed_is_final
            BEFORE UPDATE OF status ON refund_transaction
            WHEN OLD.status = 'confirmed' AND NEW.status != 'confirmed'
            BEGIN
              SELECT RAISE(ABORT, 'refund_confirmed_is_final');
            END;

            CREATE TABLE IF NOT EXISTS audit_event (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              event_type TEXT NOT NULL,
              tx_hash TEXT NULL,
              payload_json TEXT NOT NULL,
              created_at TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several writes into one commit; nested use joins the outer unit."""
        self._transaction_depth += 1
        try:
            yield self.conn
        except BaseException:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                self.conn.rollback()
            raise
        else:
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                self.conn.commit()

    def commit(self) -> None:
        if self._transaction_depth == 0:
            self.conn.commit()

    def rollback(self) -> None:
        if self._transaction_depth == 0:
            self.conn.rollback()

    def add_audit_event(self, event_type: str, payload: dict, tx_hash: str | None = None) -> None:
        self.conn.execute(
            """
            INSERT INTO audit_event (event_type, tx_hash, payload_json, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (event_type, tx_hash, json.dumps(payload, sort_keys=True), utcnow_iso()),
        )
        self.commit()

    def list_recent_audit_events(
        self,
        *,
        event_types: list[str] | None = None,
        tx_hash: str | None = None,
        limit: int = 50,
    ) -> list[dict]:
        if limit <= 0:
            return []
        where_clauses: list[str] = []
        params: list[object] = []
        if event_types:
            placeholders = ",".join("?" for _ in event_types)
            where_clauses.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if tx_hash:
            where_clauses.append("tx_hash = ?")
            params.append(tx_hash)
        where_sql = ""
        if where_clauses:
            where_sql = "WHERE " + " AND ".join(where_clauses)
        rows = self.conn.execute(
            f"""
            SELECT id, event_type, tx_hash, payload_json, created_at
            FROM audit_event
            {where_sql}
            ORDER BY id DESC
            LIMIT ?
            """,
            [*params, int(limit)],
        ).fetchall()
        return [
            {
                "id": int(row["id"]),
                "event_type": str(row["event_type"]),
                "tx_hash": str(row["tx_hash"]) if row["tx_hash"] is not None else None,
                "payload": json.loads(str(row["payload_json"])),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]
