from __future__ import annotations

import json
import sqlite3
from datetime import datetime

from refundkeeper.config.models import RetryPolicy
from refundkeeper.core.markers import (
    ErrorKind,
    MarkerOutcome,
    ProcessedMarker,
    check_transition,
)
from refundkeeper.core.types import IndexedDeposit, RefundIntent, ReserveResult
from refundkeeper.storage.sqlite import SqliteStore, parse_iso, utcnow_iso


class MarkerNotFound(LookupError):
    pass


def _marker_from_row(row: sqlite3.Row) -> ProcessedMarker:
    intent = None
    if row["intent_tx_id"]:
        intent = RefundIntent(
            tx_id=str(row["intent_tx_id"]),
            spend_bundle_hex=str(row["intent_spend_bundle_hex"] or ""),
            input_coin_ids=list(json.loads(row["intent_input_coin_ids_json"] or "[]")),
        )
    return ProcessedMarker(
        tx_hash=str(row["tx_hash"]),
        outcome=MarkerOutcome(row["outcome"]),
        sender_address=str(row["sender_address"]),
        amount=int(row["amount"]),
        block_height=int(row["block_height"]),
        attempts=int(row["attempts"]),
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        last_error=row["last_error"],
        next_attempt_at=parse_iso(row["next_attempt_at"]),
        intent=intent,
        created_at=parse_iso(row["created_at"]),
        updated_at=parse_iso(row["updated_at"]),
    )


class IdempotencyLedger:
    """Durable per-deposit processing markers, independent of the cursor."""

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def reserve(self, deposit: IndexedDeposit) -> ReserveResult:
        now = utcnow_iso()
        cur = self._store.conn.execute(
            """
            INSERT OR IGNORE INTO processed_marker
              (tx_hash, outcome, sender_address, amount, block_height, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                deposit.tx_hash,
                MarkerOutcome.RESERVED.value,
                deposit.sender_address,
                int(deposit.amount),
                int(deposit.block_height),
                now,
                now,
            ),
        )
        self._store.commit()
        if int(cur.rowcount or 0) == 1:
            return ReserveResult.NEWLY_RESERVED
        return ReserveResult.ALREADY_RESERVED

    def get(self, tx_hash: str) -> ProcessedMarker | None:
        row = self._store.conn.execute(
            "SELECT * FROM processed_marker WHERE tx_hash = ?", (tx_hash,)
        ).fetchone()
        if row is None:
            return None
        return _marker_from_row(row)

    def _require(self, tx_hash: str) -> ProcessedMarker:
        marker = self.get(tx_hash)
        if marker is None:
            raise MarkerNotFound(f"marker_not_found:{tx_hash}")
        return marker

    def transition(
        self,
        tx_hash: str,
        outcome: MarkerOutcome,
        *,
        error_kind: ErrorKind | None = None,
        last_error: str | None = None,
        next_attempt_at: datetime | None = None,
        count_attempt: bool = False,
    ) -> ProcessedMarker:
        marker = self._require(tx_hash)
        check_transition(tx_hash, marker.outcome, outcome)
        self._store.conn.execute(
            """
            UPDATE processed_marker
            SET outcome = ?,
                error_kind = ?,
                last_error = ?,
                next_attempt_at = ?,
                attempts = attempts + ?,
                updated_at = ?
            WHERE tx_hash = ?
            """,
            (
                outcome.value,
                error_kind.value if error_kind else None,
                last_error,
                next_attempt_at.isoformat() if next_attempt_at else None,
                1 if count_attempt else 0,
                utcnow_iso(),
                tx_hash,
            ),
        )
        self._store.commit()
        return self._require(tx_hash)

    def annotate(self, tx_hash: str, *, error_kind: ErrorKind, last_error: str) -> None:
        """Record why a marker is waiting without changing its outcome."""
        self._store.conn.execute(
            """
            UPDATE processed_marker
            SET error_kind = ?, last_error = ?, updated_at = ?
            WHERE tx_hash = ?
            """,
            (error_kind.value, last_error, utcnow_iso(), tx_hash),
        )
        self._store.commit()

    def record_intent(self, tx_hash: str, intent: RefundIntent) -> None:
        self._store.conn.execute(
            """
            UPDATE processed_marker
            SET intent_tx_id = ?,
                intent_spend_bundle_hex = ?,
                intent_input_coin_ids_json = ?,
                updated_at = ?
            WHERE tx_hash = ?
            """,
            (
                intent.tx_id,
                intent.spend_bundle_hex,
                json.dumps(intent.input_coin_ids),
                utcnow_iso(),
                tx_hash,
            ),
        )
        self._store.commit()

    def clear_intent(self, tx_hash: str) -> None:
        self._store.conn.execute(
            """
            UPDATE processed_marker
            SET intent_tx_id = NULL,
                intent_spend_bundle_hex = NULL,
                intent_input_coin_ids_json = NULL,
                updated_at = ?
            WHERE tx_hash = ?
            """,
            (utcnow_iso(), tx_hash),
        )
        self._store.commit()

    def intent_input_coin_ids(self) -> set[str]:
        """Custodial coins already committed to a signed but unrecorded refund."""
        rows = self._store.conn.execute(
            """
            SELECT intent_input_coin_ids_json FROM processed_marker
            WHERE intent_tx_id IS NOT NULL
            """
        ).fetchall()
        coin_ids: set[str] = set()
        for row in rows:
            coin_ids.update(json.loads(row["intent_input_coin_ids_json"] or "[]"))
        return coin_ids

    def due_for_retry(self, *, now: datetime, policy: RetryPolicy) -> list[ProcessedMarker]:
        cap = int(policy.permanent_failure_retry_cap)
        rows = self._store.conn.execute(
            """
            SELECT * FROM processed_marker
            WHERE outcome = ?
               OR (outcome = ? AND (next_attempt_at IS NULL OR next_attempt_at <= ?))
               OR (outcome = ? AND error_kind = ? AND (? = 0 OR attempts < ?))
            ORDER BY block_height ASC, tx_hash ASC
            """,
            (
                MarkerOutcome.RESERVED.value,
                MarkerOutcome.REFUND_FAILED_TRANSIENT.value,
                now.isoformat(),
                MarkerOutcome.REFUND_FAILED_PERMANENT.value,
                ErrorKind.FUNDING.value,
                cap,
                cap,
            ),
        ).fetchall()
        return [_marker_from_row(row) for row in rows]

    def requeue(self, tx_hash: str) -> ProcessedMarker:
        """Operator remediation: make a permanently failed marker retryable again."""
        marker = self._require(tx_hash)
        if marker.outcome != MarkerOutcome.REFUND_FAILED_PERMANENT:
            raise ValueError(f"marker_not_permanently_failed:{tx_hash}:{marker.outcome.value}")
        with self._store.transaction():
            self.transition(
                tx_hash,
                MarkerOutcome.REFUND_FAILED_TRANSIENT,
                error_kind=ErrorKind.TRANSIENT,
                last_error=f"requeued_by_operator:{marker.last_error or ''}",
            )
            self._store.conn.execute(
                "UPDATE processed_marker SET attempts = 0 WHERE tx_hash = ?", (tx_hash,)
            )
            self._store.add_audit_event(
                "marker_requeued",
                {"previous_error_kind": marker.error_kind, "attempts": marker.attempts},
                tx_hash=tx_hash,
            )
        return self._require(tx_hash)

    def count_by_outcome(self) -> dict[str, int]:
        rows = self._store.conn.execute(
            "SELECT outcome, COUNT(*) AS n FROM processed_marker GROUP BY outcome"
        ).fetchall()
        counts = {outcome.value: 0 for outcome in MarkerOutcome}
        for row in rows:
            counts[str(row["outcome"])] = int(row["n"])
        return counts

    def list_markers(
        self, *, outcome: MarkerOutcome | None = None, limit: int = 100
    ) -> list[ProcessedMarker]:
        if limit <= 0:
            return []
        if outcome is not None:
            rows = self._store.conn.execute(
                """
                SELECT * FROM processed_marker
                WHERE outcome = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (outcome.value, int(limit)),
            ).fetchall()
        else:
            rows = self._store.conn.execute(
                "SELECT * FROM processed_marker ORDER BY updated_at DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [_marker_from_row(row) for row in rows]
