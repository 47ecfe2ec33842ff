from __future__ import annotations

from refundkeeper.storage.sqlite import SqliteStore, utcnow_iso


class CursorStore:
    def __init__(self, store: SqliteStore, *, initial_position: int = 0) -> None:
        self._store = store
        self._initial_position = max(0, int(initial_position))

    def get(self) -> int:
        row = self._store.conn.execute("SELECT position FROM cursor WHERE id = 1").fetchone()
        if row is None:
            return self._initial_position
        return int(row["position"])

    def advance(self, position: int) -> int:
        """Persist ``position`` unless it would move the cursor backwards."""
        self._store.conn.execute(
            """
            INSERT INTO cursor (id, position, updated_at)
            VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              position = MAX(cursor.position, excluded.position),
              updated_at = excluded.updated_at
            """,
            (max(int(position), self._initial_position), utcnow_iso()),
        )
        self._store.commit()
        return self.get()
