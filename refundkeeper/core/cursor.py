from __future__ import annotations

from collections.abc import Iterable

from refundkeeper.core.types import IndexedDeposit


def plan_cursor_advance(
    current: int,
    batch: Iterable[IndexedDeposit],
    accounted_tx_hashes: set[str],
) -> int:
    """Return the cursor height to persist after processing ``batch``.

    Fetches are inclusive of the cursor height, so parking the cursor on the
    lowest unaccounted height redelivers that block (and anything after it)
    on the next cycle while already-marked deposits are skipped by the
    idempotency ledger.
    """
    deposits = list(batch)
    if not deposits:
        return current
    blocked = [d.block_height for d in deposits if d.tx_hash not in accounted_tx_hashes]
    target = min(blocked) if blocked else max(d.block_height for d in deposits)
    return max(current, target)
