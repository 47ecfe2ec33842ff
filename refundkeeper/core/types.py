from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class RefundStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ReserveResult(StrEnum):
    NEWLY_RESERVED = "newly_reserved"
    ALREADY_RESERVED = "already_reserved"


@dataclass(frozen=True, slots=True)
class IndexedDeposit:
    """One coin paid to the deposit address, as reported by the indexer."""

    tx_hash: str
    sender_address: str
    amount: int
    block_height: int
    block_time: int
    confirmations: int


@dataclass(slots=True)
class DepositRecord:
    id: int
    sender_address: str
    owner_id: str | None
    amount: int
    deposit_tx_hash: str | None
    verified: bool
    refunded: bool
    refund_tx_hash: str | None = None
    refund_timestamp: datetime | None = None
    review_reason: str | None = None


@dataclass(slots=True)
class RefundTransaction:
    refund_tx_hash: str
    deposit_tx_hash: str
    destination_address: str
    amount: int
    status: RefundStatus = RefundStatus.PENDING
    confirmations: int = 0
    input_coin_ids: list[str] = field(default_factory=list)
    spend_bundle_hex: str = ""
    confirmed_height: int | None = None
    submitted_at: datetime | None = None


@dataclass(slots=True)
class RefundIntent:
    """Signed refund persisted before it is pushed, so a restart can rebroadcast it."""

    tx_id: str
    spend_bundle_hex: str
    input_coin_ids: list[str]
