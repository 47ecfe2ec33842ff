from __future__ import annotations

from refundkeeper.core.markers import ErrorKind
from refundkeeper.core.types import DepositRecord


class RefundError(Exception):
    error_kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InsufficientFundsError(RefundError):
    error_kind = ErrorKind.FUNDING


class TransientRefundError(RefundError):
    error_kind = ErrorKind.TRANSIENT


class FatalRefundError(RefundError):
    error_kind = ErrorKind.FATAL


def refund_error_for_kind(error_kind: str, reason: str) -> RefundError:
    if error_kind == ErrorKind.FUNDING:
        return InsufficientFundsError(reason)
    if error_kind == ErrorKind.TRANSIENT:
        return TransientRefundError(reason)
    return FatalRefundError(reason)


class DepositFlagged(Exception):
    """The deposit needs manual review and must not be refunded automatically."""

    def __init__(self, record: DepositRecord, reason: str) -> None:
        super().__init__(f"deposit_flagged:{reason}")
        self.record = record
        self.reason = reason


class DepositQueued(Exception):
    """The sender still has an unrefunded deposit; this one waits behind it."""

    def __init__(self, blocking_record: DepositRecord) -> None:
        super().__init__(f"queued_behind_deposit:{blocking_record.deposit_tx_hash}")
        self.blocking_record = blocking_record
