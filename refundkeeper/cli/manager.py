from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from pathlib import Path

from refundkeeper.adapters.coinset import CoinsetError
from refundkeeper.config.io import load_program_config, resolve_db_path
from refundkeeper.core.markers import MarkerOutcome, ProcessedMarker
from refundkeeper.core.types import DepositRecord
from refundkeeper.daemon.main import build_coinset_adapter
from refundkeeper.engine.reconcile import RefundReconciler
from refundkeeper.notify.pushover import PushoverAlerter
from refundkeeper.storage.cursor import CursorStore
from refundkeeper.storage.deposits import DepositStore
from refundkeeper.storage.markers import IdempotencyLedger, MarkerNotFound
from refundkeeper.storage.refunds import RefundLedger
from refundkeeper.storage.sqlite import SqliteStore


def _default_program_config_path() -> str:
    home_default = Path("~/.refundkeeper/config/program.yaml").expanduser()
    if home_default.exists():
        return str(home_default)
    return "config/program.yaml"


def _resolve_db_path(program_config_path: Path, explicit_db_path: str | None) -> Path:
    if explicit_db_path:
        return Path(explicit_db_path).expanduser()
    program = load_program_config(program_config_path)
    return resolve_db_path(program.home_dir, None)


def _marker_json(marker: ProcessedMarker) -> dict:
    return {
        "tx_hash": marker.tx_hash,
        "outcome": marker.outcome.value,
        "sender_address": marker.sender_address,
        "amount": marker.amount,
        "block_height": marker.block_height,
        "attempts": marker.attempts,
        "error_kind": marker.error_kind.value if marker.error_kind else None,
        "last_error": marker.last_error,
        "next_attempt_at": marker.next_attempt_at.isoformat() if marker.next_attempt_at else None,
        "has_pending_intent": marker.intent is not None,
        "updated_at": marker.updated_at.isoformat() if marker.updated_at else None,
    }


def _record_json(record: DepositRecord) -> dict:
    payload = asdict(record)
    if record.refund_timestamp is not None:
        payload["refund_timestamp"] = record.refund_timestamp.isoformat()
    return payload


def _status(*, program_path: Path, state_db: str | None, events_limit: int) -> int:
    db_path = _resolve_db_path(program_path, state_db)
    store = SqliteStore(db_path)
    try:
        markers = IdempotencyLedger(store)
        refunds = RefundLedger(store, markers)
        deposits = DepositStore(store)
        payload = {
            "state_db": str(db_path),
            "cursor": CursorStore(store).get(),
            "markers_by_outcome": markers.count_by_outcome(),
            "refunds_by_status": refunds.count_by_status(),
            "flagged_deposits": [_record_json(r) for r in deposits.list_flagged(limit=20)],
            "recent_events": store.list_recent_audit_events(limit=events_limit),
        }
    finally:
        store.close()
    print(json.dumps(payload))
    return 0


def _markers(
    *, program_path: Path, state_db: str | None, outcome: str | None, limit: int
) -> int:
    try:
        selected = MarkerOutcome(outcome) if outcome else None
    except ValueError:
        print(json.dumps({"error": f"unknown_outcome:{outcome}"}))
        return 2
    store = SqliteStore(_resolve_db_path(program_path, state_db))
    try:
        rows = IdempotencyLedger(store).list_markers(outcome=selected, limit=limit)
    finally:
        store.close()
    print(json.dumps({"count": len(rows), "markers": [_marker_json(m) for m in rows]}))
    return 0


def _requeue(*, program_path: Path, state_db: str | None, tx_hash: str) -> int:
    store = SqliteStore(_resolve_db_path(program_path, state_db))
    try:
        marker = IdempotencyLedger(store).requeue(tx_hash.strip().lower())
    except (MarkerNotFound, ValueError) as exc:
        print(json.dumps({"requeued": False, "error": str(exc)}))
        return 2
    finally:
        store.close()
    print(json.dumps({"requeued": True, "marker": _marker_json(marker)}))
    return 0


def _register(
    *,
    program_path: Path,
    state_db: str | None,
    sender_address: str,
    owner_id: str | None,
) -> int:
    program = load_program_config(program_path)
    store = SqliteStore(_resolve_db_path(program_path, state_db))
    try:
        record = DepositStore(store).register_pending_deposit(
            sender_address=sender_address.strip().lower(),
            amount=program.required_amount_mojos,
            owner_id=owner_id,
        )
        store.add_audit_event(
            "signup_registered",
            {"record_id": record.id, "sender_address": record.sender_address},
        )
    finally:
        store.close()
    print(json.dumps({"registered": True, "record": _record_json(record)}))
    return 0


def _reconcile(*, program_path: Path, state_db: str | None, coinset_base_url: str) -> int:
    program = load_program_config(program_path)
    store = SqliteStore(_resolve_db_path(program_path, state_db))
    try:
        reconciler = RefundReconciler(
            store=store,
            coinset=build_coinset_adapter(program=program, coinset_base_url=coinset_base_url),
            refunds=RefundLedger(store, IdempotencyLedger(store)),
            min_confirmations=program.min_refund_confirmations,
            stale_after_seconds=program.refund_stale_after_seconds,
            alert=PushoverAlerter(program),
        )
        counts = reconciler.reconcile()
    except CoinsetError as exc:
        print(json.dumps({"reconciled": False, "error": str(exc)}))
        return 1
    finally:
        store.close()
    print(json.dumps({"reconciled": True, **counts}))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="RefundKeeper manager CLI")
    parser.add_argument("--program-config", default=_default_program_config_path())
    parser.add_argument("--state-db", default="")

    sub = parser.add_subparsers(dest="command", required=True)

    p_status = sub.add_parser("status")
    p_status.add_argument("--events-limit", type=int, default=30)

    p_markers = sub.add_parser("markers")
    p_markers.add_argument("--outcome", default="", choices=["", *[o.value for o in MarkerOutcome]])
    p_markers.add_argument("--limit", type=int, default=100)

    p_requeue = sub.add_parser("requeue")
    p_requeue.add_argument("tx_hash")

    p_register = sub.add_parser("register")
    p_register.add_argument("--sender", required=True, help="Sender puzzle hash (hex)")
    p_register.add_argument("--owner-id", default="")

    p_reconcile = sub.add_parser("reconcile")
    p_reconcile.add_argument("--coinset-base-url", default="")

    args = parser.parse_args()
    program_path = Path(args.program_config)
    state_db = args.state_db or None
    if args.command == "status":
        code = _status(
            program_path=program_path, state_db=state_db, events_limit=int(args.events_limit)
        )
    elif args.command == "markers":
        code = _markers(
            program_path=program_path,
            state_db=state_db,
            outcome=args.outcome or None,
            limit=int(args.limit),
        )
    elif args.command == "requeue":
        code = _requeue(program_path=program_path, state_db=state_db, tx_hash=args.tx_hash)
    elif args.command == "register":
        code = _register(
            program_path=program_path,
            state_db=state_db,
            sender_address=args.sender,
            owner_id=args.owner_id or None,
        )
    elif args.command == "reconcile":
        code = _reconcile(
            program_path=program_path,
            state_db=state_db,
            coinset_base_url=args.coinset_base_url,
        )
    else:
        raise ValueError(f"unsupported command: {args.command}")
    raise SystemExit(code)


if __name__ == "__main__":
    main()
