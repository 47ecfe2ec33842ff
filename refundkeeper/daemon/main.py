from __future__ import annotations

import argparse
import fcntl
import json
import logging
import os
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from refundkeeper.adapters.coinset import CoinsetAdapter, CoinsetIndexer
from refundkeeper.adapters.proofs import build_proof_capability
from refundkeeper.config.io import load_program_config, resolve_db_path
from refundkeeper.config.models import ProgramConfig
from refundkeeper.core.notifications import AlertEvent
from refundkeeper.engine.orchestrator import PollOrchestrator
from refundkeeper.engine.reconcile import RefundReconciler
from refundkeeper.engine.resolver import DepositResolver
from refundkeeper.engine.submitter import RefundSubmitter
from refundkeeper.logging_setup import initialize_file_logging, shutdown_file_logging
from refundkeeper.notify.pushover import PushoverAlerter
from refundkeeper.storage.cursor import CursorStore
from refundkeeper.storage.deposits import DepositStore
from refundkeeper.storage.markers import IdempotencyLedger
from refundkeeper.storage.refunds import RefundLedger
from refundkeeper.storage.sqlite import SqliteStore

_DAEMON_SERVICE_NAME = "daemon"
_LOCK_FILE_NAME = "daemon.lock"
_daemon_logger = logging.getLogger("refundkeeper.daemon")


class DaemonAlreadyRunning(RuntimeError):
    pass


@dataclass(slots=True)
class Engine:
    store: SqliteStore
    coinset: CoinsetAdapter
    orchestrator: PollOrchestrator
    reconciler: RefundReconciler
    markers: IdempotencyLedger
    deposits: DepositStore
    refunds: RefundLedger

    def close(self) -> None:
        self.store.close()


def _initialize_daemon_file_logging(program: ProgramConfig) -> None:
    initialize_file_logging(
        service_name=_DAEMON_SERVICE_NAME,
        home_dir=program.home_dir,
        log_level=program.app_log_level,
        logger=_daemon_logger,
    )


def _resolve_deposit_puzzle_hash(program: ProgramConfig) -> str:
    if program.deposit_puzzle_hash:
        return program.deposit_puzzle_hash
    from refundkeeper.signing import address_to_puzzle_hash_hex

    return address_to_puzzle_hash_hex(program.deposit_address)


def _resolve_state_dir(program: ProgramConfig, explicit_state_dir: str | None) -> Path:
    if explicit_state_dir:
        return Path(explicit_state_dir).expanduser()
    return (Path(program.home_dir).expanduser() / "state").resolve()


def build_coinset_adapter(
    *, program: ProgramConfig, coinset_base_url: str | None
) -> CoinsetAdapter:
    base_url = (coinset_base_url or "").strip() or program.coinset_base_url or None
    return CoinsetAdapter(base_url, network=program.app_network)


def build_engine(
    *,
    program: ProgramConfig,
    db_path: Path,
    coinset: CoinsetAdapter,
    deposit_puzzle_hash: str | None = None,
    alert: Callable[[AlertEvent], None] | None = None,
    stop_event: threading.Event | None = None,
    build_fn: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
) -> Engine:
    """Wire one engine instance from config; nothing here is process-global."""
    store = SqliteStore(db_path)
    markers = IdempotencyLedger(store)
    deposits = DepositStore(store)
    refunds = RefundLedger(store, markers)
    alert_fn = alert if alert is not None else PushoverAlerter(program)
    indexer = CoinsetIndexer(
        coinset,
        deposit_puzzle_hash=deposit_puzzle_hash or _resolve_deposit_puzzle_hash(program),
    )
    resolver = DepositResolver(
        store=store,
        deposits=deposits,
        required_amount=program.required_amount_mojos,
        proofs=build_proof_capability(program.proof_command),
    )
    submitter = RefundSubmitter(
        coinset=coinset,
        markers=markers,
        refunds=refunds,
        custodial=program.custodial,
        network=program.app_network,
        fee_mojos=program.refund_fee_mojos,
        build_fn=build_fn,
    )
    reconciler = RefundReconciler(
        store=store,
        coinset=coinset,
        refunds=refunds,
        min_confirmations=program.min_refund_confirmations,
        stale_after_seconds=program.refund_stale_after_seconds,
        alert=alert_fn,
    )
    orchestrator = PollOrchestrator(
        store=store,
        indexer=indexer,
        cursor=CursorStore(store),
        markers=markers,
        resolver=resolver,
        submitter=submitter,
        refunds=refunds,
        reconciler=reconciler,
        retry_policy=program.retry,
        required_amount=program.required_amount_mojos,
        min_deposit_confirmations=program.min_deposit_confirmations,
        alert=alert_fn,
        stop_event=stop_event,
    )
    return Engine(
        store=store,
        coinset=coinset,
        orchestrator=orchestrator,
        reconciler=reconciler,
        markers=markers,
        deposits=deposits,
        refunds=refunds,
    )


@contextmanager
def daemon_lock(state_dir: Path) -> Iterator[TextIO]:
    """Exclusive, non-blocking lock so two daemons never share one home directory."""
    state_dir.mkdir(parents=True, exist_ok=True)
    lock_path = state_dir / _LOCK_FILE_NAME
    handle = lock_path.open("a+", encoding="utf-8")
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise DaemonAlreadyRunning(f"daemon_lock_held:{lock_path}") from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        try:
            yield handle
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


def _install_stop_handlers(stop_event: threading.Event) -> None:
    def _request_stop(signum: int, _frame: object) -> None:
        _daemon_logger.info("daemon_stop_requested signal=%s", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)


def run_once(engine: Engine) -> int:
    report = engine.orchestrator.run_cycle()
    if report is None:
        print(json.dumps({"event": "poll_cycle_skipped"}))
        return 0
    print(json.dumps({"event": "poll_cycle", **report.to_dict()}))
    return 1 if report.indexer_error else 0


def run_loop(engine: Engine, *, interval_seconds: int, stop_event: threading.Event) -> int:
    while not stop_event.is_set():
        run_once(engine)
        stop_event.wait(max(1, int(interval_seconds)))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the RefundKeeper deposit refund daemon")
    parser.add_argument(
        "--program-config",
        default="config/program.yaml",
        help="Path to program.yaml",
    )
    parser.add_argument("--state-db", default="", help="Optional explicit SQLite state DB path")
    parser.add_argument(
        "--state-dir",
        default="",
        help="Directory holding the daemon lock file (default: <home_dir>/state)",
    )
    parser.add_argument(
        "--coinset-base-url",
        default="",
        help="Coinset API base URL (default: coinset.base_url or the network default)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one poll cycle and exit",
    )
    args = parser.parse_args()

    program_path = Path(args.program_config)
    program = load_program_config(program_path)
    _initialize_daemon_file_logging(program)
    mode = "once" if args.once else "loop"
    _daemon_logger.info(
        "daemon_starting mode=%s program_config=%s network=%s",
        mode,
        os.fspath(program_path),
        program.app_network,
    )

    stop_event = threading.Event()
    _install_stop_handlers(stop_event)
    exit_code = 0
    try:
        with daemon_lock(_resolve_state_dir(program, args.state_dir or None)):
            engine = build_engine(
                program=program,
                db_path=resolve_db_path(program.home_dir, args.state_db or None),
                coinset=build_coinset_adapter(
                    program=program, coinset_base_url=args.coinset_base_url
                ),
                stop_event=stop_event,
            )
            try:
                if args.once:
                    exit_code = run_once(engine)
                else:
                    exit_code = run_loop(
                        engine,
                        interval_seconds=program.poll_interval_seconds,
                        stop_event=stop_event,
                    )
            finally:
                engine.close()
    except DaemonAlreadyRunning as exc:
        _daemon_logger.error("daemon_lock_unavailable error=%s", exc)
        print(json.dumps({"event": "daemon_lock_unavailable", "error": str(exc)}))
        exit_code = 2
    finally:
        _daemon_logger.info("daemon_stopped mode=%s exit_code=%s", mode, exit_code)
        shutdown_file_logging()
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
