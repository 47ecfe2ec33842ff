from __future__ import annotations

import json
from pathlib import Path

import pytest

from refundkeeper.adapters.coinset import CoinsetAdapter, compute_coin_id
from refundkeeper.config.models import parse_program_config
from refundkeeper.core.markers import MarkerOutcome
from refundkeeper.daemon.main import (
    DaemonAlreadyRunning,
    build_coinset_adapter,
    build_engine,
    daemon_lock,
    run_once,
)
from tests.engine_fakes import FakeBuilder

DEPOSIT_PH = "dd" * 32
SENDER_PH = "5e" * 32
SENDER_PARENT = "01" * 32


class _FakeResponse:
    def __init__(self, payload) -> None:
        self._payload = payload

    def read(self) -> bytes:
        return json.dumps(self._payload).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def _program(home_dir: Path, **coinset):
    return parse_program_config(
        {
            "app": {"network": "mainnet", "home_dir": str(home_dir), "log_level": "INFO"},
            "deposit": {
                "address": "xch1a0t57qn6uhe7tzjlxlhwy2qgmuxvvft8gnfzmg5detg0q9f3yc3s2apz0h",
                "puzzle_hash": DEPOSIT_PH,
                "required_amount_mojos": 1000,
                "min_refund_confirmations": 3,
            },
            "custodial": {"fingerprint": 42, "keyring_yaml_path": "~/.chia_keys/keyring.yaml"},
            "coinset": coinset,
        }
    )


def _fake_chain(monkeypatch, *, fail: bool = False) -> list[str]:
    pushed: list[str] = []
    deposit_record = {
        "coin": {
            "parent_coin_info": "0x" + SENDER_PARENT,
            "puzzle_hash": "0x" + DEPOSIT_PH,
            "amount": 1000,
        },
        "confirmed_block_index": 12,
        "spent_block_index": 0,
        "coinbase": False,
        "timestamp": 1_700_000_012,
    }

    def _fake_urlopen(req, timeout=None):
        endpoint = req.full_url.rsplit("/", 1)[-1]
        body = json.loads(req.data.decode("utf-8"))
        if fail:
            return _FakeResponse({"success": False, "error": "rate limited"})
        if endpoint == "get_blockchain_state":
            return _FakeResponse({"success": True, "blockchain_state": {"peak": {"height": 14}}})
        if endpoint == "get_coin_records_by_puzzle_hash":
            return _FakeResponse({"success": True, "coin_records": [deposit_record]})
        if endpoint == "get_coin_record_by_name":
            if body["name"] == "0x" + SENDER_PARENT:
                return _FakeResponse(
                    {"success": True, "coin_record": {"coin": {"puzzle_hash": "0x" + SENDER_PH}}}
                )
            return _FakeResponse({"success": False, "error": "not found"})
        if endpoint == "push_tx":
            pushed.append(body["spend_bundle"])
            return _FakeResponse({"success": True, "status": "SUCCESS"})
        raise AssertionError(f"unexpected endpoint {endpoint}")

    monkeypatch.setattr("urllib.request.urlopen", _fake_urlopen)
    return pushed


def test_build_coinset_adapter_prefers_cli_then_config(tmp_path: Path) -> None:
    program = _program(tmp_path, base_url="https://coinset.config")
    adapter = build_coinset_adapter(program=program, coinset_base_url="")
    assert adapter.base_url == "https://coinset.config"
    adapter = build_coinset_adapter(program=program, coinset_base_url="https://cli.example/")
    assert adapter.base_url == "https://cli.example"
    adapter = build_coinset_adapter(program=_program(tmp_path), coinset_base_url=None)
    assert adapter.base_url == CoinsetAdapter.MAINNET_BASE_URL


def test_run_once_refunds_observed_deposit(monkeypatch, tmp_path: Path, capsys) -> None:
    pushed = _fake_chain(monkeypatch)
    builder = FakeBuilder()
    alerts: list = []
    program = _program(tmp_path)
    engine = build_engine(
        program=program,
        db_path=tmp_path / "db" / "refundkeeper.sqlite",
        coinset=build_coinset_adapter(program=program, coinset_base_url=""),
        alert=alerts.append,
        build_fn=builder,
    )
    try:
        assert run_once(engine) == 0
        report = json.loads(capsys.readouterr().out.strip())
        assert report["event"] == "poll_cycle"
        assert report["fetched"] == 1
        assert report["refunds_submitted"] == 1
        assert report["cursor_after"] == 12

        tx_hash = compute_coin_id(SENDER_PARENT, DEPOSIT_PH, 1000)
        marker = engine.markers.get(tx_hash)
        assert marker is not None and marker.outcome == MarkerOutcome.REFUND_SUBMITTED
        assert builder.payloads[0]["destination_puzzle_hash"] == SENDER_PH
        assert builder.payloads[0]["fingerprint"] == 42
        assert len(pushed) == 1

        assert run_once(engine) == 0
        again = json.loads(capsys.readouterr().out.strip())
        assert again["redelivered"] == 1
        assert again["refunds_submitted"] == 0
        assert len(builder.payloads) == 1
        assert alerts == []
    finally:
        engine.close()


def test_run_once_reports_indexer_failure(monkeypatch, tmp_path: Path, capsys) -> None:
    _fake_chain(monkeypatch, fail=True)
    program = _program(tmp_path)
    engine = build_engine(
        program=program,
        db_path=tmp_path / "rk.sqlite",
        coinset=build_coinset_adapter(program=program, coinset_base_url=""),
        alert=lambda event: None,
        build_fn=FakeBuilder(),
    )
    try:
        assert run_once(engine) == 1
        report = json.loads(capsys.readouterr().out.strip())
        assert report["indexer_error"] == "coinset_blockchain_state_unavailable"
        assert report["cursor_after"] == report["cursor_before"] == 0
    finally:
        engine.close()


def test_daemon_lock_is_exclusive(tmp_path: Path) -> None:
    with daemon_lock(tmp_path / "state") as handle:
        assert (tmp_path / "state" / "daemon.lock").exists()
        assert handle.closed is False
        with pytest.raises(DaemonAlreadyRunning, match="daemon_lock_held"):
            with daemon_lock(tmp_path / "state"):
                pass
    with daemon_lock(tmp_path / "state"):
        pass
