from __future__ import annotations

import hashlib
import io
import json
import urllib.error

import pytest

from refundkeeper.adapters.coinset import (
    CoinsetAdapter,
    CoinsetError,
    CoinsetIndexer,
    compute_coin_id,
)

DEPOSIT_PH = "dd" * 32
SENDER_PH = "5e" * 32


class _FakeResponse:
    def __init__(self, payload) -> None:
        self._payload = payload

    def read(self) -> bytes:
        return json.dumps(self._payload).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def _route(monkeypatch, handlers: dict, calls: list | None = None) -> None:
    def _fake_urlopen(req, timeout=None):
        endpoint = req.full_url.rsplit("/", 1)[-1]
        body = json.loads(req.data.decode("utf-8"))
        if calls is not None:
            calls.append((endpoint, body))
        handler = handlers[endpoint]
        return _FakeResponse(handler(body) if callable(handler) else handler)

    monkeypatch.setattr("urllib.request.urlopen", _fake_urlopen)


def test_coinset_adapter_defaults_to_mainnet() -> None:
    adapter = CoinsetAdapter()
    assert adapter.base_url == CoinsetAdapter.MAINNET_BASE_URL


def test_coinset_adapter_network_testnet11() -> None:
    adapter = CoinsetAdapter(network="testnet11")
    assert adapter.base_url == CoinsetAdapter.TESTNET11_BASE_URL


def test_coinset_adapter_custom_base_url_overrides_network() -> None:
    adapter = CoinsetAdapter("https://coinset.custom/", network="testnet11")
    assert adapter.base_url == "https://coinset.custom"


def test_coinset_adapter_get_all_mempool_tx_ids_uses_post_json(monkeypatch) -> None:
    captured = {}

    def _fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["timeout"] = timeout
        captured["content_type"] = req.get_header("Content-type")
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse({"success": True, "mempool_tx_ids": ["0xABC", "0xdef"]})

    monkeypatch.setattr("urllib.request.urlopen", _fake_urlopen)
    adapter = CoinsetAdapter("https://coinset.org")
    assert adapter.get_all_mempool_tx_ids() == ["abc", "def"]
    assert captured["url"] == "https://coinset.org/get_all_mempool_tx_ids"
    assert captured["method"] == "POST"
    assert captured["timeout"] == 15
    assert captured["content_type"] == "application/json"
    assert captured["body"] == {}


def test_coinset_adapter_testnet_requests_carry_network(monkeypatch) -> None:
    calls: list = []
    _route(
        monkeypatch,
        {"get_blockchain_state": {"success": True, "blockchain_state": {"peak": {"height": 7}}}},
        calls,
    )
    assert CoinsetAdapter(network="testnet11").get_peak_height() == 7
    assert calls == [("get_blockchain_state", {"network": "testnet11"})]


def test_coinset_adapter_get_coin_records_by_puzzle_hash_filters_non_dicts(monkeypatch) -> None:
    calls: list = []
    _route(
        monkeypatch,
        {
            "get_coin_records_by_puzzle_hash": {
                "success": True,
                "coin_records": [{"coin": {"amount": 1}}, "bad"],
            }
        },
        calls,
    )
    records = CoinsetAdapter().get_coin_records_by_puzzle_hash(
        puzzle_hash_hex="11", include_spent_coins=False, start_height=5
    )
    assert records == [{"coin": {"amount": 1}}]
    assert calls[0][1] == {
        "puzzle_hash": "0x11",
        "include_spent_coins": False,
        "start_height": 5,
    }


def test_coinset_adapter_unsuccessful_coin_records_raise(monkeypatch) -> None:
    _route(
        monkeypatch,
        {"get_coin_records_by_puzzle_hash": {"success": False, "error": "rate limited"}},
    )
    with pytest.raises(CoinsetError, match="rate limited"):
        CoinsetAdapter().get_coin_records_by_puzzle_hash(puzzle_hash_hex="11")


def test_coinset_adapter_http_error_is_coinset_error(monkeypatch) -> None:
    def _fake_urlopen(req, timeout=None):
        raise urllib.error.HTTPError(
            req.full_url, 503, "unavailable", hdrs=None, fp=io.BytesIO(b"try later")
        )

    monkeypatch.setattr("urllib.request.urlopen", _fake_urlopen)
    with pytest.raises(CoinsetError, match="coinset_http_error:503:try later"):
        CoinsetAdapter().get_peak_height()


def test_coinset_adapter_network_error_is_coinset_error(monkeypatch) -> None:
    def _fake_urlopen(req, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr("urllib.request.urlopen", _fake_urlopen)
    with pytest.raises(CoinsetError, match="coinset_network_error"):
        CoinsetAdapter().push_tx(spend_bundle_hex="00")


def test_coinset_adapter_missing_coin_record_returns_none(monkeypatch) -> None:
    _route(monkeypatch, {"get_coin_record_by_name": {"success": False, "error": "not found"}})
    assert CoinsetAdapter().get_coin_record_by_name(coin_name_hex="ab") is None


def test_compute_coin_id_matches_chia_serialization() -> None:
    parent = "00" * 32
    puzzle_hash = "11" * 32

    expected = hashlib.sha256(
        bytes.fromhex(parent) + bytes.fromhex(puzzle_hash) + bytes([0x00, 0xFF])
    ).hexdigest()
    # 255 needs a leading zero byte to stay positive as a clvm integer.
    assert compute_coin_id(parent, puzzle_hash, 255) == expected
    assert compute_coin_id("0x" + parent, puzzle_hash, 255) == expected


def test_find_refund_coin_matches_parent_and_amount(monkeypatch) -> None:
    parent = "ab" * 32
    records = [
        {"coin": {"parent_coin_info": "0x" + "cd" * 32, "amount": 10}, "confirmed_block_index": 9},
        {"coin": {"parent_coin_info": "0x" + parent, "amount": 10}, "confirmed_block_index": 9},
    ]
    _route(
        monkeypatch,
        {"get_coin_records_by_puzzle_hash": {"success": True, "coin_records": records}},
    )
    found = CoinsetAdapter().find_refund_coin(
        destination_puzzle_hash=SENDER_PH, amount=10, parent_coin_ids=[parent], start_height=8
    )
    assert found == records[1]


def _deposit_record(parent: str, amount: int, height: int, *, coinbase: bool = False) -> dict:
    return {
        "coin": {
            "parent_coin_info": "0x" + parent,
            "puzzle_hash": "0x" + DEPOSIT_PH,
            "amount": amount,
        },
        "confirmed_block_index": height,
        "spent_block_index": 0,
        "coinbase": coinbase,
        "timestamp": 1_700_000_000 + height,
    }


def test_indexer_fetch_since_resolves_senders_and_skips_change(monkeypatch) -> None:
    sender_parent = "01" * 32
    change_parent = "02" * 32
    records = [
        _deposit_record(sender_parent, 1000, 12),
        _deposit_record(change_parent, 55, 11),
        _deposit_record("03" * 32, 1750000000000, 11, coinbase=True),
        _deposit_record("04" * 32, 1000, 0),
    ]
    parents = {
        sender_parent: {"coin": {"puzzle_hash": "0x" + SENDER_PH}},
        change_parent: {"coin": {"puzzle_hash": "0x" + DEPOSIT_PH}},
    }
    calls: list = []
    _route(
        monkeypatch,
        {
            "get_blockchain_state": {"success": True, "blockchain_state": {"peak": {"height": 14}}},
            "get_coin_records_by_puzzle_hash": {"success": True, "coin_records": records},
            "get_coin_record_by_name": lambda body: {
                "success": True,
                "coin_record": parents[body["name"][2:]],
            },
        },
        calls,
    )
    indexer = CoinsetIndexer(CoinsetAdapter(), deposit_puzzle_hash="0x" + DEPOSIT_PH)
    deposits = indexer.fetch_since(10)

    assert len(deposits) == 1
    deposit = deposits[0]
    assert deposit.sender_address == SENDER_PH
    assert deposit.amount == 1000
    assert deposit.block_height == 12
    assert deposit.confirmations == 3
    assert deposit.tx_hash == compute_coin_id(sender_parent, DEPOSIT_PH, 1000)
    by_endpoint = [c for c in calls if c[0] == "get_coin_records_by_puzzle_hash"]
    assert by_endpoint[0][1]["start_height"] == 10


def test_indexer_missing_parent_is_transient(monkeypatch) -> None:
    _route(
        monkeypatch,
        {
            "get_blockchain_state": {"success": True, "blockchain_state": {"peak": {"height": 14}}},
            "get_coin_records_by_puzzle_hash": {
                "success": True,
                "coin_records": [_deposit_record("09" * 32, 1000, 12)],
            },
            "get_coin_record_by_name": {"success": False},
        },
    )
    indexer = CoinsetIndexer(CoinsetAdapter(), deposit_puzzle_hash=DEPOSIT_PH)
    with pytest.raises(CoinsetError, match="coinset_parent_coin_not_found"):
        indexer.fetch_since(0)
