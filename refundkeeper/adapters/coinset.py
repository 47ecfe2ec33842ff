from __future__ import annotations

import hashlib
import json
import logging
import urllib.error
import urllib.request
from typing import Any

from refundkeeper.core.types import IndexedDeposit

_indexer_logger = logging.getLogger("refundkeeper.indexer")


class CoinsetError(RuntimeError):
    """Network, HTTP, or protocol failure talking to Coinset. Always transient."""


def normalize_hex(value: object) -> str:
    raw = str(value or "").strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    return raw


def _int_to_clvm_bytes(value: int) -> bytes:
    if value == 0:
        return b""
    return value.to_bytes((value.bit_length() + 8) >> 3, "big", signed=True)


def compute_coin_id(parent_coin_info: str, puzzle_hash: str, amount: int) -> str:
    """Chia coin id: sha256(parent || puzzle_hash || amount as a clvm int)."""
    digest = hashlib.sha256(
        bytes.fromhex(normalize_hex(parent_coin_info))
        + bytes.fromhex(normalize_hex(puzzle_hash))
        + _int_to_clvm_bytes(int(amount))
    )
    return digest.hexdigest()


class CoinsetAdapter:
    MAINNET_BASE_URL = "https://api.coinset.org"
    TESTNET11_BASE_URL = "https://testnet11.api.coinset.org"

    def __init__(
        self,
        base_url: str | None = None,
        *,
        network: str = "mainnet",
        timeout_seconds: int = 15,
    ) -> None:
        selected_network = network.strip().lower()
        if selected_network not in {"mainnet", "testnet11"}:
            selected_network = "mainnet"
        self.network = selected_network
        self.timeout_seconds = timeout_seconds
        resolved_base_url = base_url.strip() if isinstance(base_url, str) else ""
        if not resolved_base_url:
            if selected_network == "testnet11":
                resolved_base_url = self.TESTNET11_BASE_URL
            else:
                resolved_base_url = self.MAINNET_BASE_URL
        self.base_url = resolved_base_url.rstrip("/")

    def _post_json(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        request_body = dict(body)
        if self.network == "testnet11":
            # Shared Coinset backends multiplex networks on one host.
            request_body.setdefault("network", "testnet11")
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        req = urllib.request.Request(
            url,
            data=json.dumps(request_body).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "refundkeeper/0.1",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace").strip()
            message = f"coinset_http_error:{exc.code}"
            if raw:
                message = f"{message}:{raw[:160]}"
            raise CoinsetError(message) from exc
        except urllib.error.URLError as exc:
            raise CoinsetError(f"coinset_network_error:{exc.reason}") from exc
        except (TimeoutError, json.JSONDecodeError) as exc:
            raise CoinsetError(f"coinset_read_error:{exc}") from exc
        if isinstance(payload, dict):
            return payload
        raise CoinsetError("coinset_invalid_response_payload")

    def get_all_mempool_tx_ids(self) -> list[str]:
        payload = self._post_json("get_all_mempool_tx_ids", {})
        if not payload.get("success", False):
            raise CoinsetError(f"coinset_mempool_error:{payload.get('error', 'unknown')}")
        tx_ids = payload.get("tx_ids") or payload.get("mempool_tx_ids") or []
        return [normalize_hex(x) for x in tx_ids]

    def get_coin_records_by_puzzle_hash(
        self,
        *,
        puzzle_hash_hex: str,
        include_spent_coins: bool = True,
        start_height: int | None = None,
        end_height: int | None = None,
    ) -> list[dict[str, Any]]:
        body: dict[str, Any] = {
            "puzzle_hash": f"0x{normalize_hex(puzzle_hash_hex)}",
            "include_spent_coins": include_spent_coins,
        }
        if start_height is not None and start_height > 0:
            body["start_height"] = int(start_height)
        if end_height is not None and end_height > 0:
            body["end_height"] = int(end_height)
        payload = self._post_json("get_coin_records_by_puzzle_hash", body)
        if not payload.get("success", False):
            raise CoinsetError(f"coinset_coin_records_error:{payload.get('error', 'unknown')}")
        records = payload.get("coin_records") or []
        if not isinstance(records, list):
            raise CoinsetError("coinset_coin_records_not_a_list")
        return [r for r in records if isinstance(r, dict)]

    def get_coin_record_by_name(self, *, coin_name_hex: str) -> dict[str, Any] | None:
        payload = self._post_json(
            "get_coin_record_by_name", {"name": f"0x{normalize_hex(coin_name_hex)}"}
        )
        if not payload.get("success", False):
            return None
        record = payload.get("coin_record")
        if not isinstance(record, dict):
            return None
        return record

    def get_peak_height(self) -> int:
        payload = self._post_json("get_blockchain_state", {})
        if not payload.get("success", False):
            raise CoinsetError("coinset_blockchain_state_unavailable")
        state = payload.get("blockchain_state")
        peak = state.get("peak") if isinstance(state, dict) else None
        if not isinstance(peak, dict) or peak.get("height") is None:
            raise CoinsetError("coinset_blockchain_state_missing_peak")
        return int(peak["height"])

    def push_tx(self, *, spend_bundle_hex: str) -> dict[str, Any]:
        return self._post_json("push_tx", {"spend_bundle": spend_bundle_hex})

    def find_refund_coin(
        self,
        *,
        destination_puzzle_hash: str,
        amount: int,
        parent_coin_ids: list[str],
        start_height: int,
    ) -> dict[str, Any] | None:
        parents = {normalize_hex(p) for p in parent_coin_ids}
        for record in self.get_coin_records_by_puzzle_hash(
            puzzle_hash_hex=destination_puzzle_hash,
            include_spent_coins=True,
            start_height=start_height,
        ):
            coin = record.get("coin") or {}
            if (
                normalize_hex(coin.get("parent_coin_info")) in parents
                and int(coin.get("amount", -1)) == int(amount)
            ):
                return record
        return None


class CoinsetIndexer:
    """Lists coins paid to the deposit puzzle hash since a block height."""

    def __init__(self, coinset: CoinsetAdapter, *, deposit_puzzle_hash: str) -> None:
        self._coinset = coinset
        self.deposit_puzzle_hash = normalize_hex(deposit_puzzle_hash)

    def fetch_since(self, cursor: int) -> list[IndexedDeposit]:
        peak_height = self._coinset.get_peak_height()
        records = self._coinset.get_coin_records_by_puzzle_hash(
            puzzle_hash_hex=self.deposit_puzzle_hash,
            include_spent_coins=True,
            start_height=cursor,
        )
        sender_by_parent: dict[str, str] = {}
        deposits: list[IndexedDeposit] = []
        for record in records:
            if bool(record.get("coinbase", False)):
                continue
            coin = record.get("coin")
            if not isinstance(coin, dict):
                raise CoinsetError("coinset_coin_record_missing_coin")
            height = int(record.get("confirmed_block_index") or 0)
            if height <= 0:
                continue
            parent = normalize_hex(coin.get("parent_coin_info"))
            amount = int(coin.get("amount", 0))
            tx_hash = compute_coin_id(parent, str(coin.get("puzzle_hash", "")), amount)
            sender = sender_by_parent.get(parent)
            if sender is None:
                parent_record = self._coinset.get_coin_record_by_name(coin_name_hex=parent)
                if parent_record is None:
                    raise CoinsetError(f"coinset_parent_coin_not_found:{parent}")
                sender = normalize_hex((parent_record.get("coin") or {}).get("puzzle_hash"))
                sender_by_parent[parent] = sender
            if sender == self.deposit_puzzle_hash:
                # Change coins from our own refund spends land here too.
                continue
            deposits.append(
                IndexedDeposit(
                    tx_hash=tx_hash,
                    sender_address=sender,
                    amount=amount,
                    block_height=height,
                    block_time=int(record.get("timestamp") or 0),
                    confirmations=max(0, peak_height - height + 1),
                )
            )
        deposits.sort(key=lambda d: (d.block_height, d.tx_hash))
        _indexer_logger.debug(
            "indexer_fetch cursor=%s peak=%s records=%s deposits=%s",
            cursor,
            peak_height,
            len(records),
            len(deposits),
        )
        return deposits
