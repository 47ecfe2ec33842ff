"""Custodial refund signing.

Lists the custodial wallet's unspent XCH, leaves out the coins named in
``exclude_coin_ids`` (inputs of refunds still waiting to settle), selects coins
covering the refund plus fee, builds a spend bundle that pays the depositor
back (change returns to the custodial address) and signs it with the custodial
keychain key.

Every outcome is reported as a result dict carrying ``status``, ``reason`` and,
on failure, an ``error_kind`` of ``funding``, ``transient`` or ``fatal`` so the
submitter can route it through the refund failure taxonomy.
"""

from __future__ import annotations

import asyncio
import importlib
import os
from pathlib import Path
from typing import Any

_AGG_SIG_ADDITIONAL_DATA_BY_NETWORK: dict[str, bytes] = {
    "mainnet": bytes.fromhex("37a90eb5185a9c4439a91ddc98bbadce7b4feba060d50116a067de66bf236615"),
    "testnet11": bytes.fromhex("b0a306abe27407130586c8e13d06dc057d4538c201dbd36c8f8c481f5e51af5c"),
}

_WALLET_DERIVATION_PATH_PREFIX = (12381, 8444, 2)


def _hex_to_bytes(value: str) -> bytes:
    raw = value.strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    if len(raw) % 2:
        raw = f"0{raw}"
    return bytes.fromhex(raw)


def _import_sdk() -> Any:
    return importlib.import_module("chia_wallet_sdk")


def _skipped(reason: str, error_kind: str) -> dict[str, Any]:
    return {"status": "skipped", "reason": reason, "error_kind": error_kind}


def address_to_puzzle_hash_hex(address: str) -> str:
    sdk = _import_sdk()
    return bytes(sdk.Address.decode(address.strip()).puzzle_hash).hex()


def _rpc_client(sdk: Any, network: str) -> Any:
    custom_url = os.getenv("REFUNDKEEPER_WALLET_SDK_COINSET_URL", "").strip()
    if custom_url:
        return sdk.RpcClient(custom_url)
    if network == "testnet11":
        return sdk.RpcClient.testnet11()
    return sdk.RpcClient.mainnet()


def _list_unspent_coins(*, sdk: Any, custodial_address: str, network: str) -> list[Any]:
    async def _fetch() -> list[Any]:
        puzzle_hash = sdk.Address.decode(custodial_address).puzzle_hash
        response = await _rpc_client(sdk, network).get_coin_records_by_puzzle_hash(
            puzzle_hash, includeSpentCoins=False
        )
        if not getattr(response, "success", False):
            raise RuntimeError(str(getattr(response, "error", None) or "coin_records_failed"))
        records = getattr(response, "coin_records", None) or []
        return [r.coin for r in records if getattr(r, "coin", None) is not None]

    return asyncio.run(_fetch())


def _without_coins(coins: list[Any], exclude_coin_ids: list[str]) -> list[Any]:
    """Drop coins already committed to another refund that has not settled yet."""
    excluded = {_hex_to_bytes(str(coin_id)) for coin_id in exclude_coin_ids}
    if not excluded:
        return list(coins)
    return [c for c in coins if bytes(c.coin_id()) not in excluded]


def _load_master_private_key(
    keyring_yaml_path: str, fingerprint: int
) -> tuple[Any | None, str | None]:
    try:
        chia_keychain = importlib.import_module("chia.util.keychain")
        chia_keyring_wrapper = importlib.import_module("chia.util.keyring_wrapper")
    except ImportError as exc:
        return None, f"chia_keychain_import_error:{exc}"
    try:
        keys_root = Path(keyring_yaml_path).expanduser().resolve().parent
        chia_keyring_wrapper.KeyringWrapper.cleanup_shared_instance()
        chia_keychain.set_keys_root_path(keys_root)
        key_data = chia_keychain.Keychain().get_key(fingerprint, include_secrets=True)
    except Exception as exc:
        return None, f"key_lookup_error:{exc}"
    private_key = getattr(key_data, "private_key", None)
    if private_key is None:
        return None, "key_secrets_unavailable"
    return private_key, None


def _derive_synthetic_keys(
    *, sdk: Any, master_sk: Any, puzzle_hashes: set[bytes], scan_limit: int
) -> dict[bytes, Any]:
    found: dict[bytes, Any] = {}
    for index in range(scan_limit):
        for derive_fn in (master_sk.derive_unhardened_path, master_sk.derive_hardened_path):
            try:
                child_sk = derive_fn([*_WALLET_DERIVATION_PATH_PREFIX, index])
                synthetic_sk = child_sk.derive_synthetic()
                puzzle_hash = bytes(sdk.standard_puzzle_hash(synthetic_sk.public_key()))
            except Exception:
                continue
            if puzzle_hash in puzzle_hashes and puzzle_hash not in found:
                found[puzzle_hash] = synthetic_sk
        if len(found) == len(puzzle_hashes):
            break
    return found


def _aggregate_signature(
    *, sdk: Any, coin_spends: list[Any], keys: dict[bytes, Any], additional_data: bytes
) -> Any:
    conditions_mod = importlib.import_module("chia.consensus.condition_tools")
    default_constants = importlib.import_module("chia.consensus.default_constants")
    serialized_program = importlib.import_module("chia.types.blockchain_format.serialized_program")
    chia_rs = importlib.import_module("chia_rs")

    sk_by_pk_bytes = {sk.public_key().to_bytes(): sk for sk in keys.values()}
    signatures = []
    for coin_spend in coin_spends:
        conditions = conditions_mod.conditions_dict_for_solution(
            serialized_program.SerializedProgram.from_bytes(coin_spend.puzzle_reveal),
            serialized_program.SerializedProgram.from_bytes(coin_spend.solution),
            default_constants.DEFAULT_CONSTANTS.MAX_BLOCK_COST_CLVM,
        )
        coin = chia_rs.Coin(
            coin_spend.coin.parent_coin_info,
            coin_spend.coin.puzzle_hash,
            coin_spend.coin.amount,
        )
        for public_key, message in conditions_mod.pkm_pairs_for_conditions_dict(
            conditions, coin, additional_data
        ):
            sk = sk_by_pk_bytes.get(bytes(public_key))
            if sk is None:
                raise ValueError("missing_private_key_for_agg_sig_target")
            signatures.append(
                chia_rs.AugSchemeMPL.sign(chia_rs.PrivateKey.from_bytes(sk.to_bytes()), message)
            )
    if not signatures:
        raise ValueError("no_agg_sig_targets_found")
    return sdk.Signature.from_bytes(bytes(chia_rs.AugSchemeMPL.aggregate(signatures)))


def build_refund_spend_bundle(payload: dict[str, Any]) -> dict[str, Any]:
    """Select custodial coins and sign a spend bundle paying one refund.

    Returns ``spend_bundle_hex``, ``tx_id`` and ``input_coin_ids`` on success.
    """
    network = str(payload.get("network", "")).strip()
    custodial_address = str(payload.get("custodial_address", "")).strip()
    keyring_yaml_path = str(payload.get("keyring_yaml_path", "")).strip()
    destination = str(payload.get("destination_puzzle_hash", "")).strip()
    try:
        fingerprint = int(payload.get("fingerprint", 0))
        amount = int(payload.get("amount", 0))
        fee = int(payload.get("fee", 0))
    except (TypeError, ValueError):
        return _skipped("invalid_refund_payload_numbers", "fatal")
    if not custodial_address or not keyring_yaml_path or fingerprint <= 0:
        return _skipped("missing_custodial_key_config", "fatal")
    if not destination or amount <= 0 or fee < 0:
        return _skipped("invalid_refund_destination_or_amount", "fatal")
    additional_data = _AGG_SIG_ADDITIONAL_DATA_BY_NETWORK.get(network)
    if additional_data is None:
        return _skipped("unsupported_network_for_signing", "fatal")

    try:
        sdk = _import_sdk()
    except ImportError as exc:
        return _skipped(f"wallet_sdk_import_error:{exc}", "fatal")

    try:
        coins = _list_unspent_coins(sdk=sdk, custodial_address=custodial_address, network=network)
    except Exception as exc:
        return _skipped(f"custodial_coin_listing_error:{exc}", "transient")
    try:
        available = _without_coins(coins, payload.get("exclude_coin_ids") or [])
    except (TypeError, ValueError) as exc:
        return _skipped(f"invalid_exclude_coin_ids:{exc}", "fatal")
    target_total = amount + fee
    spendable = sum(int(c.amount) for c in available)
    if spendable < target_total:
        if sum(int(c.amount) for c in coins) >= target_total:
            # Enough funds exist once earlier refunds settle and return change.
            return _skipped(f"custodial_coins_in_flight:{spendable}<{target_total}", "transient")
        return _skipped(f"insufficient_custodial_balance:{spendable}<{target_total}", "funding")

    try:
        selected = sdk.select_coins(available, target_total)
    except Exception as exc:
        return _skipped(f"coin_selection_failed:{exc}", "funding")

    master_private_key, key_error = _load_master_private_key(keyring_yaml_path, fingerprint)
    if master_private_key is None:
        return _skipped(key_error or "key_secrets_unavailable", "fatal")

    try:
        master_sk = sdk.SecretKey.from_bytes(bytes(master_private_key))
        scan_limit = int(os.getenv("REFUNDKEEPER_CHIA_KEYS_DERIVATION_SCAN_LIMIT", "200"))
        keys = _derive_synthetic_keys(
            sdk=sdk,
            master_sk=master_sk,
            puzzle_hashes={bytes(c.puzzle_hash) for c in selected},
            scan_limit=scan_limit,
        )
    except Exception as exc:
        return _skipped(f"key_derivation_error:{exc}", "fatal")
    if len(keys) != len({bytes(c.puzzle_hash) for c in selected}):
        return _skipped("derivation_scan_failed_for_selected_coin", "fatal")

    try:
        clvm = sdk.Clvm()
        change_puzzle_hash = sdk.Address.decode(custodial_address).puzzle_hash
        spends = sdk.Spends(clvm, change_puzzle_hash)
        for coin in selected:
            spends.add_xch(coin)
        actions = [sdk.Action.send(sdk.Id.xch(), _hex_to_bytes(destination), amount)]
        if fee > 0:
            actions.append(sdk.Action.fee(fee))
        finished = spends.prepare(spends.apply(actions))
        for pending_spend in finished.pending_spends():
            coin = pending_spend.coin()
            synthetic_sk = keys.get(bytes(coin.puzzle_hash))
            if synthetic_sk is None:
                return _skipped("missing_signing_key_for_pending_spend", "fatal")
            delegated = clvm.delegated_spend(pending_spend.conditions())
            clvm.spend_standard_coin(coin, synthetic_sk.public_key(), delegated)
        coin_spends = clvm.coin_spends()
    except Exception as exc:
        return _skipped(f"build_spend_bundle_error:{exc}", "fatal")

    try:
        signature = _aggregate_signature(
            sdk=sdk, coin_spends=coin_spends, keys=keys, additional_data=additional_data
        )
        spend_bundle = sdk.SpendBundle(coin_spends, signature)
    except Exception as exc:
        return _skipped(f"sign_spend_bundle_error:{exc}", "fatal")

    return {
        "status": "executed",
        "reason": "signing_success",
        "spend_bundle_hex": sdk.to_hex(spend_bundle.to_bytes()),
        "tx_id": sdk.to_hex(spend_bundle.hash()),
        "input_coin_ids": [sdk.to_hex(c.coin_id()) for c in selected],
    }
