from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from refundkeeper.logging_setup import normalize_log_level_name

_SUPPORTED_NETWORKS = frozenset({"mainnet", "testnet11"})


@dataclass(frozen=True, slots=True)
class CustodialKeyConfig:
    key_id: str
    fingerprint: int
    keyring_yaml_path: str
    address: str


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    initial_delay_seconds: int = 30
    multiplier: float = 2.0
    max_delay_seconds: int = 900
    # 0 keeps retrying funding failures forever.
    permanent_failure_retry_cap: int = 0
    consecutive_failure_alert_threshold: int = 5


@dataclass(slots=True)
class ProgramConfig:
    app_network: str
    home_dir: str
    app_log_level: str
    poll_interval_seconds: int
    deposit_address: str
    deposit_puzzle_hash: str
    required_amount_mojos: int
    min_deposit_confirmations: int
    min_refund_confirmations: int
    refund_fee_mojos: int
    refund_stale_after_seconds: int
    retry: RetryPolicy
    custodial: CustodialKeyConfig
    coinset_base_url: str
    proof_command: str
    pushover_enabled: bool
    pushover_user_key_env: str
    pushover_app_token_env: str
    pushover_recipient_key_env: str
    app_log_level_was_missing: bool = False


def _req(mapping: dict[str, Any], key: str) -> Any:
    if key not in mapping:
        raise ValueError(f"Missing required field: {key}")
    return mapping[key]


def _positive_int(value: Any, field_name: str, *, allow_zero: bool = False) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer") from exc
    if parsed < 0 or (parsed == 0 and not allow_zero):
        raise ValueError(f"{field_name} must be {'>= 0' if allow_zero else 'positive'}")
    return parsed


def _normalize_puzzle_hash(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    if not value:
        return ""
    if len(value) != 64 or any(ch not in "0123456789abcdef" for ch in value):
        raise ValueError("deposit.puzzle_hash must be 32 bytes of hex")
    return value


def parse_retry_policy(raw: dict[str, Any] | None) -> RetryPolicy:
    retry = dict(raw or {})
    try:
        multiplier = float(retry.get("multiplier", 2.0))
    except (TypeError, ValueError) as exc:
        raise ValueError("retry.multiplier must be numeric") from exc
    if multiplier < 1.0:
        raise ValueError("retry.multiplier must be >= 1.0")
    initial = _positive_int(retry.get("initial_delay_seconds", 30), "retry.initial_delay_seconds")
    max_delay = _positive_int(retry.get("max_delay_seconds", 900), "retry.max_delay_seconds")
    if max_delay < initial:
        raise ValueError("retry.max_delay_seconds must be >= retry.initial_delay_seconds")
    return RetryPolicy(
        initial_delay_seconds=initial,
        multiplier=multiplier,
        max_delay_seconds=max_delay,
        permanent_failure_retry_cap=_positive_int(
            retry.get("permanent_failure_retry_cap", 0),
            "retry.permanent_failure_retry_cap",
            allow_zero=True,
        ),
        consecutive_failure_alert_threshold=_positive_int(
            retry.get("consecutive_failure_alert_threshold", 5),
            "retry.consecutive_failure_alert_threshold",
        ),
    )


def parse_program_config(raw: dict[str, Any]) -> ProgramConfig:
    app = _req(raw, "app")
    runtime = raw.get("runtime", {})
    deposit = _req(raw, "deposit")
    refunds = raw.get("refunds", {})
    custodial = _req(raw, "custodial")
    coinset = raw.get("coinset", {})
    proofs = raw.get("proofs", {}) or {}
    notifications = raw.get("notifications", {}) or {}
    providers = notifications.get("providers", []) or []
    pushover = next((p for p in providers if p.get("type") == "pushover"), None) or {}

    network = str(_req(app, "network")).strip().lower()
    if network not in _SUPPORTED_NETWORKS:
        raise ValueError("app.network must be one of: mainnet, testnet11")

    raw_log_level = app.get("log_level")
    log_level_missing = raw_log_level is None or not str(raw_log_level).strip()

    deposit_address = str(_req(deposit, "address")).strip()
    if not deposit_address:
        raise ValueError("deposit.address must be non-empty")
    expected_prefix = "txch1" if network == "testnet11" else "xch1"
    if not deposit_address.lower().startswith(expected_prefix):
        raise ValueError(f"deposit.address must start with {expected_prefix} on {network}")

    try:
        fingerprint = int(_req(custodial, "fingerprint"))
    except (TypeError, ValueError) as exc:
        raise ValueError("custodial.fingerprint must be an integer") from exc
    if fingerprint <= 0:
        raise ValueError("custodial.fingerprint must be positive")
    custodial_key = CustodialKeyConfig(
        key_id=str(custodial.get("key_id", fingerprint)).strip() or str(fingerprint),
        fingerprint=fingerprint,
        keyring_yaml_path=str(_req(custodial, "keyring_yaml_path")).strip(),
        address=str(custodial.get("address", deposit_address)).strip() or deposit_address,
    )

    return ProgramConfig(
        app_network=network,
        home_dir=str(_req(app, "home_dir")),
        app_log_level=normalize_log_level_name(raw_log_level),
        poll_interval_seconds=_positive_int(
            runtime.get("poll_interval_seconds", 30), "runtime.poll_interval_seconds"
        ),
        deposit_address=deposit_address,
        deposit_puzzle_hash=_normalize_puzzle_hash(deposit.get("puzzle_hash")),
        required_amount_mojos=_positive_int(
            _req(deposit, "required_amount_mojos"), "deposit.required_amount_mojos"
        ),
        min_deposit_confirmations=_positive_int(
            deposit.get("min_deposit_confirmations", 1), "deposit.min_deposit_confirmations"
        ),
        min_refund_confirmations=_positive_int(
            deposit.get("min_refund_confirmations", 6), "deposit.min_refund_confirmations"
        ),
        refund_fee_mojos=_positive_int(
            refunds.get("fee_mojos", 0), "refunds.fee_mojos", allow_zero=True
        ),
        refund_stale_after_seconds=_positive_int(
            refunds.get("stale_after_seconds", 600), "refunds.stale_after_seconds"
        ),
        retry=parse_retry_policy(raw.get("retry")),
        custodial=custodial_key,
        coinset_base_url=str(coinset.get("base_url", "")).strip(),
        proof_command=str(proofs.get("command", "")).strip(),
        pushover_enabled=bool(pushover.get("enabled", False)),
        pushover_user_key_env=str(pushover.get("user_key_env", "PUSHOVER_USER_KEY")),
        pushover_app_token_env=str(pushover.get("app_token_env", "PUSHOVER_APP_TOKEN")),
        pushover_recipient_key_env=str(
            pushover.get("recipient_key_env", "PUSHOVER_RECIPIENT_KEY")
        ),
        app_log_level_was_missing=log_level_missing,
    )
