"""Commitment/proof generation as an opaque external capability.

The engine only asks for a commitment when it synthesizes a placeholder
owner. It never verifies proofs itself.
"""

from __future__ import annotations

import json
import shlex
import subprocess
from typing import Protocol


class ProofCapabilityError(RuntimeError):
    pass


class ProofCapability(Protocol):
    def generate(self, owner_id: str, sender_address: str) -> str: ...

    def verify(self, owner_id: str, commitment: str) -> bool: ...


class NullProofCapability:
    def generate(self, owner_id: str, sender_address: str) -> str:
        return ""

    def verify(self, owner_id: str, commitment: str) -> bool:
        return False


class CommandProofCapability:
    """Delegates to an external command speaking JSON over stdin/stdout.

    Request: ``{"op": "generate"|"verify", "owner_id": ..., ...}``.
    Response: ``{"commitment": "..."}`` or ``{"valid": true|false}``.
    """

    def __init__(self, command: str, *, timeout_seconds: int = 30) -> None:
        self._argv = shlex.split(command)
        if not self._argv:
            raise ValueError("proof command must be non-empty")
        self._timeout_seconds = timeout_seconds

    def _call(self, request: dict[str, str]) -> dict:
        try:
            completed = subprocess.run(
                self._argv,
                input=json.dumps(request),
                capture_output=True,
                check=False,
                text=True,
                timeout=self._timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ProofCapabilityError(f"proof_command_spawn_error:{exc}") from exc
        if completed.returncode != 0:
            err = completed.stderr.strip() or completed.stdout.strip() or "unknown_error"
            raise ProofCapabilityError(f"proof_command_failed:{err}")
        try:
            body = json.loads(completed.stdout.strip() or "{}")
        except json.JSONDecodeError as exc:
            raise ProofCapabilityError("proof_command_invalid_json") from exc
        if not isinstance(body, dict):
            raise ProofCapabilityError("proof_command_invalid_json")
        return body

    def generate(self, owner_id: str, sender_address: str) -> str:
        body = self._call(
            {"op": "generate", "owner_id": owner_id, "sender_address": sender_address}
        )
        commitment = str(body.get("commitment", "")).strip()
        if not commitment:
            raise ProofCapabilityError("proof_command_missing_commitment")
        return commitment

    def verify(self, owner_id: str, commitment: str) -> bool:
        body = self._call({"op": "verify", "owner_id": owner_id, "commitment": commitment})
        return bool(body.get("valid", False))


def build_proof_capability(command: str) -> ProofCapability:
    if command.strip():
        return CommandProofCapability(command)
    return NullProofCapability()
