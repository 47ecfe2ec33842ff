from __future__ import annotations

import logging
import os
import urllib.error
import urllib.parse
import urllib.request

from refundkeeper.config.models import ProgramConfig
from refundkeeper.core.notifications import AlertEvent

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"

_notify_logger = logging.getLogger("refundkeeper.notify")


def render_alert_message(event: AlertEvent) -> str:
    return f"[{event.kind}] {event.message}"


def send_pushover_alert(program: ProgramConfig, event: AlertEvent) -> bool:
    if not program.pushover_enabled:
        return False

    user_key = os.getenv(program.pushover_user_key_env) or os.getenv(
        program.pushover_recipient_key_env
    )
    app_token = os.getenv(program.pushover_app_token_env)
    if not user_key or not app_token:
        return False

    payload = urllib.parse.urlencode(
        {
            "token": app_token,
            "user": user_key,
            "title": event.title,
            "message": render_alert_message(event),
            "priority": "1" if event.kind in {"refund_fatal", "indexer_unavailable"} else "0",
        }
    ).encode("utf-8")

    req = urllib.request.Request(PUSHOVER_URL, data=payload, method="POST")
    with urllib.request.urlopen(req, timeout=10):
        return True


class PushoverAlerter:
    """Alert sink handed to the engine; delivery failures are logged, never raised."""

    def __init__(self, program: ProgramConfig) -> None:
        self._program = program

    def __call__(self, event: AlertEvent) -> None:
        _notify_logger.warning("operator_alert kind=%s %s", event.kind, event.message)
        try:
            send_pushover_alert(self._program, event)
        except (urllib.error.URLError, OSError) as exc:
            _notify_logger.error("pushover_send_failed kind=%s error=%s", event.kind, exc)
