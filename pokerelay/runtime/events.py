"""Relay event bus.

Every component reports what it did as a small dict event:
`{id, ts, type, severity, source, message, metadata}`. Events go to the
subscribers (console, dashboard) and, when the bus has a log path, to an
append-only JSONL audit log.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import json
import secrets
import time
from pathlib import Path
from typing import Any

EventHandler = Callable[[dict[str, Any]], None]

ERROR_SUMMARY_MAX_CHARS = 220
SEVERITIES = ("debug", "info", "warn", "error")


def summarize_error(error: BaseException) -> str:
    lines = str(error).strip().splitlines()
    text = lines[0].strip() if lines else ""
    if not text:
        return error.__class__.__name__
    if len(text) > ERROR_SUMMARY_MAX_CHARS:
        return f"{text[: ERROR_SUMMARY_MAX_CHARS - 3]}..."
    return text


def _event_id() -> str:
    return f"evt-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class EventBus:
    def __init__(self, log_path: Path | None = None) -> None:
        self.log_path = log_path
        self._handlers: list[EventHandler] = []
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def publish_event(
        self,
        event_type: str,
        message: str,
        *,
        severity: str = "info",
        source: str = "relay",
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        level = severity.lower() if severity.lower() in SEVERITIES else "info"
        event = {
            "id": _event_id(),
            "ts": datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat(),
            "type": event_type,
            "severity": level,
            "source": source,
            "message": message,
            "metadata": dict(metadata or {}),
        }
        if self.log_path is not None:
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event, sort_keys=True, ensure_ascii=True) + "\n")
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                # A broken subscriber must not take the relay cycle down with it.
                continue
        return event
