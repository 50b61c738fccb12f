from __future__ import annotations

import asyncio
import json
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .store import DownstreamFailure

POKE_WEBHOOK_URL = "https://poke.com/api/v1/inbound-sms/webhook"
NOTIFY_TIMEOUT_S = 20.0


class NotificationSink(Protocol):
    async def send(self, message: str) -> None:
        ...


class WebhookSink:
    """Posts `{"message": ..., "to": ...}` to the operator's SMS webhook."""

    def __init__(
        self,
        api_key: str,
        *,
        recipient: str,
        url: str = POKE_WEBHOOK_URL,
        timeout_s: float = NOTIFY_TIMEOUT_S,
    ) -> None:
        self.api_key = api_key.strip()
        self.recipient = recipient.strip()
        self.url = url
        self.timeout_s = max(1.0, float(timeout_s))

    async def send(self, message: str) -> None:
        await asyncio.to_thread(self.send_sync, message)

    def send_sync(self, message: str) -> None:
        if not self.api_key:
            raise DownstreamFailure("webhook API key is not configured (set POKE_API_KEY).")
        payload: dict[str, str] = {"message": message}
        if self.recipient:
            payload["to"] = self.recipient
        request = Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                response.read()
        except HTTPError as exc:
            raise DownstreamFailure(f"webhook error: {exc.code}") from exc
        except (URLError, OSError) as exc:
            raise DownstreamFailure(f"webhook unreachable: {exc}") from exc
