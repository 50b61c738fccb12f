from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import threading
from typing import Callable, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from jose import jwt

from .store import TransportError

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
APP_JWT_LIFETIME = timedelta(minutes=9)
APP_JWT_CLOCK_SKEW = timedelta(seconds=60)
GITHUB_API_URL = "https://api.github.com"
TOKEN_TIMEOUT_S = 20.0

TokenFetcher = Callable[[], tuple[str, datetime]]


class TokenProvider(Protocol):
    def token(self) -> str:
        ...


class StaticToken:
    def __init__(self, value: str) -> None:
        self._value = value.strip()

    def token(self) -> str:
        if not self._value:
            raise RuntimeError("GitHub token is not configured (set GITHUB_TOKEN).")
        return self._value


class CachedToken:
    """Reuse a fetched token until shortly before it expires.

    `fetch` returns `(token, expires_at)`; it is called again once the cached
    token is within `refresh_margin` of expiring. Requests run on worker
    threads, so the refresh is serialized.
    """

    def __init__(
        self,
        fetch: TokenFetcher,
        *,
        refresh_margin: timedelta = TOKEN_REFRESH_MARGIN,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._fetch = fetch
        self._refresh_margin = refresh_margin
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._lock = threading.Lock()
        self._cached: str | None = None
        self._expires_at: datetime | None = None
        self.fetch_count = 0

    def token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._cached and self._expires_at and now < self._expires_at - self._refresh_margin:
                return self._cached
            value, expires_at = self._fetch()
            self.fetch_count += 1
            self._cached = value
            self._expires_at = expires_at
            return value


class GitHubAppInstallation:
    """Mints installation access tokens for a GitHub App.

    Each call signs a short-lived RS256 app JWT with the app's private key and
    exchanges it at `/app/installations/{id}/access_tokens`. Wrap it in
    `CachedToken` so the exchange happens about once an hour.
    """

    def __init__(
        self,
        app_id: str,
        installation_id: str,
        private_key: str,
        *,
        api_url: str = GITHUB_API_URL,
        timeout_s: float = TOKEN_TIMEOUT_S,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.app_id = app_id.strip()
        self.installation_id = installation_id.strip()
        self.private_key = private_key
        self.api_url = api_url.rstrip("/")
        self.timeout_s = max(1.0, float(timeout_s))
        self.clock = clock or (lambda: datetime.now(tz=timezone.utc))

    @classmethod
    def from_key_file(cls, app_id: str, installation_id: str, key_path: Path) -> "GitHubAppInstallation":
        return cls(app_id, installation_id, key_path.read_text(encoding="utf-8"))

    def app_jwt(self) -> str:
        now = self.clock()
        claims = {
            "iat": int((now - APP_JWT_CLOCK_SKEW).timestamp()),
            "exp": int((now + APP_JWT_LIFETIME).timestamp()),
            "iss": self.app_id,
        }
        return jwt.encode(claims, self.private_key, algorithm="RS256")

    def __call__(self) -> tuple[str, datetime]:
        request = Request(
            f"{self.api_url}/app/installations/{self.installation_id}/access_tokens",
            data=b"",
            headers={
                "Authorization": f"Bearer {self.app_jwt()}",
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "pokerelay",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                raw = response.read()
        except HTTPError as exc:
            raise TransportError(f"GitHub App token request failed: {exc.code}", status=exc.code) from exc
        except (URLError, OSError) as exc:
            raise TransportError(f"GitHub App token request failed: {exc}") from exc

        try:
            payload = json.loads(raw.decode("utf-8"))
            token = str(payload["token"])
            expires_at = datetime.fromisoformat(str(payload["expires_at"]).replace("Z", "+00:00"))
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError("GitHub App token response was not understood") from exc
        return token, expires_at
