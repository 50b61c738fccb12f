from __future__ import annotations

import asyncio
import base64
import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from .credentials import TokenProvider
from .store import LogHandle, LogTarget, NotFound, TransportError, Version, VersionConflict

GITHUB_API_URL = "https://api.github.com"
GITHUB_TIMEOUT_S = 20.0
GITHUB_USER_AGENT = "pokerelay/0.3 (+https://github.com)"
REPO_LIST_PAGE_SIZE = 100
SEARCH_PAGE_SIZE = 10


class GitHubClient:
    """GitHub REST client: file contents as versioned logs, plus repo listing.

    Implements the `LogStore` protocol with the blob sha as the version token.
    Calls are blocking urllib requests pushed onto a worker thread.
    """

    def __init__(
        self,
        credentials: TokenProvider,
        *,
        api_url: str = GITHUB_API_URL,
        timeout_s: float = GITHUB_TIMEOUT_S,
    ) -> None:
        self.credentials = credentials
        self.api_url = api_url.rstrip("/")
        self.timeout_s = max(1.0, float(timeout_s))

    async def read(self, target: LogTarget) -> LogHandle:
        return await asyncio.to_thread(self.read_sync, target)

    async def write(
        self,
        target: LogTarget,
        content: str,
        expected: Version | None,
        *,
        message: str,
    ) -> Version:
        return await asyncio.to_thread(self.write_sync, target, content, expected, message=message)

    async def list_repos(self) -> list[str]:
        return await asyncio.to_thread(self.list_repos_sync)

    async def search_repos(self, query: str) -> list[str]:
        return await asyncio.to_thread(self.search_repos_sync, query)

    def read_sync(self, target: LogTarget) -> LogHandle:
        payload = self._request("GET", _contents_path(target), target=str(target))
        if not isinstance(payload, dict) or "sha" not in payload:
            raise TransportError(f"unexpected contents payload for {target}")
        version = Version(str(payload["sha"]))
        encoding = payload.get("encoding")
        if encoding == "none":
            # Files over 1 MB come back without content; fetch that exact blob.
            payload = self._request(
                "GET",
                f"/repos/{target.repo}/git/blobs/{version.token}",
                target=f"{target}@{version.short()}",
            )
            encoding = payload.get("encoding") if isinstance(payload, dict) else None
        if encoding != "base64":
            raise TransportError(f"{target} returned unsupported encoding {encoding!r}")
        encoded = str(payload.get("content") or "")
        try:
            content = base64.b64decode(encoded).decode("utf-8")
        except Exception as exc:  # noqa: BLE001
            raise TransportError(f"could not decode {target}: {exc}") from exc
        return LogHandle(target=target, content=content, version=version)

    def write_sync(
        self,
        target: LogTarget,
        content: str,
        expected: Version | None,
        *,
        message: str,
    ) -> Version:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        if expected is not None:
            body["sha"] = expected.token
        payload = self._request(
            "PUT",
            _contents_path(target),
            body=body,
            target=str(target),
            expected=expected,
        )
        sha = ""
        if isinstance(payload, dict) and isinstance(payload.get("content"), dict):
            sha = str(payload["content"].get("sha") or "")
        if not sha:
            raise TransportError(f"write to {target} returned no content sha")
        return Version(sha)

    def list_repos_sync(self) -> list[str]:
        query = urlencode({"per_page": REPO_LIST_PAGE_SIZE, "sort": "updated"})
        payload = self._request("GET", f"/user/repos?{query}", target="user repos")
        if not isinstance(payload, list):
            raise TransportError("unexpected repo list payload")
        return [str(item["name"]) for item in payload if isinstance(item, dict) and item.get("name")]

    def search_repos_sync(self, query: str) -> list[str]:
        params = urlencode({"q": query, "per_page": SEARCH_PAGE_SIZE})
        payload = self._request("GET", f"/search/repositories?{params}", target=f"search {query!r}")
        items = payload.get("items") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise TransportError("unexpected search payload")
        return [str(item["full_name"]) for item in items if isinstance(item, dict) and item.get("full_name")]

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        target: str,
        expected: Version | None = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self.credentials.token()}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": GITHUB_USER_AGENT,
        }
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")
        request = Request(f"{self.api_url}{path}", data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = _error_detail(exc)
            if exc.code == 404:
                raise NotFound(target) from exc
            if exc.code == 409 or (exc.code == 422 and "sha" in detail.lower()):
                raise VersionConflict(target, expected) from exc
            raise TransportError(f"GitHub {method} {target} failed: {exc.code} {detail}", status=exc.code) from exc
        except URLError as exc:
            raise TransportError(f"GitHub {method} {target} failed: {exc.reason}") from exc
        except OSError as exc:
            raise TransportError(f"GitHub {method} {target} failed: {exc}") from exc
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise TransportError(f"GitHub {method} {target} returned invalid JSON") from exc


def _contents_path(target: LogTarget) -> str:
    return f"/repos/{target.repo}/contents/{quote(target.path.lstrip('/'))}"


def _error_detail(exc: HTTPError) -> str:
    try:
        raw = exc.read()
    except Exception:  # noqa: BLE001
        return exc.reason or ""
    try:
        payload = json.loads(raw.decode("utf-8"))
    except Exception:  # noqa: BLE001
        return raw.decode("utf-8", errors="replace")[:200]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return exc.reason or ""
