from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib

from pokerelay.conversation import ConversationMessage
from pokerelay.store import LogHandle, LogTarget, NotFound, TransportError, Version, VersionConflict

SAMPLE_LOG = """# Messages from Poke

Conversation between the operator and the assistant.

---

## 2026-01-05 09:00:00 - Operator Message
**From:** caleb
**In Response To:** claude
**Timestamp:** 2026-01-05T09:00:00.000Z

hey, what's on my plate today?

---

## 2026-01-05 09:00:06 - Claude Response
**From:** Claude
**In Response To:** operator
**Timestamp:** 2026-01-05T09:00:06.000Z

You have the design review at 2pm.
Also the lab report is due Friday.

---
"""


def operator_record(body: str, *, author: str = "caleb", stamp: str = "2026-01-05T09:05:00.000Z") -> str:
    return (
        "\n## 2026-01-05 09:05:00 - Operator Message\n"
        f"**From:** {author}\n"
        "**In Response To:** claude\n"
        f"**Timestamp:** {stamp}\n"
        "\n"
        f"{body}\n"
        "\n"
        "---\n"
    )


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


class FakeGitHub:
    """In-memory stand-in for the GitHub contents API with sha versioning."""

    def __init__(self, files: dict[tuple[str, str], str] | None = None, repos: list[str] | None = None) -> None:
        self.files: dict[tuple[str, str], tuple[str, str]] = {}
        for (repo, path), content in (files or {}).items():
            self.files[(repo, path)] = (content, _sha(content))
        self.repos = list(repos or [])
        self.reads: list[str] = []
        self.writes: list[tuple[str, str, str]] = []
        self.fail_reads: dict[str, Exception] = {}
        self.fail_writes: dict[str, Exception] = {}
        self.search_results: dict[str, list[str]] = {}

    def content(self, repo: str, path: str) -> str:
        return self.files[(repo, path)][0]

    def version(self, repo: str, path: str) -> Version:
        return Version(self.files[(repo, path)][1])

    def put_external(self, repo: str, path: str, content: str) -> None:
        self.files[(repo, path)] = (content, _sha(content))

    async def read(self, target: LogTarget) -> LogHandle:
        key = str(target)
        self.reads.append(key)
        if key in self.fail_reads:
            raise self.fail_reads[key]
        entry = self.files.get((target.repo, target.path))
        if entry is None:
            raise NotFound(key)
        return LogHandle(target=target, content=entry[0], version=Version(entry[1]))

    async def write(self, target: LogTarget, content: str, expected: Version | None, *, message: str) -> Version:
        key = str(target)
        if key in self.fail_writes:
            raise self.fail_writes[key]
        current = self.files.get((target.repo, target.path))
        current_version = Version(current[1]) if current else None
        if current_version != expected:
            raise VersionConflict(key, expected)
        sha = _sha(content)
        self.files[(target.repo, target.path)] = (content, sha)
        self.writes.append((key, content, message))
        return Version(sha)

    async def list_repos(self) -> list[str]:
        if "list" in self.fail_reads:
            raise self.fail_reads["list"]
        return list(self.repos)

    async def search_repos(self, query: str) -> list[str]:
        if "search" in self.fail_reads:
            raise self.fail_reads["search"]
        return list(self.search_results.get(query, []))


class StubProvider:
    def __init__(self, replies: list[str] | None = None, *, error: Exception | None = None) -> None:
        self.replies = list(replies or [])
        self.error = error
        self.calls: list[tuple[list[ConversationMessage], str, int]] = []

    async def complete(self, messages: list[ConversationMessage], *, system: str, max_tokens: int) -> str:
        self.calls.append((list(messages), system, max_tokens))
        if self.error is not None:
            raise self.error
        if not self.replies:
            return "SKIP"
        return self.replies.pop(0)


class RecordingSink:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.sent: list[str] = []
        self.error = error

    async def send(self, message: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(message)


def transport_error(message: str = "connection reset") -> TransportError:
    return TransportError(message)


def _sha(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()
