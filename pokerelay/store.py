"""Versioned text logs and the relay error taxonomy.

A log is a single text blob plus an opaque version token. Writes replace the
whole blob and must present the version that was read; a stale version is a
`VersionConflict`, never a silent overwrite.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class RelayError(Exception):
    """Base class for every failure the relay knows how to classify."""


class TransportError(RelayError):
    """Network or HTTP failure talking to a remote store or provider."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFound(RelayError):
    def __init__(self, target: str) -> None:
        super().__init__(f"{target} not found")
        self.target = target


class VersionConflict(RelayError):
    def __init__(self, target: str, expected: "Version | None") -> None:
        expected_text = expected.short() if expected is not None else "none"
        super().__init__(f"{target} changed since it was read (expected version {expected_text})")
        self.target = target
        self.expected = expected


class DownstreamFailure(RelayError):
    """The generative provider or the notification sink did not deliver."""


class MalformedDirective(RelayError):
    """Raised by the directive scanner only; never escapes it."""


@dataclass(frozen=True)
class Version:
    token: str

    def short(self) -> str:
        return self.token[:7]

    def __str__(self) -> str:
        return self.token


@dataclass(frozen=True)
class LogTarget:
    repo: str
    path: str

    def __str__(self) -> str:
        return f"{self.repo}/{self.path}"


@dataclass(frozen=True)
class LogHandle:
    target: LogTarget
    content: str
    version: Version


class LogStore(Protocol):
    async def read(self, target: LogTarget) -> LogHandle:
        ...

    async def write(
        self,
        target: LogTarget,
        content: str,
        expected: Version | None,
        *,
        message: str,
    ) -> Version:
        ...


async def append_to_log(store: LogStore, handle: LogHandle, entry: str, *, message: str) -> Version:
    """Append `entry` after the content in `handle`, guarded by its version."""

    return await store.write(handle.target, handle.content + entry, handle.version, message=message)
