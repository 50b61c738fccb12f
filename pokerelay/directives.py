"""Inline directives embedded in generated replies.

The scanner walks the reply left to right and recognizes the bracketed tags
below; anything it cannot fully parse is left in the text untouched.

    [CREATE_TASK priority=high|normal|low] ... [/CREATE_TASK]
    [GITHUB_READ repo=owner/name path=some/file.md]
    [GITHUB_WRITE repo=owner/name path=some/file.md message="commit text"] ... [/GITHUB_WRITE]
    [GITHUB_LIST_REPOS]
    [GITHUB_SEARCH query="text"]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Union

from .ledger import PRIORITIES, TaskLedger
from .runtime.events import EventBus, summarize_error
from .store import LogHandle, LogTarget, MalformedDirective, NotFound, Version

LIST_SUMMARY_MAX_ITEMS = 10

_OPEN_TAGS = ("CREATE_TASK", "GITHUB_READ", "GITHUB_WRITE", "GITHUB_LIST_REPOS", "GITHUB_SEARCH")
_BLOCK_TAGS = {"CREATE_TASK", "GITHUB_WRITE"}


@dataclass(frozen=True)
class CreateTask:
    priority: str
    body: str


@dataclass(frozen=True)
class RemoteRead:
    repo: str
    path: str


@dataclass(frozen=True)
class RemoteWrite:
    repo: str
    path: str
    message: str
    body: str


@dataclass(frozen=True)
class ListTargets:
    pass


@dataclass(frozen=True)
class Search:
    query: str


Directive = Union[CreateTask, RemoteRead, RemoteWrite, ListTargets, Search]


@dataclass(frozen=True)
class DirectiveSpan:
    start: int
    end: int
    source: str
    directive: Directive


@dataclass(frozen=True)
class DirectiveOutcome:
    span: DirectiveSpan
    ok: bool
    text: str


class RepoClient(Protocol):
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

    async def list_repos(self) -> list[str]:
        ...

    async def search_repos(self, query: str) -> list[str]:
        ...


def scan_directives(text: str) -> list[DirectiveSpan]:
    spans: list[DirectiveSpan] = []
    pos = 0
    while True:
        start = text.find("[", pos)
        if start < 0:
            break
        try:
            span = _scan_at(text, start)
        except MalformedDirective:
            span = None
        if span is None:
            pos = start + 1
            continue
        spans.append(span)
        pos = span.end
    return spans


class CommandGrammar:
    """Executes the directives in a reply and rewrites it with their outcomes."""

    def __init__(
        self,
        *,
        ledger: TaskLedger,
        repos: RepoClient,
        event_bus: EventBus | None = None,
        list_max_items: int = LIST_SUMMARY_MAX_ITEMS,
    ) -> None:
        self.ledger = ledger
        self.repos = repos
        self.event_bus = event_bus
        self.list_max_items = max(1, int(list_max_items))

    async def apply(self, text: str) -> tuple[str, list[DirectiveOutcome]]:
        outcomes: list[DirectiveOutcome] = []
        for span in scan_directives(text):
            outcomes.append(await self.execute(span))

        pieces: list[str] = []
        cursor = 0
        for outcome in outcomes:
            pieces.append(text[cursor : outcome.span.start])
            pieces.append(outcome.text)
            cursor = outcome.span.end
        pieces.append(text[cursor:])
        return "".join(pieces), outcomes

    async def execute(self, span: DirectiveSpan) -> DirectiveOutcome:
        directive = span.directive
        kind = type(directive).__name__
        try:
            text = await self._run(directive)
        except NotFound as exc:
            self._publish("directive.failed", f"{kind}: {exc}", severity="warn", kind=kind)
            return DirectiveOutcome(span=span, ok=False, text=f"[Not found: {exc.target}]")
        except Exception as exc:  # noqa: BLE001
            self._publish("directive.failed", f"{kind}: {summarize_error(exc)}", severity="warn", kind=kind)
            return DirectiveOutcome(span=span, ok=False, text=f"[Error: {summarize_error(exc)}]")
        self._publish("directive.executed", f"{kind}: {text}", kind=kind)
        return DirectiveOutcome(span=span, ok=True, text=text)

    async def _run(self, directive: Directive) -> str:
        if isinstance(directive, CreateTask):
            record = await self.ledger.append(directive.priority, directive.body)
            if self.event_bus is not None:
                self.event_bus.publish_event(
                    "ledger.task.created",
                    f"Created {record.priority} priority task {record.id}.",
                    source="ledger",
                    metadata={"task_id": record.id, "priority": record.priority},
                )
            return f"[Task created: {record.id}]"

        if isinstance(directive, RemoteRead):
            target = LogTarget(directive.repo, directive.path)
            handle = await self.repos.read(target)
            return f"[Read {target}: {len(handle.content)} chars]"

        if isinstance(directive, RemoteWrite):
            target = LogTarget(directive.repo, directive.path)
            try:
                current: Version | None = (await self.repos.read(target)).version
            except NotFound:
                current = None
            await self.repos.write(target, directive.body, current, message=directive.message)
            return f"[Wrote {target}]"

        if isinstance(directive, ListTargets):
            names = await self.repos.list_repos()
            if not names:
                return "You have no repos."
            return f"Your repos: {self._summarize(names)}"

        if isinstance(directive, Search):
            names = await self.repos.search_repos(directive.query)
            if not names:
                return f'No repos match "{directive.query}".'
            return f'Repos matching "{directive.query}": {self._summarize(names)}'

        raise MalformedDirective(f"unsupported directive: {directive!r}")

    def _summarize(self, names: list[str]) -> str:
        shown = ", ".join(names[: self.list_max_items])
        hidden = len(names) - self.list_max_items
        if hidden > 0:
            return f"{shown} (+{hidden} more)"
        return shown

    def _publish(self, event_type: str, message: str, *, severity: str = "info", kind: str) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish_event(
            event_type,
            message,
            severity=severity,
            source="directives",
            metadata={"kind": kind},
        )


def _scan_at(text: str, start: int) -> DirectiveSpan | None:
    tag = ""
    for candidate in _OPEN_TAGS:
        if text.startswith(candidate, start + 1):
            tag = candidate
            break
    if not tag:
        return None

    after_name = start + 1 + len(tag)
    if after_name >= len(text) or text[after_name] not in " ]":
        return None
    header_end, attrs = _read_attributes(text, after_name)
    end = header_end

    body = ""
    if tag in _BLOCK_TAGS:
        closing = f"[/{tag}]"
        close_at = text.find(closing, header_end)
        if close_at < 0:
            raise MalformedDirective(f"unterminated {tag}")
        body = text[header_end:close_at]
        end = close_at + len(closing)

    directive = _build(tag, attrs, body)
    return DirectiveSpan(start=start, end=end, source=text[start:end], directive=directive)


def _read_attributes(text: str, pos: int) -> tuple[int, dict[str, str]]:
    """Parse `key=value` / `key="quoted value"` pairs up to the closing `]`."""

    attrs: dict[str, str] = {}
    length = len(text)
    while True:
        while pos < length and text[pos] == " ":
            pos += 1
        if pos >= length or text[pos] == "\n":
            raise MalformedDirective("unterminated directive header")
        if text[pos] == "]":
            return pos + 1, attrs

        key_start = pos
        while pos < length and (text[pos].isalnum() or text[pos] == "_"):
            pos += 1
        key = text[key_start:pos]
        if not key or pos >= length or text[pos] != "=":
            raise MalformedDirective("expected key=value in directive header")
        pos += 1

        if pos < length and text[pos] == '"':
            close = text.find('"', pos + 1)
            if close < 0:
                raise MalformedDirective("unterminated quoted value")
            value = text[pos + 1 : close]
            pos = close + 1
        else:
            value_start = pos
            while pos < length and text[pos] not in " ]\n":
                pos += 1
            value = text[value_start:pos]
        if key in attrs:
            raise MalformedDirective(f"duplicate attribute {key}")
        attrs[key] = value


def _build(tag: str, attrs: dict[str, str], body: str) -> Directive:
    if tag == "CREATE_TASK":
        _expect_keys(tag, attrs, {"priority"})
        priority = attrs["priority"].strip().lower()
        if priority not in PRIORITIES:
            raise MalformedDirective(f"bad priority {priority!r}")
        description = body.strip()
        if not description:
            raise MalformedDirective("empty task body")
        return CreateTask(priority=priority, body=description)
    if tag == "GITHUB_READ":
        _expect_keys(tag, attrs, {"repo", "path"})
        return RemoteRead(repo=_repo(attrs["repo"]), path=_path(attrs["path"]))
    if tag == "GITHUB_WRITE":
        _expect_keys(tag, attrs, {"repo", "path", "message"})
        return RemoteWrite(
            repo=_repo(attrs["repo"]),
            path=_path(attrs["path"]),
            message=attrs["message"].strip() or "Update via relay",
            body=_strip_block_newlines(body),
        )
    if tag == "GITHUB_LIST_REPOS":
        _expect_keys(tag, attrs, set())
        return ListTargets()
    if tag == "GITHUB_SEARCH":
        _expect_keys(tag, attrs, {"query"})
        query = attrs["query"].strip()
        if not query:
            raise MalformedDirective("empty search query")
        return Search(query=query)
    raise MalformedDirective(f"unknown tag {tag}")


def _expect_keys(tag: str, attrs: dict[str, str], keys: set[str]) -> None:
    if set(attrs) != keys:
        raise MalformedDirective(f"{tag} expects {sorted(keys)}, got {sorted(attrs)}")


def _repo(value: str) -> str:
    owner, sep, name = value.strip().partition("/")
    if not sep or not owner or not name or "/" in name:
        raise MalformedDirective(f"bad repo {value!r}")
    return f"{owner}/{name}"


def _path(value: str) -> str:
    cleaned = value.strip().lstrip("/")
    if not cleaned:
        raise MalformedDirective("empty path")
    return cleaned


def _strip_block_newlines(body: str) -> str:
    if body.startswith("\r\n"):
        body = body[2:]
    elif body.startswith("\n"):
        body = body[1:]
    if body.endswith("\n"):
        body = body[:-1]
    return body
