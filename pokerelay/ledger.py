"""Append-only ledger of tasks delegated to the out-of-band executor.

The ledger is a markdown log. This process only ever appends `pending` task
blocks; the executor later appends status blocks for the same task id, so the
current status of a task is whatever its most recent block says.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Callable

from .conversation import RECORD_DELIMITER, append_separator, iso_timestamp
from .store import LogHandle, LogStore, LogTarget, NotFound, Version

PRIORITIES = ("high", "normal", "low")
STATUSES = ("pending", "completed", "failed")
RESULT_OUTPUT_MAX_BYTES = 1500
TRUNCATION_MARKER = "\n...(truncated)"
LEDGER_HEADER = (
    "# Tasks for Local Agents\n\n"
    "Tasks created by the cloud agent for local agents to complete.\n\n"
    "---\n\n"
)

_HEADING_RE = re.compile(r"^##\s+(?P<rest>.+?)\s*$")
_TASK_ID_RE = re.compile(r"\btask_\d+\b")
_FIELD_RE = re.compile(r"^\*\*(?P<key>[A-Za-z ]+):\*\*\s*(?P<value>.*?)\s*$")
_RESULT_RE = re.compile(r"^(?P<word>\S+)\s+at\s+(?P<stamp>\S+)")
_FENCE = "```"


@dataclass(frozen=True)
class TaskRecord:
    id: str
    created_at: datetime | None
    priority: str
    status: str
    body: str
    result: str | None = None
    completed_at: datetime | None = None


class TaskIdGenerator:
    """`task_<epoch-ms>` ids that never repeat or go backwards in this process."""

    def __init__(self) -> None:
        self._last_ms = 0

    def next_id(self, now: datetime) -> str:
        stamp_ms = int(now.timestamp() * 1000)
        if stamp_ms <= self._last_ms:
            stamp_ms = self._last_ms + 1
        self._last_ms = stamp_ms
        return f"task_{stamp_ms}"


class TaskLedger:
    def __init__(
        self,
        store: LogStore,
        target: LogTarget,
        *,
        clock: Callable[[], datetime] | None = None,
        ids: TaskIdGenerator | None = None,
        output_max_bytes: int = RESULT_OUTPUT_MAX_BYTES,
    ) -> None:
        self.store = store
        self.target = target
        self.clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self.ids = ids or TaskIdGenerator()
        self.output_max_bytes = max(0, int(output_max_bytes))

    async def append(self, priority: str, body: str) -> TaskRecord:
        cleaned_priority = priority.strip().lower()
        if cleaned_priority not in PRIORITIES:
            raise ValueError(f"unknown task priority: {priority!r}")
        cleaned_body = body.strip()
        if not cleaned_body:
            raise ValueError("task description is empty")

        prior, version = await self._read_or_seed()
        now = self.clock()
        record = TaskRecord(
            id=self.ids.next_id(now),
            created_at=now,
            priority=cleaned_priority,
            status="pending",
            body=cleaned_body,
        )
        content = prior + append_separator(prior) + render_task(record)
        await self.store.write(
            self.target,
            content,
            version,
            message=f"Add task: {_commit_summary(cleaned_body)}",
        )
        return record

    async def read(self) -> LogHandle:
        return await self.store.read(self.target)

    async def records_completed_since(self, cutoff: datetime) -> list[TaskRecord]:
        handle = await self.read()
        return completed_since(handle.content, cutoff, output_max_bytes=self.output_max_bytes)

    async def _read_or_seed(self) -> tuple[str, Version | None]:
        try:
            handle = await self.read()
        except NotFound:
            return LEDGER_HEADER, None
        return handle.content, handle.version


def render_task(record: TaskRecord) -> str:
    created = iso_timestamp(record.created_at) if record.created_at else ""
    lines = [
        f"## {record.id}",
        f"**Created:** {created}",
        f"**Priority:** {record.priority}",
        f"**Status:** {record.status}",
        "",
        record.body,
        "",
        RECORD_DELIMITER,
    ]
    return "\n".join(lines) + "\n"


def parse_ledger(text: str, *, output_max_bytes: int = RESULT_OUTPUT_MAX_BYTES) -> list[TaskRecord]:
    """Every task block in the ledger, in file order (status blocks included)."""

    records: list[TaskRecord] = []
    for block in _split_blocks(text):
        record = _parse_block(block, output_max_bytes=output_max_bytes)
        if record is not None:
            records.append(record)
    return records


def latest_records(text: str, *, output_max_bytes: int = RESULT_OUTPUT_MAX_BYTES) -> dict[str, TaskRecord]:
    resolved: dict[str, TaskRecord] = {}
    for record in parse_ledger(text, output_max_bytes=output_max_bytes):
        previous = resolved.get(record.id)
        if previous is not None:
            record = _merge(previous, record)
        resolved[record.id] = record
    return resolved


def completed_since(
    text: str,
    cutoff: datetime,
    *,
    output_max_bytes: int = RESULT_OUTPUT_MAX_BYTES,
) -> list[TaskRecord]:
    finished: list[TaskRecord] = []
    for record in latest_records(text, output_max_bytes=output_max_bytes).values():
        if record.status not in {"completed", "failed"} or record.completed_at is None:
            continue
        if record.completed_at > cutoff:
            finished.append(record)
    finished.sort(key=lambda item: item.completed_at or cutoff)
    return finished


def format_completed_tasks(records: list[TaskRecord]) -> str:
    if not records:
        return ""
    lines = ["# Recently completed tasks", ""]
    for record in records:
        stamp = iso_timestamp(record.completed_at) if record.completed_at else "unknown time"
        lines.append(f"## {record.id} ({record.status} at {stamp})")
        if record.body:
            lines.append(record.body)
        if record.result:
            lines.append("Output:")
            lines.append(record.result)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def truncate_bytes(text: str, limit: int) -> str:
    """Cut `text` so the result, marker included, fits in `limit` UTF-8 bytes."""

    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    room = max(0, limit - len(TRUNCATION_MARKER.encode("utf-8")))
    return encoded[:room].decode("utf-8", errors="ignore").rstrip() + TRUNCATION_MARKER


def _split_blocks(text: str) -> list[list[str]]:
    blocks: list[list[str]] = []
    current: list[str] = []
    in_fence = False
    for line in (text or "").splitlines():
        if line.strip().startswith(_FENCE):
            in_fence = not in_fence
        if not in_fence and line.strip() == RECORD_DELIMITER:
            blocks.append(current)
            current = []
            continue
        current.append(line)
    if current:
        blocks.append(current)
    return blocks


def _parse_block(lines: list[str], *, output_max_bytes: int) -> TaskRecord | None:
    """Parse one ledger block.

    Fields are the `**Key:** value` lines directly under the `## task_<id>`
    heading, up to the first blank line; everything after is body. In a block
    that carries a `**Result:**` field the first fenced block is the output.
    """

    task_id = ""
    fields: dict[str, str] = {}
    body_lines: list[str] = []
    output_lines: list[str] = []
    in_header = False
    in_fence = False
    saw_output = False
    for line in lines:
        stripped = line.strip()
        if not task_id:
            heading = _HEADING_RE.match(stripped)
            match = _TASK_ID_RE.search(heading.group("rest")) if heading else None
            if match:
                task_id = match.group(0)
                in_header = True
            continue
        if in_header:
            if not stripped:
                in_header = False
                continue
            field = _FIELD_RE.match(stripped)
            if field:
                fields[field.group("key").strip().lower()] = field.group("value")
                continue
            in_header = False
        if "result" in fields and stripped.startswith(_FENCE) and (in_fence or not saw_output):
            in_fence = not in_fence
            saw_output = True
            continue
        if in_fence:
            output_lines.append(line)
        else:
            body_lines.append(line)

    if not task_id:
        return None
    status = fields.get("status", "").strip().lower()
    if status not in STATUSES:
        return None
    priority = fields.get("priority", "").strip().lower()
    if priority not in PRIORITIES:
        priority = "normal"

    completed_at = None
    result_match = _RESULT_RE.match(fields.get("result", ""))
    if result_match:
        completed_at = _parse_iso(result_match.group("stamp"))
    output = "\n".join(output_lines).strip()
    return TaskRecord(
        id=task_id,
        created_at=_parse_iso(fields.get("created", "")),
        priority=priority,
        status=status,
        body="\n".join(body_lines).strip(),
        result=truncate_bytes(output, output_max_bytes) if output else None,
        completed_at=completed_at,
    )


def _merge(previous: TaskRecord, latest: TaskRecord) -> TaskRecord:
    return TaskRecord(
        id=latest.id,
        created_at=previous.created_at or latest.created_at,
        priority=previous.priority,
        status=latest.status,
        body=previous.body or latest.body,
        result=latest.result,
        completed_at=latest.completed_at,
    )


def _parse_iso(value: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _commit_summary(body: str) -> str:
    flat = " ".join(body.split())
    if len(flat) <= 50:
        return flat
    return flat[:50] + "..."
