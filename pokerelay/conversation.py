from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

RECORD_DELIMITER = "---"
SPEAKER_MARKER = "**From:**"
REPLY_TO_MARKER = "**In Response To:**"
TIMESTAMP_MARKER = "**Timestamp:**"
PREAMBLE_TITLE = "# Messages from Poke"
DEFAULT_ASSISTANT_NAME = "Claude"
DEFAULT_HISTORY_TURNS = 10


class Identity(str, Enum):
    ASSISTANT = "assistant"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Turn:
    speaker: Identity
    body: str
    author: str = ""


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    content: str

    def as_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


def parse_turns(
    text: str,
    *,
    assistant_name: str = DEFAULT_ASSISTANT_NAME,
    preamble_title: str = PREAMBLE_TITLE,
) -> list[Turn]:
    """Split a conversation log into turns, oldest first.

    Records end at a `---` line. Inside a record, `**From:**` names the speaker
    and `**Timestamp:**` starts the body (one blank separator line is skipped).
    Records without a speaker or body, and the preamble, are dropped.
    """

    turns: list[Turn] = []
    for record in _split_records(text):
        turn = _parse_record(record, assistant_name=assistant_name, preamble_title=preamble_title)
        if turn is not None:
            turns.append(turn)
    return turns


def needs_reply(turns: list[Turn]) -> Turn | None:
    if not turns:
        return None
    last = turns[-1]
    if last.speaker is Identity.ASSISTANT:
        return None
    return last


def project_window(turns: list[Turn], max_count: int = DEFAULT_HISTORY_TURNS) -> list[ConversationMessage]:
    if max_count <= 0:
        return []
    messages: list[ConversationMessage] = []
    for turn in turns[-max_count:]:
        role = "assistant" if turn.speaker is Identity.ASSISTANT else "user"
        messages.append(ConversationMessage(role=role, content=turn.body))
    return messages


def render_turn(
    body: str,
    *,
    now: datetime,
    author: str = DEFAULT_ASSISTANT_NAME,
    label: str | None = None,
    thread_id: str = "operator",
) -> str:
    stamp = now.astimezone(timezone.utc)
    heading_label = label or f"{author} Response"
    lines = [
        f"## {stamp.strftime('%Y-%m-%d')} {stamp.strftime('%H:%M:%S')} - {heading_label}",
        f"{SPEAKER_MARKER} {author}",
        f"{REPLY_TO_MARKER} {thread_id}",
        f"{TIMESTAMP_MARKER} {iso_timestamp(stamp)}",
        "",
        body.strip(),
        "",
        RECORD_DELIMITER,
    ]
    return "\n".join(lines) + "\n"


def append_separator(prior: str) -> str:
    """Text to put between existing log content and a new record: one blank line."""

    if not prior:
        return ""
    if prior.endswith("\n\n"):
        return ""
    if prior.endswith("\n"):
        return "\n"
    return "\n\n"


def iso_timestamp(moment: datetime) -> str:
    stamp = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def _split_records(text: str) -> list[list[str]]:
    records: list[list[str]] = []
    current: list[str] = []
    for line in (text or "").splitlines():
        if line.strip() == RECORD_DELIMITER:
            records.append(current)
            current = []
            continue
        current.append(line)
    if current:
        records.append(current)
    return records


def _parse_record(lines: list[str], *, assistant_name: str, preamble_title: str) -> Turn | None:
    if any(line.strip() == preamble_title for line in lines):
        return None

    author = ""
    body_lines: list[str] = []
    in_body = False
    skip_blank = False
    for line in lines:
        if in_body:
            if skip_blank:
                skip_blank = False
                if not line.strip():
                    continue
            body_lines.append(line)
            continue
        stripped = line.strip()
        if stripped.startswith(SPEAKER_MARKER):
            author = stripped[len(SPEAKER_MARKER) :].strip()
        elif stripped.startswith(TIMESTAMP_MARKER):
            in_body = True
            skip_blank = True

    body = "\n".join(body_lines).strip()
    if not author or not body:
        return None
    speaker = Identity.ASSISTANT if author.lower() == assistant_name.strip().lower() else Identity.OPERATOR
    return Turn(speaker=speaker, body=body, author=author)
