from __future__ import annotations

import asyncio
from datetime import datetime
import json
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .conversation import ConversationMessage
from .store import DownstreamFailure

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
REPLY_MAX_TOKENS = 2000
PROACTIVE_MAX_TOKENS = 500
PROACTIVE_CONTEXT_MAX_CHARS = 10_000
PROVIDER_TIMEOUT_S = 90.0
SKIP_TOKEN = "SKIP"


class ResponseProvider(Protocol):
    async def complete(
        self,
        messages: list[ConversationMessage],
        *,
        system: str,
        max_tokens: int,
    ) -> str:
        ...


class AnthropicProvider:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        url: str = ANTHROPIC_MESSAGES_URL,
        timeout_s: float = PROVIDER_TIMEOUT_S,
    ) -> None:
        self.api_key = api_key.strip()
        self.model = model
        self.url = url
        self.timeout_s = max(1.0, float(timeout_s))

    async def complete(
        self,
        messages: list[ConversationMessage],
        *,
        system: str,
        max_tokens: int,
    ) -> str:
        return await asyncio.to_thread(self.complete_sync, messages, system=system, max_tokens=max_tokens)

    def complete_sync(
        self,
        messages: list[ConversationMessage],
        *,
        system: str,
        max_tokens: int,
    ) -> str:
        if not self.api_key:
            raise DownstreamFailure("Anthropic API key is not configured (set CLAUDE_API_KEY).")
        body = {
            "model": self.model,
            "max_tokens": int(max_tokens),
            "system": system,
            "messages": [message.as_payload() for message in messages],
        }
        request = Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:300]
            raise DownstreamFailure(f"Anthropic API error {exc.code}: {detail}") from exc
        except (URLError, OSError) as exc:
            raise DownstreamFailure(f"Anthropic API unreachable: {exc}") from exc

        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise DownstreamFailure("Anthropic API returned invalid JSON") from exc
        return _first_text_block(payload)


def build_system_prompt(context: str, *, now: datetime, assistant_name: str = "Claude") -> str:
    local = now.astimezone()
    context_block = context.strip() or "(no shared context available)"
    return (
        f"You are {assistant_name}, the operator's personal assistant, talking by text message.\n\n"
        "IMPORTANT CONTEXT:\n"
        f"{context_block}\n\n"
        "Guidelines:\n"
        "- Keep replies concise and conversational, suitable for SMS/iMessage.\n"
        "- Use what you know from the context; remember ongoing projects and preferences.\n\n"
        "ACTIONS:\n"
        "When the operator asks for something that needs local computer access (files, code, git), "
        "create a task for the local agents with this exact format:\n"
        "[CREATE_TASK priority=high|normal|low]\n"
        "Specific description of what needs to be done.\n"
        "[/CREATE_TASK]\n\n"
        "You can also use these GitHub actions; each is replaced with its result before the message is sent:\n"
        "[GITHUB_READ repo=owner/name path=path/to/file]\n"
        '[GITHUB_WRITE repo=owner/name path=path/to/file message="commit message"]\n'
        "new file content\n"
        "[/GITHUB_WRITE]\n"
        "[GITHUB_LIST_REPOS]\n"
        '[GITHUB_SEARCH query="search terms"]\n\n'
        f"Current date: {local.strftime('%Y-%m-%d')}\n"
        f"Current time: {local.strftime('%H:%M:%S %Z')}"
    )


def build_proactive_request(context: str, *, assistant_name: str = "Claude") -> tuple[str, list[ConversationMessage]]:
    system = (
        f"You are {assistant_name}, deciding whether to send the operator a proactive text message. "
        "Only send truly valuable, timely updates."
    )
    prompt = (
        "Based on the operator's context, projects, and goals, is there anything important or helpful "
        "you should proactively text them about today? Consider:\n"
        "- Project deadlines or milestones\n"
        "- Important reminders\n"
        "- Opportunities based on their interests\n"
        "- Check-ins on ongoing work\n\n"
        f'If yes, write a brief, casual text message (2-3 sentences max). If no, just say "{SKIP_TOKEN}".\n\n'
        "Context:\n"
        f"{context[:PROACTIVE_CONTEXT_MAX_CHARS]}"
    )
    return system, [ConversationMessage(role="user", content=prompt)]


def is_skip(text: str) -> bool:
    cleaned = text.strip()
    return not cleaned or SKIP_TOKEN in cleaned


def _first_text_block(payload: object) -> str:
    blocks = payload.get("content") if isinstance(payload, dict) else None
    if isinstance(blocks, list):
        for block in blocks:
            if isinstance(block, dict) and block.get("type", "text") == "text" and isinstance(block.get("text"), str):
                return block["text"]
    raise DownstreamFailure("Anthropic API response had no text content")
