"""The relay poll loop and its daily proactive-message gate.

One `RelayLoop.run_cycle()` call is one cycle: load context, maybe send the
proactive message, read the conversation log, and answer the operator if the
log changed and its last turn is theirs. All mutable loop state lives in a
`RelayState` so several loops (or tests) can run side by side.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable

from .context import ContextLoader
from .conversation import (
    DEFAULT_ASSISTANT_NAME,
    DEFAULT_HISTORY_TURNS,
    append_separator,
    needs_reply,
    parse_turns,
    project_window,
    render_turn,
)
from .directives import CommandGrammar, DirectiveOutcome
from .inference import (
    PROACTIVE_MAX_TOKENS,
    REPLY_MAX_TOKENS,
    ResponseProvider,
    build_proactive_request,
    build_system_prompt,
    is_skip,
)
from .notify import NotificationSink
from .runtime.events import EventBus, summarize_error
from .store import DownstreamFailure, LogStore, LogTarget, Version, append_to_log

DEFAULT_POLL_INTERVAL_S = 5.0
PROACTIVE_INTERVAL = timedelta(hours=24)
PROACTIVE_RETRY_COOLDOWN = timedelta(hours=1)
PROACTIVE_WINDOW_HOURS = (9, 20)

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class CycleResult:
    status: str
    detail: str = ""
    version: Version | None = None
    outcomes: tuple[DirectiveOutcome, ...] = ()
    proactive_sent: bool = False


@dataclass
class RelayState:
    last_seen: Version | None = None
    processing: bool = False
    proactive_last_sent_at: datetime | None = None
    proactive_last_attempt_at: datetime | None = None
    cycles: int = 0
    last_result: CycleResult | None = field(default=None, repr=False)
    last_reply: CycleResult | None = field(default=None, repr=False)


class ProactiveScheduler:
    def __init__(
        self,
        *,
        interval: timedelta = PROACTIVE_INTERVAL,
        window_hours: tuple[int, int] = PROACTIVE_WINDOW_HOURS,
        retry_cooldown: timedelta = PROACTIVE_RETRY_COOLDOWN,
        tz: tzinfo | None = None,
    ) -> None:
        self.interval = interval
        self.window_hours = window_hours
        self.retry_cooldown = retry_cooldown
        self.tz = tz

    def local_hour(self, now: datetime) -> int:
        local = now.astimezone(self.tz) if self.tz is not None else now.astimezone()
        return local.hour

    def due(self, state: RelayState, now: datetime) -> bool:
        if state.proactive_last_sent_at is not None and now - state.proactive_last_sent_at < self.interval:
            return False
        if state.proactive_last_attempt_at is not None and now - state.proactive_last_attempt_at < self.retry_cooldown:
            return False
        start, end = self.window_hours
        return start <= self.local_hour(now) <= end


class RelayLoop:
    def __init__(
        self,
        *,
        store: LogStore,
        conversation: LogTarget,
        provider: ResponseProvider,
        sink: NotificationSink,
        grammar: CommandGrammar,
        event_bus: EventBus,
        context: ContextLoader | None = None,
        proactive: ProactiveScheduler | None = None,
        clock: Clock = utc_clock,
        state: RelayState | None = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        history_turns: int = DEFAULT_HISTORY_TURNS,
        assistant_name: str = DEFAULT_ASSISTANT_NAME,
        thread_id: str = "operator",
    ) -> None:
        self.store = store
        self.conversation = conversation
        self.provider = provider
        self.sink = sink
        self.grammar = grammar
        self.event_bus = event_bus
        self.context = context
        self.proactive = proactive
        self.clock = clock
        self.state = state or RelayState()
        if self.state.proactive_last_sent_at is None:
            self.state.proactive_last_sent_at = clock()
        self.poll_interval_s = max(0.1, float(poll_interval_s))
        self.history_turns = max(1, int(history_turns))
        self.assistant_name = assistant_name
        self.thread_id = thread_id

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Fire a cycle every `poll_interval_s` until `stop` is set.

        Each tick starts its own task; a tick that lands while a cycle is still
        running finds the guard set and returns `busy` immediately.
        """

        stop = stop or asyncio.Event()
        inflight: set[asyncio.Task[CycleResult]] = set()
        self.event_bus.publish_event(
            "relay.service.started",
            f"Relay polling {self.conversation} every {self.poll_interval_s:g}s.",
            metadata={"target": str(self.conversation), "interval_s": self.poll_interval_s},
        )
        try:
            while not stop.is_set():
                task = asyncio.create_task(self.run_cycle(), name="relay-cycle")
                inflight.add(task)
                task.add_done_callback(inflight.discard)
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval_s)
        finally:
            for task in list(inflight):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
            self.event_bus.publish_event("relay.service.stopped", "Relay stopped.")

    async def run_cycle(self) -> CycleResult:
        if self.state.processing:
            return CycleResult(status="busy")
        self.state.processing = True
        try:
            self.state.cycles += 1
            result = await self._cycle()
        except Exception as exc:  # noqa: BLE001
            result = CycleResult(status="failed", detail=summarize_error(exc))
            self.event_bus.publish_event(
                "relay.cycle.failed",
                f"Cycle failed: {result.detail}",
                severity="error",
                metadata={"error": exc.__class__.__name__},
            )
        finally:
            self.state.processing = False
        self.state.last_result = result
        if result.status == "replied":
            self.state.last_reply = result
        return result

    async def _cycle(self) -> CycleResult:
        now = self.clock()
        context = await self._load_context(now)
        proactive_sent = await self._maybe_send_proactive(context, now)

        handle = await self.store.read(self.conversation)
        if handle.version == self.state.last_seen:
            return CycleResult(status="unchanged", version=handle.version, proactive_sent=proactive_sent)

        self.event_bus.publish_event(
            "relay.cycle.started",
            f"New content detected ({handle.version.short()}).",
            metadata={"version": handle.version.token},
        )
        turns = parse_turns(handle.content, assistant_name=self.assistant_name)
        pending = needs_reply(turns)
        if pending is None:
            self.state.last_seen = handle.version
            self.event_bus.publish_event(
                "relay.cycle.idle",
                f"No reply needed ({len(turns)} turns parsed).",
                metadata={"turns": len(turns)},
            )
            return CycleResult(status="idle", version=handle.version, proactive_sent=proactive_sent)

        messages = project_window(turns, self.history_turns)
        system = build_system_prompt(context, now=now, assistant_name=self.assistant_name)
        reply = (await self.provider.complete(messages, system=system, max_tokens=REPLY_MAX_TOKENS)).strip()
        if not reply:
            raise DownstreamFailure("provider returned an empty reply")

        text, outcomes = await self.grammar.apply(reply)
        await self._notify(text)

        entry = append_separator(handle.content) + render_turn(
            text,
            now=self.clock(),
            author=self.assistant_name,
            thread_id=self.thread_id,
        )
        version = await append_to_log(
            self.store,
            handle,
            entry,
            message=f"Add {self.assistant_name} response via relay",
        )
        self.state.last_seen = version
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        self.event_bus.publish_event(
            "relay.cycle.replied",
            f"Replied to {pending.author} and logged {version.short()}.",
            metadata={
                "version": version.token,
                "directives": len(outcomes),
                "directive_failures": failed,
            },
        )
        return CycleResult(
            status="replied",
            detail=text,
            version=version,
            outcomes=tuple(outcomes),
            proactive_sent=proactive_sent,
        )

    async def _load_context(self, now: datetime) -> str:
        if self.context is None:
            return ""
        snapshot = await self.context.load(now)
        return snapshot.text

    async def _maybe_send_proactive(self, context: str, now: datetime) -> bool:
        if self.proactive is None or not self.proactive.due(self.state, now):
            return False
        self.state.proactive_last_attempt_at = now
        try:
            system, messages = build_proactive_request(context, assistant_name=self.assistant_name)
            text = await self.provider.complete(messages, system=system, max_tokens=PROACTIVE_MAX_TOKENS)
            if is_skip(text):
                self.event_bus.publish_event("relay.proactive.skipped", "Nothing worth a proactive message.")
                return False
            await self.sink.send(text.strip())
        except Exception as exc:  # noqa: BLE001
            self.event_bus.publish_event(
                "relay.proactive.failed",
                f"Proactive message failed: {summarize_error(exc)}",
                severity="warn",
            )
            return False
        self.state.proactive_last_sent_at = now
        self.event_bus.publish_event("relay.proactive.sent", "Proactive message sent.")
        return True

    async def _notify(self, text: str) -> None:
        try:
            await self.sink.send(text)
        except Exception as exc:  # noqa: BLE001
            self.event_bus.publish_event(
                "relay.notify.failed",
                f"Reply not delivered: {summarize_error(exc)}",
                severity="warn",
            )
