from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime
from typing import Any

from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.widgets import Footer, Static, TextArea

from .runtime.events import EventBus
from .scheduler import RelayLoop, RelayState

ACTIVITY_MAX_LINES = 400


def format_status(state: RelayState, *, target: str) -> str:
    version = state.last_seen.short() if state.last_seen else "none"
    last = state.last_result.status if state.last_result else "-"
    activity = "cycling" if state.processing else "idle"
    return f"{target} | {activity} | cycles={state.cycles} last={last} version={version}"


def format_proactive(state: RelayState) -> str:
    def stamp(value: datetime | None) -> str:
        return value.astimezone().strftime("%Y-%m-%d %H:%M") if value else "never"

    return (
        "Proactive\n"
        f"last sent: {stamp(state.proactive_last_sent_at)}\n"
        f"last attempt: {stamp(state.proactive_last_attempt_at)}"
    )


def format_directives(state: RelayState) -> str:
    reply = state.last_reply
    if reply is None:
        return "Directives\n(no reply yet)"
    if not reply.outcomes:
        return "Directives\n(none in last reply)"
    lines = ["Directives"]
    for outcome in reply.outcomes:
        lines.append(f"{'ok' if outcome.ok else 'fail'}: {outcome.text}")
    return "\n".join(lines)


def format_event_line(event: dict[str, Any]) -> str:
    ts = str(event.get("ts") or "")
    clock = ts[11:19] if len(ts) >= 19 else ts
    severity = str(event.get("severity") or "info")
    marker = {"warn": "!", "error": "x"}.get(severity, "-")
    return f"{clock} {marker} {event.get('message', '')}"


class RelayMonitorApp(App[None]):
    CSS = """
    Screen {
        layout: vertical;
    }

    #status-bar {
        height: 1;
        padding: 0 1;
        background: $boost;
        color: $text;
    }

    #main {
        height: 1fr;
    }

    #activity {
        width: 3fr;
        border: solid $accent;
        padding: 0 1;
    }

    #sidebar {
        width: 1fr;
        border: solid $secondary;
        padding: 0 1;
    }

    .panel {
        height: auto;
        border: solid $primary;
        margin: 0 0 1 0;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("ctrl+c", "request_quit", "Quit"),
        ("r", "cycle_now", "Cycle now"),
    ]

    def __init__(self, relay: RelayLoop, event_bus: EventBus) -> None:
        super().__init__()
        self.relay = relay
        self.event_bus = event_bus
        self.activity_lines: deque[str] = deque(maxlen=ACTIVITY_MAX_LINES)
        self._stop = asyncio.Event()
        self._relay_task: asyncio.Task[None] | None = None
        self._ui_ready = False
        self._unsubscribe = self.event_bus.subscribe(self._on_event)

    def compose(self) -> ComposeResult:
        yield Static("", id="status-bar")
        with Horizontal(id="main"):
            yield TextArea(
                "",
                id="activity",
                read_only=True,
                show_cursor=False,
                highlight_cursor_line=False,
                show_line_numbers=False,
                language=None,
            )
            with Vertical(id="sidebar"):
                yield Static("", id="panel-proactive", classes="panel")
                yield Static("", id="panel-directives", classes="panel")
        yield Footer()

    def on_mount(self) -> None:
        self.status_bar = self.query_one("#status-bar", Static)
        self.activity = self.query_one("#activity", TextArea)
        self.proactive_panel = self.query_one("#panel-proactive", Static)
        self.directives_panel = self.query_one("#panel-directives", Static)
        self._ui_ready = True
        self.set_interval(0.5, self._refresh_status)
        self._relay_task = asyncio.create_task(self.relay.run(self._stop))

    async def on_unmount(self) -> None:
        await self._shutdown()

    async def action_request_quit(self) -> None:
        await self._shutdown()
        self.exit()

    async def action_cycle_now(self) -> None:
        result = await self.relay.run_cycle()
        if result.status == "busy":
            self._append_activity("- cycle already running")

    def _refresh_status(self) -> None:
        state = self.relay.state
        self.status_bar.update(format_status(state, target=str(self.relay.conversation)))
        self.proactive_panel.update(format_proactive(state))
        self.directives_panel.update(format_directives(state))

    def _on_event(self, event: dict[str, Any]) -> None:
        self._append_activity(format_event_line(event))

    def _append_activity(self, line: str) -> None:
        self.activity_lines.append(line)
        if not self._ui_ready:
            return
        self.activity.load_text("\n".join(self.activity_lines))
        self.activity.scroll_end(animate=False)

    async def _shutdown(self) -> None:
        self._unsubscribe()
        self._stop.set()
        task = self._relay_task
        self._relay_task = None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
