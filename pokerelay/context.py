from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .ledger import TaskLedger, format_completed_tasks
from .runtime.events import EventBus, summarize_error
from .store import LogStore, LogTarget

COMPLETED_TASKS_LOOKBACK = timedelta(hours=24)


@dataclass(frozen=True)
class ContextSnapshot:
    text: str
    loaded: tuple[str, ...]
    failed: tuple[str, ...]


class ContextLoader:
    """Builds the shared context blob handed to the generative provider.

    Each source is loaded on its own; a source that fails is reported on the
    event bus and left out, it never fails the whole load.
    """

    def __init__(
        self,
        store: LogStore,
        *,
        repo: str,
        files: list[str] | tuple[str, ...],
        ledger: TaskLedger | None = None,
        event_bus: EventBus | None = None,
        tasks_lookback: timedelta = COMPLETED_TASKS_LOOKBACK,
    ) -> None:
        self.store = store
        self.repo = repo
        self.files = tuple(item for item in files if item.strip())
        self.ledger = ledger
        self.event_bus = event_bus
        self.tasks_lookback = tasks_lookback

    async def load(self, now: datetime) -> ContextSnapshot:
        blocks: list[str] = []
        loaded: list[str] = []
        failed: list[str] = []
        for name in self.files:
            try:
                handle = await self.store.read(LogTarget(self.repo, name))
            except Exception as exc:  # noqa: BLE001
                failed.append(name)
                self._report_failure(name, exc)
                continue
            loaded.append(name)
            blocks.append(f"# {name}\n\n{handle.content.strip()}")

        if self.ledger is not None:
            try:
                records = await self.ledger.records_completed_since(now - self.tasks_lookback)
            except Exception as exc:  # noqa: BLE001
                failed.append(str(self.ledger.target))
                self._report_failure(str(self.ledger.target), exc)
            else:
                section = format_completed_tasks(records)
                if section:
                    loaded.append(str(self.ledger.target))
                    blocks.append(section.strip())

        return ContextSnapshot(text="\n\n".join(blocks), loaded=tuple(loaded), failed=tuple(failed))

    def _report_failure(self, name: str, exc: Exception) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish_event(
            "context.source.failed",
            f"Could not load {name}: {summarize_error(exc)}",
            severity="warn",
            source="context",
            metadata={"source": name},
        )
