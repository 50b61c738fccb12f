from __future__ import annotations

import asyncio
from datetime import timedelta, timezone
import unittest

from pokerelay.context import ContextLoader
from pokerelay.directives import CommandGrammar
from pokerelay.inference import PROACTIVE_MAX_TOKENS, REPLY_MAX_TOKENS
from pokerelay.ledger import TaskLedger
from pokerelay.runtime.events import EventBus
from pokerelay.scheduler import ProactiveScheduler, RelayLoop, RelayState
from pokerelay.store import DownstreamFailure, LogTarget
from tests.helpers import (
    SAMPLE_LOG,
    FakeGitHub,
    FixedClock,
    RecordingSink,
    StubProvider,
    operator_record,
    transport_error,
    utc,
)

CONVERSATION = LogTarget("me/relay", "POKE_MESSAGES.md")
PENDING_LOG = SAMPLE_LOG + operator_record("what repos do I have?")


def _relay(
    github: FakeGitHub,
    provider: StubProvider,
    sink: RecordingSink,
    *,
    clock: FixedClock,
    proactive: ProactiveScheduler | None = None,
    state: RelayState | None = None,
    context_files: tuple[str, ...] = (),
) -> tuple[RelayLoop, list[dict[str, object]]]:
    bus = EventBus()
    events: list[dict[str, object]] = []
    bus.subscribe(events.append)
    ledger = TaskLedger(github, LogTarget("me/context", "TASKS.md"), clock=clock)
    context = None
    if context_files:
        context = ContextLoader(github, repo="me/context", files=context_files, event_bus=bus)
    relay = RelayLoop(
        store=github,
        conversation=CONVERSATION,
        provider=provider,
        sink=sink,
        grammar=CommandGrammar(ledger=ledger, repos=github, event_bus=bus),
        event_bus=bus,
        context=context,
        proactive=proactive,
        clock=clock,
        state=state,
    )
    return relay, events


def _types(events: list[dict[str, object]]) -> list[object]:
    return [event["type"] for event in events]


class TestRelayCycle(unittest.TestCase):
    def test_answered_log_is_left_alone_and_then_unchanged(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): SAMPLE_LOG})
        provider = StubProvider()
        relay, events = _relay(github, provider, RecordingSink(), clock=FixedClock(utc(2026, 1, 5, 10)))

        first = asyncio.run(relay.run_cycle())
        self.assertEqual("idle", first.status)
        self.assertEqual(github.version("me/relay", "POKE_MESSAGES.md"), relay.state.last_seen)

        published = len(events)
        second = asyncio.run(relay.run_cycle())
        self.assertEqual("unchanged", second.status)
        self.assertEqual(published, len(events))
        self.assertEqual([], provider.calls)
        self.assertEqual([], github.writes)

    def test_reply_with_directive_is_sent_and_appended(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG}, repos=["repoA", "repoB"])
        provider = StubProvider(["Here you go: [GITHUB_LIST_REPOS]"])
        sink = RecordingSink()
        relay, events = _relay(github, provider, sink, clock=FixedClock(utc(2026, 1, 5, 9, 6)))

        result = asyncio.run(relay.run_cycle())

        self.assertEqual("replied", result.status)
        self.assertEqual(["Here you go: Your repos: repoA, repoB"], sink.sent)
        expected_entry = (
            "\n## 2026-01-05 09:06:00 - Claude Response\n"
            "**From:** Claude\n"
            "**In Response To:** operator\n"
            "**Timestamp:** 2026-01-05T09:06:00.000Z\n"
            "\n"
            "Here you go: Your repos: repoA, repoB\n"
            "\n"
            "---\n"
        )
        self.assertEqual(PENDING_LOG + expected_entry, github.content("me/relay", "POKE_MESSAGES.md"))
        self.assertEqual(github.version("me/relay", "POKE_MESSAGES.md"), relay.state.last_seen)
        self.assertEqual(result.version, relay.state.last_seen)
        self.assertEqual(1, len(result.outcomes))
        self.assertTrue(result.outcomes[0].ok)
        self.assertIn("relay.cycle.replied", _types(events))

        messages, _system, max_tokens = provider.calls[0]
        self.assertEqual(REPLY_MAX_TOKENS, max_tokens)
        self.assertEqual(["user", "assistant", "user"], [message.role for message in messages])
        self.assertEqual("what repos do I have?", messages[-1].content)

        follow_up = asyncio.run(relay.run_cycle())
        self.assertEqual("unchanged", follow_up.status)
        self.assertEqual(1, len(provider.calls))
        self.assertIs(follow_up, relay.state.last_result)
        self.assertIs(result, relay.state.last_reply)

    def test_history_window_is_capped(self) -> None:
        log = SAMPLE_LOG + "".join(operator_record(f"note {index}") for index in range(12))
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): log})
        provider = StubProvider(["noted"])
        relay, _events = _relay(github, provider, RecordingSink(), clock=FixedClock(utc(2026, 1, 5, 10)))
        relay.history_turns = 4

        asyncio.run(relay.run_cycle())

        messages = provider.calls[0][0]
        self.assertEqual(["note 8", "note 9", "note 10", "note 11"], [message.content for message in messages])

    def test_cycle_is_busy_while_another_is_in_flight(self) -> None:
        class GatedProvider(StubProvider):
            def __init__(self, replies: list[str]) -> None:
                super().__init__(replies)
                self.entered = asyncio.Event()
                self.gate = asyncio.Event()

            async def complete(self, messages, *, system, max_tokens):
                self.entered.set()
                await self.gate.wait()
                return await super().complete(messages, system=system, max_tokens=max_tokens)

        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG})
        relay, _events = _relay(github, StubProvider(), RecordingSink(), clock=FixedClock(utc(2026, 1, 5, 10)))

        async def scenario():
            provider = GatedProvider(["on it"])
            relay.provider = provider
            first = asyncio.create_task(relay.run_cycle())
            await provider.entered.wait()
            second = await relay.run_cycle()
            provider.gate.set()
            return await first, second

        first, second = asyncio.run(scenario())
        self.assertEqual("busy", second.status)
        self.assertEqual("replied", first.status)
        self.assertFalse(relay.state.processing)
        self.assertEqual(1, len(github.writes))

    def test_append_failure_keeps_last_seen_so_the_turn_is_retried(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG})
        github.fail_writes["me/relay/POKE_MESSAGES.md"] = transport_error("GitHub PUT failed: 502")
        provider = StubProvider(["first try", "second try"])
        sink = RecordingSink()
        relay, events = _relay(github, provider, sink, clock=FixedClock(utc(2026, 1, 5, 10)))

        failed = asyncio.run(relay.run_cycle())
        self.assertEqual("failed", failed.status)
        self.assertIsNone(relay.state.last_seen)
        self.assertIn("relay.cycle.failed", _types(events))
        self.assertFalse(relay.state.processing)

        del github.fail_writes["me/relay/POKE_MESSAGES.md"]
        retried = asyncio.run(relay.run_cycle())
        self.assertEqual("replied", retried.status)
        self.assertEqual(["first try", "second try"], sink.sent)

    def test_conflicting_edit_is_not_overwritten(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG})
        edited = PENDING_LOG + operator_record("one more thing", stamp="2026-01-05T09:07:00.000Z")

        class EditingProvider(StubProvider):
            async def complete(self, messages, *, system, max_tokens):
                github.put_external("me/relay", "POKE_MESSAGES.md", edited)
                return await super().complete(messages, system=system, max_tokens=max_tokens)

        relay, _events = _relay(github, EditingProvider(["hello"]), RecordingSink(), clock=FixedClock(utc(2026, 1, 5, 10)))

        result = asyncio.run(relay.run_cycle())
        self.assertEqual("failed", result.status)
        self.assertEqual(edited, github.content("me/relay", "POKE_MESSAGES.md"))
        self.assertIsNone(relay.state.last_seen)

    def test_provider_failure_writes_nothing(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG})
        sink = RecordingSink()
        relay, _events = _relay(
            github,
            StubProvider(error=DownstreamFailure("Anthropic API error 529: overloaded")),
            sink,
            clock=FixedClock(utc(2026, 1, 5, 10)),
        )

        result = asyncio.run(relay.run_cycle())
        self.assertEqual("failed", result.status)
        self.assertIn("529", result.detail)
        self.assertEqual([], github.writes)
        self.assertEqual([], sink.sent)
        self.assertIsNone(relay.state.last_seen)

    def test_empty_reply_is_a_failure(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG})
        relay, _events = _relay(github, StubProvider(["   "]), RecordingSink(), clock=FixedClock(utc(2026, 1, 5, 10)))
        result = asyncio.run(relay.run_cycle())
        self.assertEqual("failed", result.status)
        self.assertEqual([], github.writes)

    def test_notification_failure_still_appends_the_reply(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG})
        sink = RecordingSink(error=DownstreamFailure("webhook error: 500"))
        relay, events = _relay(github, StubProvider(["got it"]), sink, clock=FixedClock(utc(2026, 1, 5, 10)))

        result = asyncio.run(relay.run_cycle())
        self.assertEqual("replied", result.status)
        self.assertIn("got it", github.content("me/relay", "POKE_MESSAGES.md"))
        self.assertIn("relay.notify.failed", _types(events))

    def test_missing_context_source_is_left_out(self) -> None:
        github = FakeGitHub(
            {
                ("me/relay", "POKE_MESSAGES.md"): PENDING_LOG,
                ("me/context", "WHO_AM_I.md"): "Caleb, grad student.\n",
            }
        )
        provider = StubProvider(["hi"])
        relay, events = _relay(
            github,
            provider,
            RecordingSink(),
            clock=FixedClock(utc(2026, 1, 5, 10)),
            context_files=("WHO_AM_I.md", "CURRENT_CONTEXT.md"),
        )

        result = asyncio.run(relay.run_cycle())
        self.assertEqual("replied", result.status)
        system = provider.calls[0][1]
        self.assertIn("# WHO_AM_I.md\n\nCaleb, grad student.", system)
        self.assertNotIn("CURRENT_CONTEXT.md", system)
        failures = [event for event in events if event["type"] == "context.source.failed"]
        self.assertEqual(1, len(failures))
        self.assertEqual({"source": "CURRENT_CONTEXT.md"}, failures[0]["metadata"])

    def test_read_failure_is_reported_and_not_fatal_to_the_loop(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): PENDING_LOG})
        github.fail_reads["me/relay/POKE_MESSAGES.md"] = transport_error()
        relay, events = _relay(github, StubProvider(["hi"]), RecordingSink(), clock=FixedClock(utc(2026, 1, 5, 10)))

        self.assertEqual("failed", asyncio.run(relay.run_cycle()).status)
        del github.fail_reads["me/relay/POKE_MESSAGES.md"]
        self.assertEqual("replied", asyncio.run(relay.run_cycle()).status)
        self.assertEqual(2, relay.state.cycles)


class TestProactiveMessages(unittest.TestCase):
    def _setup(self, *, hours_since_last: float, hour: int = 14, replies: list[str] | None = None):
        clock = FixedClock(utc(2026, 1, 6, hour))
        state = RelayState(proactive_last_sent_at=clock() - timedelta(hours=hours_since_last))
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): SAMPLE_LOG})
        provider = StubProvider(replies)
        sink = RecordingSink()
        relay, events = _relay(
            github,
            provider,
            sink,
            clock=clock,
            proactive=ProactiveScheduler(tz=timezone.utc),
            state=state,
        )
        return relay, provider, sink, clock, events

    def test_not_sent_within_a_day_of_the_last_one(self) -> None:
        relay, provider, sink, _clock, _events = self._setup(hours_since_last=23, replies=["hello"])
        result = asyncio.run(relay.run_cycle())
        self.assertFalse(result.proactive_sent)
        self.assertEqual([], provider.calls)
        self.assertEqual([], sink.sent)

    def test_sent_once_a_day_has_passed_inside_the_window(self) -> None:
        relay, provider, sink, clock, events = self._setup(
            hours_since_last=25,
            replies=["Lab report is due Friday, want a task to draft the outline?"],
        )
        result = asyncio.run(relay.run_cycle())
        self.assertTrue(result.proactive_sent)
        self.assertEqual(["Lab report is due Friday, want a task to draft the outline?"], sink.sent)
        self.assertEqual(clock(), relay.state.proactive_last_sent_at)
        self.assertEqual(PROACTIVE_MAX_TOKENS, provider.calls[0][2])
        self.assertIn("relay.proactive.sent", _types(events))

        clock.advance(hours=2)
        asyncio.run(relay.run_cycle())
        self.assertEqual(1, len(provider.calls))

    def test_not_sent_outside_the_waking_window(self) -> None:
        relay, provider, sink, _clock, _events = self._setup(hours_since_last=25, hour=22, replies=["hello"])
        asyncio.run(relay.run_cycle())
        self.assertEqual([], provider.calls)
        self.assertEqual([], sink.sent)

    def test_skip_sends_nothing_and_waits_before_asking_again(self) -> None:
        relay, provider, sink, clock, events = self._setup(hours_since_last=25)
        last_sent = relay.state.proactive_last_sent_at

        asyncio.run(relay.run_cycle())
        self.assertEqual([], sink.sent)
        self.assertEqual(last_sent, relay.state.proactive_last_sent_at)
        self.assertEqual(clock(), relay.state.proactive_last_attempt_at)
        self.assertIn("relay.proactive.skipped", _types(events))

        clock.advance(minutes=30)
        asyncio.run(relay.run_cycle())
        self.assertEqual(1, len(provider.calls))

        clock.advance(minutes=31)
        asyncio.run(relay.run_cycle())
        self.assertEqual(2, len(provider.calls))

    def test_failed_send_does_not_count_as_sent(self) -> None:
        relay, _provider, sink, _clock, events = self._setup(hours_since_last=25, replies=["hello"])
        sink.error = DownstreamFailure("webhook unreachable")
        last_sent = relay.state.proactive_last_sent_at

        result = asyncio.run(relay.run_cycle())
        self.assertFalse(result.proactive_sent)
        self.assertEqual("idle", result.status)
        self.assertEqual(last_sent, relay.state.proactive_last_sent_at)
        self.assertIn("relay.proactive.failed", _types(events))

    def test_fresh_state_waits_a_full_interval(self) -> None:
        clock = FixedClock(utc(2026, 1, 6, 14))
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): SAMPLE_LOG})
        provider = StubProvider(["hello"])
        relay, _events = _relay(
            github,
            provider,
            RecordingSink(),
            clock=clock,
            proactive=ProactiveScheduler(tz=timezone.utc),
        )
        self.assertEqual(clock(), relay.state.proactive_last_sent_at)
        asyncio.run(relay.run_cycle())
        self.assertEqual([], provider.calls)

    def test_window_bounds_are_inclusive(self) -> None:
        scheduler = ProactiveScheduler(tz=timezone.utc)
        state = RelayState(proactive_last_sent_at=utc(2026, 1, 1))
        self.assertTrue(scheduler.due(state, utc(2026, 1, 6, 9)))
        self.assertTrue(scheduler.due(state, utc(2026, 1, 6, 20, 59)))
        self.assertFalse(scheduler.due(state, utc(2026, 1, 6, 8, 59)))
        self.assertFalse(scheduler.due(state, utc(2026, 1, 6, 21)))


class TestRelayRun(unittest.TestCase):
    def test_run_cycles_until_stopped(self) -> None:
        github = FakeGitHub({("me/relay", "POKE_MESSAGES.md"): SAMPLE_LOG})
        relay, events = _relay(github, StubProvider(), RecordingSink(), clock=FixedClock(utc(2026, 1, 5, 10)))
        relay.poll_interval_s = 0.1

        async def scenario() -> None:
            stop = asyncio.Event()
            task = asyncio.create_task(relay.run(stop))
            await asyncio.sleep(0.25)
            stop.set()
            await task

        asyncio.run(scenario())
        types = _types(events)
        self.assertEqual("relay.service.started", types[0])
        self.assertEqual("relay.service.stopped", types[-1])
        self.assertGreaterEqual(relay.state.cycles, 2)
        self.assertFalse(relay.state.processing)


if __name__ == "__main__":
    unittest.main()
