from __future__ import annotations

import argparse
import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from typing import Any

from . import __version__
from .config import RelayConfig, config_problems, explain_config, load_config
from .context import ContextLoader
from .conversation import parse_turns
from .credentials import CachedToken, GitHubAppInstallation, StaticToken, TokenProvider
from .directives import CommandGrammar
from .github import GitHubClient
from .health import HealthServer
from .inference import AnthropicProvider
from .ledger import TaskLedger
from .locks import instance_lock
from .notify import WebhookSink
from .paths import ensure_runtime_dirs, runtime_paths
from .runtime.events import EventBus, summarize_error
from .scheduler import ProactiveScheduler, RelayLoop, utc_clock
from .store import LogTarget

SEVERITY_ORDER = {"debug": 0, "info": 1, "warn": 2, "error": 3}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pokerelay",
        description="Relay operator messages between a GitHub markdown log and an assistant.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to pokerelay.toml")

    sub = parser.add_subparsers(dest="cmd", required=False)

    run = sub.add_parser("run", help="Start the relay daemon.")
    run.add_argument("--interval", type=float, default=None, help="Poll interval seconds (default from config)")
    run.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    run.add_argument("--no-health", action="store_true", help="Do not start the HTTP liveness endpoint")
    run.add_argument("--verbose", action="store_true", help="Print debug events too")

    app = sub.add_parser("app", help="Run the relay inside the terminal dashboard.")
    app.add_argument("--interval", type=float, default=None, help="Poll interval seconds (default from config)")

    sub.add_parser("doctor", help="Check configuration and credentials.")

    turns = sub.add_parser("turns", help="Print the parsed turns of the conversation log.")
    turns.add_argument("--limit", type=int, default=10, help="Show the last N turns")

    tasks = sub.add_parser("tasks", help="Print tasks the executor finished recently.")
    tasks.add_argument("--hours", type=float, default=24.0, help="Look back this many hours")
    return parser


def attach_console(
    event_bus: EventBus,
    *,
    log_file: Path | None = None,
    emit_console: bool = True,
    min_severity: str = "info",
) -> None:
    """Mirror bus events to stdout/stderr and a plain-text runtime log."""

    threshold = SEVERITY_ORDER.get(min_severity, 1)

    def _on_event(event: dict[str, Any]) -> None:
        severity = str(event.get("severity") or "info")
        if SEVERITY_ORDER.get(severity, 1) < threshold:
            return
        message = str(event.get("message") or "")
        if log_file is not None:
            _append_runtime_log(log_file, level=severity, message=message)
        if emit_console:
            stream = sys.stderr if severity in {"warn", "error"} else sys.stdout
            print(f"[{severity}] {message}", file=stream)

    event_bus.subscribe(_on_event)


def _append_runtime_log(log_file: Path, *, level: str, message: str) -> None:
    normalized_message = " ".join(message.split())
    stamp = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    line = f"{stamp} [{level.lower()}] {normalized_message}\n"
    with contextlib.suppress(Exception):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line)


def github_credentials(cfg: RelayConfig) -> TokenProvider:
    """Installation tokens when GitHub App settings are present, else the static token."""

    gh = cfg.github
    if gh.uses_app:
        app = GitHubAppInstallation.from_key_file(
            gh.app_id,
            gh.app_installation_id,
            Path(gh.app_private_key_path).expanduser(),
        )
        return CachedToken(app)
    return StaticToken(gh.token)


def build_relay(cfg: RelayConfig, event_bus: EventBus, *, interval: float | None = None) -> RelayLoop:
    github = GitHubClient(github_credentials(cfg))
    ledger = TaskLedger(github, LogTarget(cfg.github.context_repo_or_default, cfg.github.tasks_file))
    context = ContextLoader(
        github,
        repo=cfg.github.context_repo_or_default,
        files=cfg.github.context_files,
        ledger=ledger,
        event_bus=event_bus,
    )
    proactive = None
    if cfg.loop.proactive:
        proactive = ProactiveScheduler(tz=_zone(cfg.loop.timezone))
    return RelayLoop(
        store=github,
        conversation=LogTarget(cfg.github.repo, cfg.github.message_file),
        provider=AnthropicProvider(cfg.provider.api_key, model=cfg.provider.model),
        sink=WebhookSink(cfg.notify.api_key, recipient=cfg.notify.recipient, url=cfg.notify.webhook_url),
        grammar=CommandGrammar(ledger=ledger, repos=github, event_bus=event_bus),
        event_bus=event_bus,
        context=context,
        proactive=proactive,
        poll_interval_s=interval if interval is not None else cfg.loop.poll_interval_s,
        history_turns=cfg.loop.history_turns,
        assistant_name=cfg.loop.assistant_name,
        thread_id=cfg.loop.thread_id,
    )


def _zone(name: str):
    if not name:
        return None
    from zoneinfo import ZoneInfo

    return ZoneInfo(name)


def _load(args: argparse.Namespace) -> RelayConfig:
    cfg, warning = load_config(args.config)
    if warning:
        print(f"config warning: {warning}", file=sys.stderr)
    return cfg


def cmd_run(args: argparse.Namespace) -> int:
    cfg = _load(args)
    problems = config_problems(cfg)
    if problems:
        for problem in problems:
            print(f"config: {problem}", file=sys.stderr)
        return 2

    paths = ensure_runtime_dirs(runtime_paths())
    event_bus = EventBus(paths.events_log)
    attach_console(event_bus, log_file=paths.runtime_log, min_severity="debug" if args.verbose else "info")

    health: HealthServer | None = None
    try:
        with instance_lock(paths.lock_file):
            if not args.no_health and not args.once:
                health = HealthServer(cfg.loop.health_port).start()
                event_bus.publish_event("relay.health.started", f"HTTP liveness endpoint on port {health.port}.")
            return asyncio.run(_run_relay(args, cfg, event_bus))
    except KeyboardInterrupt:
        print("Shutting down relay.")
        return 0
    except Exception as exc:  # noqa: BLE001
        print(summarize_error(exc), file=sys.stderr)
        return 2
    finally:
        if health is not None:
            health.stop()


async def _run_relay(args: argparse.Namespace, cfg: RelayConfig, event_bus: EventBus) -> int:
    loop = build_relay(cfg, event_bus, interval=args.interval)
    for line in explain_config(cfg):
        event_bus.publish_event("relay.config", line, severity="debug")
    if args.once:
        result = await loop.run_cycle()
        print(f"cycle: {result.status}{f' ({result.detail})' if result.detail else ''}")
        return 1 if result.status == "failed" else 0
    await loop.run()
    return 0


def cmd_app(args: argparse.Namespace) -> int:
    from .app import RelayMonitorApp

    cfg = _load(args)
    problems = config_problems(cfg)
    if problems:
        for problem in problems:
            print(f"config: {problem}", file=sys.stderr)
        return 2
    paths = ensure_runtime_dirs(runtime_paths())
    event_bus = EventBus(paths.events_log)
    attach_console(event_bus, log_file=paths.runtime_log, emit_console=False)
    try:
        with instance_lock(paths.lock_file):
            RelayMonitorApp(build_relay(cfg, event_bus, interval=args.interval), event_bus).run()
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    cfg = _load(args)
    for line in explain_config(cfg):
        print(line)
    problems = config_problems(cfg)
    if not problems:
        print("doctor: ok")
        return 0
    for problem in problems:
        print(f"problem: {problem}")
    return 1


def cmd_turns(args: argparse.Namespace) -> int:
    cfg = _load(args)
    try:
        github = GitHubClient(github_credentials(cfg))
        handle = asyncio.run(github.read(LogTarget(cfg.github.repo, cfg.github.message_file)))
    except Exception as exc:  # noqa: BLE001
        print(f"read failed: {summarize_error(exc)}", file=sys.stderr)
        return 1
    turns = parse_turns(handle.content, assistant_name=cfg.loop.assistant_name)
    print(f"{len(turns)} turns at version {handle.version.short()}")
    for turn in turns[-max(1, args.limit) :]:
        preview = " ".join(turn.body.split())
        if len(preview) > 160:
            preview = preview[:157] + "..."
        print(f"[{turn.speaker.value}] {turn.author}: {preview}")
    return 0


def cmd_tasks(args: argparse.Namespace) -> int:
    cfg = _load(args)
    cutoff = utc_clock() - timedelta(hours=max(0.0, args.hours))
    try:
        github = GitHubClient(github_credentials(cfg))
        ledger = TaskLedger(github, LogTarget(cfg.github.context_repo_or_default, cfg.github.tasks_file))
        records = asyncio.run(ledger.records_completed_since(cutoff))
    except Exception as exc:  # noqa: BLE001
        print(f"read failed: {summarize_error(exc)}", file=sys.stderr)
        return 1
    if not records:
        print(f"no tasks finished in the last {args.hours:g}h")
        return 0
    for record in records:
        stamp = record.completed_at.isoformat() if record.completed_at else "?"
        print(f"{record.id} [{record.status}] {stamp} {' '.join(record.body.split())[:120]}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    argv = list(argv) if argv is not None else list(sys.argv[1:])
    args = parser.parse_args(argv)
    if not args.cmd:
        args = parser.parse_args([*argv, "run"])

    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "app":
        return cmd_app(args)
    if args.cmd == "doctor":
        return cmd_doctor(args)
    if args.cmd == "turns":
        return cmd_turns(args)
    if args.cmd == "tasks":
        return cmd_tasks(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2
