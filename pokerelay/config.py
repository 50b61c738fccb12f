from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from pathlib import Path
from typing import Mapping
import tomllib

CONFIG_FILENAME = "pokerelay.toml"
DEFAULT_CONTEXT_FILES = ("WHO_AM_I.md", "CURRENT_CONTEXT.md", "WORKING_STYLE.md")


def _as_float(value, *, default: float) -> float:
    try:
        return float(value)
    except Exception:  # noqa: BLE001
        return float(default)


def _as_int(value, *, default: int) -> int:
    try:
        return int(value)
    except Exception:  # noqa: BLE001
        return int(default)


def _as_bool(value, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return bool(default)


def _as_str_list(value) -> list[str]:
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str) and value.strip():
        return [item.strip() for item in value.split(",") if item.strip()]
    return []


def _as_str(value, *, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


@dataclass(frozen=True)
class GitHubConfig:
    token: str = ""
    repo: str = ""
    message_file: str = "POKE_MESSAGES.md"
    context_repo: str = ""
    context_files: tuple[str, ...] = DEFAULT_CONTEXT_FILES
    tasks_file: str = "TASKS.md"
    app_id: str = ""
    app_installation_id: str = ""
    app_private_key_path: str = ""

    @property
    def context_repo_or_default(self) -> str:
        return self.context_repo or self.repo

    @property
    def uses_app(self) -> bool:
        return bool(self.app_id or self.app_installation_id or self.app_private_key_path)


@dataclass(frozen=True)
class ProviderConfig:
    api_key: str = ""
    model: str = "claude-sonnet-4-5-20250929"


@dataclass(frozen=True)
class NotifyConfig:
    api_key: str = ""
    webhook_url: str = "https://poke.com/api/v1/inbound-sms/webhook"
    recipient: str = ""


@dataclass(frozen=True)
class LoopConfig:
    poll_interval_s: float = 5.0
    history_turns: int = 10
    timezone: str = ""
    assistant_name: str = "Claude"
    thread_id: str = "operator"
    proactive: bool = True
    health_port: int = 10000


@dataclass(frozen=True)
class RelayConfig:
    github: GitHubConfig = field(default_factory=GitHubConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)


def load_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> tuple[RelayConfig, str]:
    """Load `pokerelay.toml` (if present) and apply environment overrides.

    Returns (config, warning). Warning is empty on success; a broken file
    yields defaults plus the warning, and the environment still applies.
    """

    env = os.environ if env is None else env
    cfg, warning = _load_toml(path or Path.cwd() / CONFIG_FILENAME)
    return _apply_env(cfg, env), warning


def config_problems(cfg: RelayConfig) -> list[str]:
    problems: list[str] = []
    gh = cfg.github
    if gh.uses_app:
        missing = [
            name
            for name, value in (
                ("GITHUB_APP_ID", gh.app_id),
                ("GITHUB_APP_INSTALLATION_ID", gh.app_installation_id),
                ("GITHUB_APP_PRIVATE_KEY_PATH", gh.app_private_key_path),
            )
            if not value
        ]
        if missing:
            problems.append(f"GitHub App auth is partly configured; missing {', '.join(missing)}")
        elif not Path(gh.app_private_key_path).expanduser().is_file():
            problems.append(f"GITHUB_APP_PRIVATE_KEY_PATH does not exist: {gh.app_private_key_path}")
    elif not gh.token:
        problems.append("GITHUB_TOKEN is not set (or configure GITHUB_APP_ID, GITHUB_APP_INSTALLATION_ID, GITHUB_APP_PRIVATE_KEY_PATH)")
    if not cfg.github.repo or "/" not in cfg.github.repo:
        problems.append("RELAY_REPO must name the conversation repo as owner/name")
    if not cfg.provider.api_key:
        problems.append("CLAUDE_API_KEY (or ANTHROPIC_API_KEY) is not set")
    if not cfg.notify.api_key:
        problems.append("POKE_API_KEY is not set")
    if cfg.loop.timezone:
        try:
            from zoneinfo import ZoneInfo

            ZoneInfo(cfg.loop.timezone)
        except Exception:  # noqa: BLE001
            problems.append(f"RELAY_TIMEZONE is not a known zone: {cfg.loop.timezone}")
    return problems


def explain_config(cfg: RelayConfig) -> list[str]:
    gh = cfg.github
    return [
        f"conversation log: {gh.repo or '(unset)'}/{gh.message_file}",
        f"github auth: {f'app {gh.app_id} installation {gh.app_installation_id}' if gh.uses_app else 'token'}",
        f"task ledger: {gh.context_repo_or_default or '(unset)'}/{gh.tasks_file}",
        f"context files: {', '.join(gh.context_files) or '(none)'} from {gh.context_repo_or_default or '(unset)'}",
        f"poll interval: {cfg.loop.poll_interval_s:g}s, history turns: {cfg.loop.history_turns}",
        f"proactive messages: {'on' if cfg.loop.proactive else 'off'} (timezone: {cfg.loop.timezone or 'system'})",
        f"model: {cfg.provider.model}",
        f"health port: {cfg.loop.health_port}",
    ]


def _load_toml(path: Path) -> tuple[RelayConfig, str]:
    if not path.exists():
        return RelayConfig(), ""
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        return RelayConfig(), f"{path.name} parse failed: {exc}"

    github = data.get("github") if isinstance(data.get("github"), dict) else {}
    provider = data.get("provider") if isinstance(data.get("provider"), dict) else {}
    notify = data.get("notify") if isinstance(data.get("notify"), dict) else {}
    loop = data.get("loop") if isinstance(data.get("loop"), dict) else {}

    defaults = RelayConfig()
    context_files = _as_str_list(github.get("context_files"))
    cfg = RelayConfig(
        github=GitHubConfig(
            repo=_as_str(github.get("repo"), default=defaults.github.repo),
            message_file=_as_str(github.get("message_file"), default=defaults.github.message_file),
            context_repo=_as_str(github.get("context_repo"), default=defaults.github.context_repo),
            context_files=tuple(context_files) if "context_files" in github else defaults.github.context_files,
            tasks_file=_as_str(github.get("tasks_file"), default=defaults.github.tasks_file),
            app_id=_as_str(github.get("app_id"), default=""),
            app_installation_id=_as_str(github.get("app_installation_id"), default=""),
            app_private_key_path=_as_str(github.get("app_private_key_path"), default=""),
        ),
        provider=ProviderConfig(model=_as_str(provider.get("model"), default=defaults.provider.model)),
        notify=NotifyConfig(
            webhook_url=_as_str(notify.get("webhook_url"), default=defaults.notify.webhook_url),
            recipient=_as_str(notify.get("recipient"), default=defaults.notify.recipient),
        ),
        loop=LoopConfig(
            poll_interval_s=max(1.0, _as_float(loop.get("poll_interval_s"), default=defaults.loop.poll_interval_s)),
            history_turns=max(1, _as_int(loop.get("history_turns"), default=defaults.loop.history_turns)),
            timezone=_as_str(loop.get("timezone"), default=defaults.loop.timezone),
            assistant_name=_as_str(loop.get("assistant_name"), default=defaults.loop.assistant_name),
            thread_id=_as_str(loop.get("thread_id"), default=defaults.loop.thread_id),
            proactive=_as_bool(loop.get("proactive"), default=defaults.loop.proactive),
            health_port=_as_int(loop.get("health_port"), default=defaults.loop.health_port),
        ),
    )
    return cfg, ""


def _apply_env(cfg: RelayConfig, env: Mapping[str, str]) -> RelayConfig:
    def get(name: str) -> str:
        return str(env.get(name) or "").strip()

    github = cfg.github
    context_files = _as_str_list(get("RELAY_CONTEXT_FILES"))
    github = replace(
        github,
        token=get("GITHUB_TOKEN") or github.token,
        repo=get("RELAY_REPO") or github.repo,
        message_file=get("RELAY_MESSAGE_FILE") or github.message_file,
        context_repo=get("RELAY_CONTEXT_REPO") or github.context_repo,
        context_files=tuple(context_files) if context_files else github.context_files,
        tasks_file=get("RELAY_TASKS_FILE") or github.tasks_file,
        app_id=get("GITHUB_APP_ID") or github.app_id,
        app_installation_id=get("GITHUB_APP_INSTALLATION_ID") or github.app_installation_id,
        app_private_key_path=get("GITHUB_APP_PRIVATE_KEY_PATH") or github.app_private_key_path,
    )
    provider = replace(
        cfg.provider,
        api_key=get("CLAUDE_API_KEY") or get("ANTHROPIC_API_KEY") or cfg.provider.api_key,
        model=get("RELAY_MODEL") or cfg.provider.model,
    )
    notify = replace(
        cfg.notify,
        api_key=get("POKE_API_KEY") or cfg.notify.api_key,
        webhook_url=get("POKE_WEBHOOK_URL") or cfg.notify.webhook_url,
        recipient=get("POKE_RECIPIENT") or cfg.notify.recipient,
    )
    loop = cfg.loop
    loop = replace(
        loop,
        poll_interval_s=max(1.0, _as_float(get("RELAY_POLL_INTERVAL_S") or loop.poll_interval_s, default=loop.poll_interval_s)),
        history_turns=max(1, _as_int(get("RELAY_HISTORY_TURNS") or loop.history_turns, default=loop.history_turns)),
        timezone=get("RELAY_TIMEZONE") or loop.timezone,
        assistant_name=get("RELAY_ASSISTANT_NAME") or loop.assistant_name,
        thread_id=get("RELAY_THREAD_ID") or loop.thread_id,
        proactive=_as_bool(get("RELAY_PROACTIVE") or loop.proactive, default=loop.proactive),
        health_port=_as_int(get("PORT") or loop.health_port, default=loop.health_port),
    )
    return RelayConfig(github=github, provider=provider, notify=notify, loop=loop)
