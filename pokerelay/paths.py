from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


def runtime_root(start: Path | None = None) -> Path:
    """Per-workspace runtime directory (logs, locks). Never committed."""

    return (start or Path.cwd()).resolve() / ".pokerelay"


@dataclass(frozen=True)
class RuntimePaths:
    root: Path
    locks_dir: Path
    logs_dir: Path

    @property
    def events_log(self) -> Path:
        return self.logs_dir / "events.jsonl"

    @property
    def runtime_log(self) -> Path:
        return self.logs_dir / "runtime.log"

    @property
    def lock_file(self) -> Path:
        return self.locks_dir / "relay.lock"


def runtime_paths(start: Path | None = None) -> RuntimePaths:
    root = runtime_root(start)
    return RuntimePaths(root=root, locks_dir=root / "locks", logs_dir=root / "logs")


def ensure_runtime_dirs(paths: RuntimePaths | None = None) -> RuntimePaths:
    paths = paths or runtime_paths()
    paths.root.mkdir(parents=True, exist_ok=True)
    paths.locks_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    return paths
