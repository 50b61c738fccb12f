from __future__ import annotations

from contextlib import contextmanager
import fcntl
from pathlib import Path
from typing import IO, Iterator


class RelayAlreadyRunning(RuntimeError):
    def __init__(self, lock_path: Path) -> None:
        super().__init__(f"Another relay is already running in this directory (lock: {lock_path}).")
        self.lock_path = lock_path


@contextmanager
def instance_lock(lock_path: Path) -> Iterator[IO[str]]:
    """One relay per runtime dir; two would race on every log append."""

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise RelayAlreadyRunning(lock_path) from exc
        try:
            yield handle
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
