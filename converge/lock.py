"""
Advisory run lock: one mutating run per external system at a time.
"""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import Dict, Iterable, List, TextIO

from .errors import LockError


class RunLock:
    """flock() on <lock_dir>/<system>.lock for every system, non-blocking.

    Locks are taken in sorted order and released in reverse. The pid of
    the holder is written to the file to make a held lock easy to trace.
    """

    def __init__(self, lock_dir: str, systems: Iterable[str]) -> None:
        self.lock_dir = Path(lock_dir)
        self.systems: List[str] = sorted(set(systems))
        self._held: Dict[str, TextIO] = {}

    def acquire(self) -> None:
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as ex:
            raise LockError(f"cannot create lock dir {self.lock_dir}: {ex}") from ex

        for system in self.systems:
            path = self.lock_dir / f"{system}.lock"
            try:
                f = open(path, "a+", encoding="utf-8")
            except OSError as ex:
                self.release()
                raise LockError(f"cannot open lock {path}: {ex}") from ex
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                f.seek(0)
                holder = f.read().strip() or "unknown"
                f.close()
                self.release()
                raise LockError(f"{system} is locked by another run (pid {holder}): {path}") from None
            f.seek(0)
            f.truncate()
            f.write(f"{os.getpid()}\n")
            f.flush()
            self._held[system] = f

    def release(self) -> None:
        for system in reversed(list(self._held)):
            f = self._held.pop(system)
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            finally:
                f.close()

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
