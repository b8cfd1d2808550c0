"""File-based locking primitives.

nginx reloads are service-wide, so every configuration mutation, backup and
restore runs under one global mutation lock. The lock is an exclusive
``flock`` on ``<runtime_dir>/edgectl.lock``; each acquisition opens its own
file description, which makes the lock exclusive between threads of the same
process as well as between processes.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "edgectl"


class LockError(RuntimeError):
    """Raised when a lock cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is not acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Metadata about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire named exclusive locks under *runtime_dir*."""

    def __init__(
        self,
        runtime_dir: Path,
        default_timeout: float = 30.0,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        """Store lock directory and timing defaults."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def lock_path(self, name: str = GLOBAL_LOCK_NAME) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def mutation_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global mutation lock for the duration of the block."""
        with self.named_lock(GLOBAL_LOCK_NAME, timeout=timeout) as handle:
            yield handle

    @contextmanager
    def named_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock called *name* for the duration of the block."""
        path = self.lock_path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        try:
            wait_ms = self._acquire(fd, path, self.default_timeout if timeout is None else timeout)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    # ------------------------------------------------------------------
    def _acquire(self, fd: int, path: Path, timeout: float) -> int:
        start = time.monotonic()
        deadline = start + max(timeout, 0.0)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return int((time.monotonic() - start) * 1000)
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                    raise LockError(f"Failed to lock {path}: {exc}") from exc
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out after {timeout:.1f}s waiting for lock {path}."
                )
            time.sleep(self.poll_interval)

    def _write_metadata(self, fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
