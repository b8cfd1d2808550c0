"""External command execution.

Every privileged operation (``nginx -t``, ``systemctl``, ``tar``) goes through
:class:`CommandRunner`. ``run`` blocks until the process exits and reports
its exit status and both output streams.

``start_task`` runs a long command on a worker thread and streams its output
into a pollable :class:`TaskStatus`. It is a library-only API for embedding
programs that poll progress themselves; the CLI runs every operation in the
foreground under the mutation lock and never starts background tasks.
"""
from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import IO

logger = logging.getLogger(__name__)

EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = 124


class CommandError(RuntimeError):
    """Raised when a checked command exits non-zero."""

    def __init__(self, message: str, result: CommandResult) -> None:
        """Attach the failing *result* to the error."""
        super().__init__(message)
        self.result = result


class TaskBusyError(RuntimeError):
    """Raised when a background task with the same id is still running."""


@dataclass(slots=True)
class CommandResult:
    """Exit status and captured output of a finished command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return True when the command exited with status zero."""
        return self.returncode == 0

    def diagnostic(self) -> str:
        """Return the tool's own diagnostic text (stderr first, then stdout)."""
        return self.stderr.strip() or self.stdout.strip() or "no output"

    def describe(self) -> str:
        """Return a one-line description suitable for step details."""
        return f"command={' '.join(self.args)} rc={self.returncode}"


@dataclass
class TaskStatus:
    """Progress of a background command that callers can poll."""

    id: str
    is_running: bool = False
    exit_code: int | None = None
    logs: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_log(self, line: str) -> None:
        """Append *line* to the task log."""
        with self._lock:
            self.logs.append(line)

    def snapshot(self) -> dict[str, object]:
        """Return a consistent copy of the task state."""
        with self._lock:
            return {
                "id": self.id,
                "is_running": self.is_running,
                "exit_code": self.exit_code,
                "logs": list(self.logs),
            }


class CommandRunner:
    """Run external programs and capture their results."""

    def __init__(self, *, timeout: float | None = None) -> None:
        """Configure the default per-command *timeout* (seconds, ``None`` = unbounded)."""
        self.timeout = timeout
        self._tasks: dict[str, TaskStatus] = {}
        self._tasks_lock = threading.Lock()

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *args* to completion and return its result."""
        command = [str(item) for item in args]
        effective_timeout = self.timeout if timeout is None else timeout
        logger.debug("exec %s", " ".join(command))
        try:
            completed = subprocess.run(  # noqa: S603 - controlled command execution
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=effective_timeout,
            )
            result = CommandResult(
                args=command,
                returncode=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )
        except FileNotFoundError as exc:
            result = CommandResult(
                args=command,
                returncode=EXIT_NOT_FOUND,
                stderr=f"{command[0]} not found: {exc}",
            )
        except subprocess.TimeoutExpired:
            result = CommandResult(
                args=command,
                returncode=EXIT_TIMEOUT,
                stderr=f"{command[0]} timed out after {effective_timeout}s",
            )
        if check and not result.ok:
            raise CommandError(
                f"{' '.join(command)} failed (exit {result.returncode}): {result.diagnostic()}",
                result,
            )
        return result

    # Background tasks ----------------------------------------------
    def start_task(self, task_id: str, args: Sequence[str]) -> TaskStatus:
        """Start *args* on a worker thread and return its pollable status."""
        with self._tasks_lock:
            existing = self._tasks.get(task_id)
            if existing is not None and existing.is_running:
                raise TaskBusyError(f"Task '{task_id}' is already running.")
            status = TaskStatus(id=task_id, is_running=True)
            self._tasks[task_id] = status
        worker = threading.Thread(
            target=self.execute_streaming,
            args=(status, list(args)),
            name=f"edgectl-task-{task_id}",
            daemon=True,
        )
        worker.start()
        return status

    def task(self, task_id: str) -> TaskStatus | None:
        """Return the status of *task_id* if it was ever started."""
        with self._tasks_lock:
            return self._tasks.get(task_id)

    def execute_streaming(self, status: TaskStatus, args: Sequence[str]) -> int:
        """Run *args*, streaming stdout and stderr lines into *status*."""
        command = [str(item) for item in args]
        with status._lock:
            status.is_running = True
            status.exit_code = None
        try:
            process = subprocess.Popen(  # noqa: S603 - controlled command execution
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            status.add_log(f"{command[0]}: {exc}")
            with status._lock:
                status.is_running = False
                status.exit_code = -1
            return -1

        readers = [
            threading.Thread(target=_pump, args=(stream, status), daemon=True)
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]
        for reader in readers:
            reader.start()
        for reader in readers:
            reader.join()
        returncode = process.wait()
        with status._lock:
            status.is_running = False
            status.exit_code = returncode
        return returncode


def _pump(stream: IO[str], status: TaskStatus) -> None:
    with stream:
        for line in stream:
            status.add_log(line.rstrip("\n"))


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "TaskBusyError",
    "TaskStatus",
]
