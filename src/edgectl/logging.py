"""Structured and human-readable logging for edgectl operations.

Every mutating command runs inside an :class:`OperationScope`. The scope
collects named steps while the command executes and, on exit, appends one
JSON record to ``operations.jsonl``. A rotating human log (``edgectl.log``)
receives the same summary line plus anything emitted by ``edgectl.*``
loggers.

Logging must never break a command: when the logs directory is missing or
unwritable the logger disables itself and operations continue silently.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import TracebackType

from . import __version__

HUMAN_LOG_NAME = "edgectl.log"
OPERATIONS_LOG_NAME = "operations.jsonl"
_HANDLER_MARKER = "_edgectl_managed"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for a single operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self.actor: dict[str, object] = {"uid": os.getuid(), "pid": os.getpid()}
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._start = time.monotonic()

    def __enter__(self) -> OperationScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if self.result is None:
            if exc is not None and not _is_clean_exit(exc):
                self.error(f"{type(exc).__name__}: {exc}", errors=[str(exc)], rc=1)
            else:
                self.success("Operation completed.", changed=0)
        self._logger._write_record(self._build_record())
        return False

    # ------------------------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record a named step within the operation."""
        step: dict[str, object] = {"name": name, "status": status, "ts": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for the mutation lock."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context, rc=0)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            context=context,
            warnings=list(warnings),
            errors=list(errors),
            backups=list(backups or []),
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            context=context,
            errors=list(errors) if errors else [message],
            rc=rc,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        context: Mapping[str, object] | None,
        rc: int,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        backups: list[str] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": warnings or [],
            "errors": errors or [],
            "backups": backups or [],
            "context": _sanitize(dict(context or {})),
        }

    def _build_record(self) -> dict[str, object]:
        return {
            "op_id": self.op_id,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._start) * 1000),
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": self.actor,
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": self.result,
            "context": {"edgectl_version": __version__},
        }


def _is_clean_exit(exc: BaseException) -> bool:
    # typer.Exit / SystemExit with code 0 are not failures.
    if isinstance(exc, SystemExit):
        return exc.code in (0, None)
    return type(exc).__name__ == "Exit" and getattr(exc, "exit_code", 1) == 0


class StructuredLogger:
    """Write operation records and human log lines under *logs_dir*."""

    def __init__(
        self,
        logs_dir: Path,
        *,
        max_bytes: int = 5 * 1024 * 1024,
        backup_count: int = 5,
    ) -> None:
        """Prepare the log directory and attach the rotating human log."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        self._log = logging.getLogger("edgectl")
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._install_handler(max_bytes=max_bytes, backup_count=backup_count)

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope recording the outcome of *command*."""
        return OperationScope(self, command, args=args, target=target)

    # ------------------------------------------------------------------
    def _install_handler(self, *, max_bytes: int, backup_count: int) -> None:
        for handler in list(self._log.handlers):
            if getattr(handler, _HANDLER_MARKER, False):
                if getattr(handler, "baseFilename", None) == str(self._human_log_path):
                    return
                self._log.removeHandler(handler)
                handler.close()
        try:
            handler = RotatingFileHandler(
                self._human_log_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except OSError:
            self._enabled = False
            return
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        setattr(handler, _HANDLER_MARKER, True)
        self._log.addHandler(handler)
        if self._log.level == logging.NOTSET:
            self._log.setLevel(logging.INFO)

    def _write_record(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        result = record.get("result")
        status = result.get("status") if isinstance(result, Mapping) else "unknown"
        message = result.get("message") if isinstance(result, Mapping) else ""
        level = logging.ERROR if status == "error" else logging.INFO
        self._log.log(level, "%s [%s] %s", record.get("command"), status, message)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
