"""Whole-tree disaster recovery from a backup archive.

A restore walks a fixed sequence of stages::

    idle -> resolving -> verifying -> safety_snapshot -> stopping
         -> extracting -> applying -> validating -> starting -> done

Failures up to and including ``safety_snapshot`` abort the restore before the
live system is touched. Any later failure enters ``rolling_back``: the
service is stopped (forcibly if needed), every managed root is replaced by
its copy in the safety snapshot and the service is started again. The
restore ends ``rolled_back`` when that works and ``fatal_inconsistent`` when
it does not; the safety snapshot is kept on disk only in the latter case.

Applying an archive merges it over the live trees: files from the archive
replace files with the same relative path, other live files stay. Rolling
back is exact: each managed root becomes byte-identical to the snapshot.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from .archive import Archive, ArchiveError, ArchiveManager
from .providers.nginx import NginxError, NginxProvider
from .providers.systemd import SystemdError, SystemdProvider
from .transaction import RollbackFailure

if TYPE_CHECKING:
    from .logging import OperationScope

logger = logging.getLogger(__name__)

LEGACY_CONFIG_DIR = "nginx"
DEFAULT_CONFIG_MEMBER = "etc/nginx"
DEFAULT_CONTENT_MEMBER = "var/www/html"


class RestoreStage(str, Enum):
    """Stages of a restore session."""

    IDLE = "idle"
    RESOLVING = "resolving"
    VERIFYING = "verifying"
    SAFETY_SNAPSHOT = "safety_snapshot"
    STOPPING = "stopping"
    EXTRACTING = "extracting"
    APPLYING = "applying"
    VALIDATING = "validating"
    STARTING = "starting"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FATAL_INCONSISTENT = "fatal_inconsistent"
    ABORTED = "aborted"


class RestoreOutcome(str, Enum):
    """Terminal result of a restore."""

    DONE = "done"
    ROLLED_BACK = "rolled_back"
    FATAL_INCONSISTENT = "fatal_inconsistent"
    ABORTED = "aborted"


@dataclass(slots=True)
class RestoreSession:
    """Mutable state of one restore invocation."""

    source: Path
    stage: RestoreStage = RestoreStage.IDLE
    archive: Archive | None = None
    safety_snapshot: Archive | None = None
    staging_dir: Path | None = None
    service_stopped: bool = False
    stages: list[str] = field(default_factory=list)

    def advance(self, stage: RestoreStage, op: OperationScope | None = None) -> None:
        """Enter *stage* and record it."""
        self.stage = stage
        self.stages.append(stage.value)
        logger.debug("restore %s: %s", self.source, stage.value)
        if op is not None:
            op.add_step(f"restore.{stage.value}", status="info")


@dataclass(slots=True)
class RestoreResult:
    """What happened to a restore, as reported to callers."""

    outcome: RestoreOutcome
    archive: Path | None
    stages: list[str]
    detail: str = ""
    rollback_error: str | None = None
    safety_snapshot: Path | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the archive is live."""
        return self.outcome is RestoreOutcome.DONE

    @property
    def fatal(self) -> bool:
        """Return ``True`` when recovery failed and the live state is unknown."""
        return self.outcome is RestoreOutcome.FATAL_INCONSISTENT

    def raise_for_fatal(self) -> None:
        """Raise :class:`RollbackFailure` when the restore ended inconsistent."""
        if self.fatal:
            raise RollbackFailure(
                f"Restore rollback failed: {self.rollback_error}; "
                f"original failure: {self.detail}",
                original=self.detail,
                rollback_error=self.rollback_error or "",
            )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "outcome": self.outcome.value,
            "archive": str(self.archive) if self.archive else None,
            "stages": list(self.stages),
            "detail": self.detail,
            "rollback_attempted": self.outcome
            in {RestoreOutcome.ROLLED_BACK, RestoreOutcome.FATAL_INCONSISTENT},
            "rolled_back": self.outcome is RestoreOutcome.ROLLED_BACK,
            "rollback_error": self.rollback_error,
            "safety_snapshot": str(self.safety_snapshot) if self.safety_snapshot else None,
        }


class RestoreOrchestrator:
    """Drive a restore session through its stages."""

    def __init__(
        self,
        archives: ArchiveManager,
        nginx: NginxProvider,
        systemd: SystemdProvider,
        *,
        conf_dir: Path,
        content_root: Path,
        service: str = "nginx",
        process_name: str = "nginx",
    ) -> None:
        """Bind the orchestrator to the live trees and service it restores."""
        self.archives = archives
        self.nginx = nginx
        self.systemd = systemd
        self.conf_dir = conf_dir
        self.content_root = content_root
        self.service = service
        self.process_name = process_name

    def restore(
        self, path_or_directory: Path, *, op: OperationScope | None = None
    ) -> RestoreResult:
        """Restore the live trees from an archive or the newest archive in a directory."""
        session = RestoreSession(source=path_or_directory)
        try:
            return self._run(session, op)
        finally:
            self._cleanup(session)

    # ------------------------------------------------------------------
    def _run(self, session: RestoreSession, op: OperationScope | None) -> RestoreResult:
        try:
            session.advance(RestoreStage.RESOLVING, op)
            session.archive = self.archives.resolve(session.source)
            session.advance(RestoreStage.VERIFYING, op)
            self.archives.verify(session.archive)
            session.advance(RestoreStage.SAFETY_SNAPSHOT, op)
            session.safety_snapshot = self.archives.snapshot()
        except (ArchiveError, OSError) as exc:
            logger.warning(
                "restore from %s aborted at %s: %s", session.source, session.stage.value, exc
            )
            failed_stage = session.stage.value
            session.advance(RestoreStage.ABORTED, op)
            return self._result(session, RestoreOutcome.ABORTED, f"{failed_stage}: {exc}")

        archive = session.archive
        assert archive is not None
        try:
            session.advance(RestoreStage.STOPPING, op)
            self._stop_service(session)
            session.advance(RestoreStage.EXTRACTING, op)
            session.staging_dir = Path(
                tempfile.mkdtemp(prefix="edgectl-restore-", dir=str(self.archives.snapshot_dir))
            )
            self.archives.extract(archive, session.staging_dir)
            session.advance(RestoreStage.APPLYING, op)
            applied = self._apply(session.staging_dir)
            if op is not None:
                op.add_step("restore.applied", status="success", detail=applied)
            session.advance(RestoreStage.VALIDATING, op)
            self.nginx.test_config()
            session.advance(RestoreStage.STARTING, op)
            self.systemd.start(self.service)
            session.service_stopped = False
        except (ArchiveError, NginxError, SystemdError, OSError) as exc:
            failed_stage = session.stage.value
            logger.warning("restore from %s failed at %s: %s", archive.path, failed_stage, exc)
            return self._roll_back(session, f"{failed_stage}: {exc}", op)

        session.advance(RestoreStage.DONE, op)
        logger.info("restored %s", archive.path)
        return self._result(session, RestoreOutcome.DONE, f"restored {archive.path}")

    def _stop_service(self, session: RestoreSession) -> None:
        try:
            self.systemd.stop(self.service)
        except SystemdError as exc:
            logger.warning("stopping %s failed (%s); force killing", self.service, exc)
            self.systemd.force_kill(self.process_name)
        session.service_stopped = True

    def _apply(self, staging: Path) -> list[str]:
        config_src = self._member(staging, self.conf_dir, DEFAULT_CONFIG_MEMBER)
        content_src = self._member(staging, self.content_root, DEFAULT_CONTENT_MEMBER)
        tasks: list[tuple[Path, Path]] = []
        if config_src is not None:
            tasks.append((config_src, self.conf_dir))
        if content_src is not None:
            tasks.append((content_src, self.content_root))
        legacy = staging / LEGACY_CONFIG_DIR
        if config_src is None and legacy.is_dir():
            tasks.append((legacy, self.conf_dir))
        if not tasks:
            tasks.append((staging, self.conf_dir))

        applied: list[str] = []
        for source, destination in tasks:
            merge_tree(source, destination)
            applied.append(f"{source.relative_to(staging).as_posix() or '.'} -> {destination}")
        return applied

    def _member(self, staging: Path, live_root: Path, default: str) -> Path | None:
        candidates = [default]
        try:
            configured = self.archives.relative_name(live_root)
        except ArchiveError:
            configured = None
        if configured and configured not in candidates:
            candidates.insert(0, configured)
        for name in candidates:
            candidate = staging / name
            if candidate.is_dir():
                return candidate
        return None

    def _roll_back(
        self,
        session: RestoreSession,
        detail: str,
        op: OperationScope | None,
    ) -> RestoreResult:
        session.advance(RestoreStage.ROLLING_BACK, op)
        snapshot = session.safety_snapshot
        assert snapshot is not None
        try:
            self._halt_for_rollback()
            rollback_dir = Path(
                tempfile.mkdtemp(prefix="edgectl-rollback-", dir=str(self.archives.snapshot_dir))
            )
            try:
                self.archives.extract(snapshot, rollback_dir)
                for live_root in (self.conf_dir, self.content_root):
                    member = rollback_dir / self.archives.relative_name(live_root)
                    replace_tree(member, live_root)
            finally:
                shutil.rmtree(rollback_dir, ignore_errors=True)
            self.systemd.start(self.service)
            session.service_stopped = False
        except (ArchiveError, SystemdError, OSError) as exc:
            session.advance(RestoreStage.FATAL_INCONSISTENT, op)
            logger.error(
                "RESTORE ROLLBACK FAILED: %s (original failure: %s); safety snapshot kept at %s; "
                "live state is unknown",
                exc,
                detail,
                snapshot.path,
            )
            result = self._result(
                session, RestoreOutcome.FATAL_INCONSISTENT, detail, rollback_error=str(exc)
            )
            result.safety_snapshot = snapshot.path
            return result
        session.advance(RestoreStage.ROLLED_BACK, op)
        return self._result(session, RestoreOutcome.ROLLED_BACK, detail)

    def _halt_for_rollback(self) -> None:
        try:
            self.systemd.stop(self.service)
        except SystemdError as exc:
            logger.warning("stop during rollback failed: %s", exc)
        try:
            self.systemd.force_kill(self.process_name)
        except SystemdError as exc:
            logger.warning("force kill during rollback failed: %s", exc)

    def _cleanup(self, session: RestoreSession) -> None:
        if session.staging_dir is not None:
            shutil.rmtree(session.staging_dir, ignore_errors=True)
        # An inconsistent restore keeps its snapshot for manual recovery.
        if session.stage is RestoreStage.FATAL_INCONSISTENT:
            return
        if session.safety_snapshot is not None:
            session.safety_snapshot.path.unlink(missing_ok=True)

    @staticmethod
    def _result(
        session: RestoreSession,
        outcome: RestoreOutcome,
        detail: str,
        *,
        rollback_error: str | None = None,
    ) -> RestoreResult:
        return RestoreResult(
            outcome=outcome,
            archive=session.archive.path if session.archive else None,
            stages=list(session.stages),
            detail=detail,
            rollback_error=rollback_error,
        )


def merge_tree(source: Path, destination: Path) -> None:
    """Copy *source* over *destination* like ``cp -a source/. destination/``.

    Existing entries with the same relative path are replaced (including
    symbolic links); entries only present in *destination* are kept.
    """
    destination.mkdir(parents=True, exist_ok=True)
    for dirpath, dirnames, filenames in os.walk(source):
        current = Path(dirpath)
        target_dir = destination / current.relative_to(source)
        for name in list(dirnames):
            src = current / name
            dst = target_dir / name
            if src.is_symlink():
                # os.walk does not descend into symlinked directories.
                _replace_with_link(src, dst)
                continue
            if dst.is_symlink() or (dst.exists() and not dst.is_dir()):
                dst.unlink()
            dst.mkdir(exist_ok=True)
            shutil.copystat(src, dst)
        for name in filenames:
            src = current / name
            dst = target_dir / name
            if src.is_symlink():
                _replace_with_link(src, dst)
                continue
            if dst.is_symlink():
                dst.unlink()
            elif dst.is_dir():
                shutil.rmtree(dst)
            shutil.copy2(src, dst)


def replace_tree(source: Path, destination: Path) -> None:
    """Make *destination* an exact copy of *source*; remove it when *source* is absent."""
    if destination.is_symlink() or destination.is_file():
        destination.unlink()
    elif destination.exists():
        shutil.rmtree(destination)
    if source.is_dir():
        shutil.copytree(source, destination, symlinks=True)


def _replace_with_link(source: Path, destination: Path) -> None:
    if destination.is_symlink() or destination.is_file():
        destination.unlink()
    elif destination.is_dir():
        shutil.rmtree(destination)
    destination.symlink_to(os.readlink(source))


__all__ = [
    "RestoreOrchestrator",
    "RestoreOutcome",
    "RestoreResult",
    "RestoreSession",
    "RestoreStage",
    "merge_tree",
    "replace_tree",
]
