"""Archive helpers shared by backup and restore workflows.

Archives are gzip-compressed tarballs whose members sit under the managed
roots' paths relative to the filesystem root (``etc/nginx/...``,
``var/www/html/...``), exactly as ``tar -C / etc/nginx var/www/html`` lays
them out.
"""
from __future__ import annotations

import hashlib
import logging
import os
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .runner import CommandRunner

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
BACKUP_PREFIX = "nginx_conf"
SNAPSHOT_PREFIX = "nginx_pre_restore"


class ArchiveError(RuntimeError):
    """Raised when archive operations fail."""


class ArchiveCorrupt(ArchiveError):
    """The archive cannot be listed; it is truncated or not a gzip tarball."""


class ArchiveNotFoundError(ArchiveError):
    """No archive exists at the requested path or in the requested directory."""


@dataclass(slots=True, frozen=True)
class Archive:
    """A compressed snapshot of the managed trees on disk."""

    path: Path
    created_at: float
    size_bytes: int

    @classmethod
    def from_path(cls, path: Path) -> Archive:
        """Describe the archive stored at *path*."""
        try:
            stat = path.stat()
        except FileNotFoundError as exc:
            raise ArchiveNotFoundError(f"Archive {path} does not exist.") from exc
        return cls(path=path, created_at=stat.st_mtime, size_bytes=stat.st_size)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "created_at": datetime.fromtimestamp(self.created_at).isoformat(timespec="seconds"),
            "size_bytes": self.size_bytes,
        }


def is_archive_name(name: str) -> bool:
    """Return ``True`` for file names the archive manager recognises."""
    return name.endswith(ARCHIVE_SUFFIX) and not name.startswith(".")


def backup_filename(moment: datetime | None = None) -> str:
    """Return ``nginx_conf_YYYYmmdd_HHMMSS.tar.gz`` for *moment* (default now)."""
    stamp = (moment or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{BACKUP_PREFIX}_{stamp}{ARCHIVE_SUFFIX}"


class ArchiveManager:
    """Create, select, verify and extract archives of the managed roots."""

    def __init__(
        self,
        runner: CommandRunner,
        managed_roots: Sequence[Path],
        *,
        root: Path = Path("/"),
        snapshot_dir: Path = Path("/tmp"),
        tar_bin: str = "tar",
    ) -> None:
        """Bind the manager to *managed_roots*, all located under *root*."""
        self.runner = runner
        self.root = root
        self.managed_roots = tuple(managed_roots)
        self.snapshot_dir = snapshot_dir
        self.tar_bin = tar_bin

    # ------------------------------------------------------------------
    def relative_name(self, path: Path) -> str:
        """Return the archive member prefix of *path* (relative to the root)."""
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError as exc:
            raise ArchiveError(f"{path} is not located under {self.root}.") from exc

    def create(self, source_paths: Iterable[Path] | None, destination: Path) -> Archive:
        """Pack *source_paths* (default: the managed roots) into *destination*."""
        sources = list(source_paths) if source_paths is not None else list(self.managed_roots)
        members: list[str] = []
        for source in sources:
            if not source.exists():
                logger.info("skipping missing archive root %s", source)
                continue
            members.append(self.relative_name(source))
        if not members:
            joined = ", ".join(str(source) for source in sources) or "<none>"
            raise ArchiveError(f"None of the archive roots exist: {joined}.")

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArchiveError(f"Failed to prepare {destination.parent}: {exc}") from exc
        result = self.runner.run(
            [self.tar_bin, "-czf", str(destination), "-C", str(self.root), *members]
        )
        if not result.ok:
            destination.unlink(missing_ok=True)
            raise ArchiveError(f"tar failed to create {destination}: {result.diagnostic()}")
        try:
            os.chmod(destination, 0o640)
        except OSError:
            pass
        logger.info("created archive %s (%s)", destination, ", ".join(members))
        return Archive.from_path(destination)

    def select_latest(self, directory: Path) -> Archive:
        """Return the archive in *directory* with the newest modification time."""
        if not directory.is_dir():
            raise ArchiveNotFoundError(f"Backup directory {directory} does not exist.")
        latest: Archive | None = None
        for entry in directory.iterdir():
            if not is_archive_name(entry.name) or not entry.is_file():
                continue
            candidate = Archive.from_path(entry)
            if latest is None or candidate.created_at >= latest.created_at:
                latest = candidate
        if latest is None:
            raise ArchiveNotFoundError(f"No {ARCHIVE_SUFFIX} archives found in {directory}.")
        return latest

    def resolve(self, path_or_directory: Path) -> Archive:
        """Return the archive at *path_or_directory*, picking the latest for directories."""
        if path_or_directory.is_dir():
            return self.select_latest(path_or_directory)
        if not path_or_directory.is_file():
            raise ArchiveNotFoundError(f"Archive {path_or_directory} does not exist.")
        return Archive.from_path(path_or_directory)

    def verify(self, archive: Archive | Path) -> None:
        """List the archive without extracting; raise :class:`ArchiveCorrupt` on failure."""
        path = archive.path if isinstance(archive, Archive) else archive
        result = self.runner.run([self.tar_bin, "-tzf", str(path)])
        if not result.ok:
            raise ArchiveCorrupt(f"Archive {path} is corrupt: {result.diagnostic()}")

    def extract(self, archive: Archive | Path, target_dir: Path) -> None:
        """Unpack *archive* into *target_dir*."""
        path = archive.path if isinstance(archive, Archive) else archive
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArchiveError(f"Failed to prepare {target_dir}: {exc}") from exc
        result = self.runner.run([self.tar_bin, "-xzf", str(path), "-C", str(target_dir)])
        if not result.ok:
            raise ArchiveError(f"Failed to extract {path}: {result.diagnostic()}")

    def snapshot(self, label: str = SNAPSHOT_PREFIX) -> Archive:
        """Archive the managed roots into a transient file in the snapshot directory."""
        stem = f"{label}_{int(time.time())}"
        destination = self.snapshot_dir / f"{stem}{ARCHIVE_SUFFIX}"
        counter = 1
        while destination.exists():
            destination = self.snapshot_dir / f"{stem}_{counter}{ARCHIVE_SUFFIX}"
            counter += 1
        return self.create(None, destination)


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


__all__ = [
    "ARCHIVE_SUFFIX",
    "Archive",
    "ArchiveCorrupt",
    "ArchiveError",
    "ArchiveManager",
    "ArchiveNotFoundError",
    "backup_filename",
    "compute_checksum",
    "is_archive_name",
    "write_checksum_file",
]
