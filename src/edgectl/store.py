"""Filesystem-backed configuration store for sites and streams.

A unit lives in two places: its body in ``<available_dir>/<key>`` and, when
enabled, a symbolic link ``<enabled_dir>/<key>`` pointing at the body. Body
writes go through a temporary file and ``os.replace`` and links are swapped
the same way, so readers never observe a half-written body or an enabled
unit without one.

Bodies are decoded as UTF-8 with ``surrogateescape`` so a hand-edited file
holding other bytes still reads, and writes back byte for byte.
"""
from __future__ import annotations

import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .models import UnitKind, infer_site_kind

logger = logging.getLogger(__name__)

_ERRORS = "surrogateescape"


class StoreError(RuntimeError):
    """Base class for configuration store failures."""


class StoreIOError(StoreError):
    """Raised when reading, writing or linking a unit fails on disk."""


class UnitNotFoundError(StoreError):
    """Raised when a unit does not exist in the store."""


class UnitExistsError(StoreError):
    """Raised when creating a unit that already exists."""


class InvalidUnitKeyError(StoreError, ValueError):
    """Raised when a unit key cannot be mapped to a file name."""


class EntryKind(str, Enum):
    """What occupies a unit's slot in the enabled directory."""

    ABSENT = "absent"
    SYMLINK = "symlink"
    FILE = "file"
    OTHER = "other"


@dataclass(slots=True, frozen=True)
class EnabledEntry:
    """Raw state of ``<enabled_dir>/<key>``, whatever an operator put there."""

    kind: EntryKind = EntryKind.ABSENT
    target: str | None = None
    data: bytes | None = None
    mode: int | None = None

    def describe(self) -> str:
        """Return a short human description."""
        if self.kind is EntryKind.SYMLINK:
            return f"symlink -> {self.target}"
        if self.kind is EntryKind.FILE:
            return f"plain file ({len(self.data or b'')} bytes)"
        return self.kind.value


@dataclass(slots=True, frozen=True)
class UnitSnapshot:
    """Exact on-disk state of a unit: its body (``None`` when absent) and link."""

    key: str
    body: str | None
    enabled: bool
    entry: EnabledEntry = EnabledEntry()

    @property
    def exists(self) -> bool:
        """Return ``True`` when the unit had an available body."""
        return self.body is not None


def validate_key(key: str) -> str:
    """Return *key* stripped, or raise :class:`InvalidUnitKeyError`."""
    normalised = key.strip()
    if not normalised:
        raise InvalidUnitKeyError("Unit key must be a non-empty string.")
    if normalised in {".", ".."} or "/" in normalised or "\\" in normalised:
        raise InvalidUnitKeyError(f"Unit key '{key}' must not contain path separators.")
    if normalised.startswith("."):
        raise InvalidUnitKeyError(f"Unit key '{key}' must not start with a dot.")
    return normalised


@dataclass(slots=True)
class ConfigurationStore:
    """Map unit keys to bodies and activation links."""

    available_dir: Path
    enabled_dir: Path
    kind: str = "site"
    content_root: Path | None = None
    file_mode: int = 0o644

    # Paths ---------------------------------------------------------
    def available_path(self, key: str) -> Path:
        """Return the path of the available body for *key*."""
        return self.available_dir / validate_key(key)

    def enabled_path(self, key: str) -> Path:
        """Return the path of the activation link for *key*."""
        return self.enabled_dir / validate_key(key)

    # Queries -------------------------------------------------------
    def exists(self, key: str) -> bool:
        """Return ``True`` when *key* has an available body."""
        return self.available_path(key).is_file()

    def is_enabled(self, key: str) -> bool:
        """Return ``True`` when the activation link points at the available body."""
        link = self.enabled_path(key)
        if not link.is_symlink():
            return False
        try:
            return link.resolve() == self.available_path(key).resolve()
        except OSError:
            return False

    def read(self, key: str) -> str:
        """Return the body of *key* exactly as stored."""
        path = self.available_path(key)
        try:
            with path.open("r", encoding="utf-8", errors=_ERRORS, newline="") as handle:
                return handle.read()
        except FileNotFoundError as exc:
            raise UnitNotFoundError(f"{self.kind} '{key}' not found ({path}).") from exc
        except IsADirectoryError as exc:
            raise StoreIOError(f"{path} is a directory, not a {self.kind} file.") from exc
        except OSError as exc:
            raise StoreIOError(f"Failed to read {path}: {exc}") from exc

    def list_keys(self) -> list[str]:
        """Return the sorted keys of all available units."""
        if not self.available_dir.is_dir():
            return []
        try:
            entries = list(self.available_dir.iterdir())
        except OSError as exc:
            raise StoreIOError(f"Failed to list {self.available_dir}: {exc}") from exc
        return sorted(
            entry.name
            for entry in entries
            if not entry.name.startswith(".") and entry.is_file()
        )

    def snapshot(self, key: str) -> UnitSnapshot:
        """Capture the current body and activation state of *key*."""
        try:
            body: str | None = self.read(key)
        except UnitNotFoundError:
            body = None
        return UnitSnapshot(
            key=validate_key(key),
            body=body,
            enabled=self.is_enabled(key),
            entry=self._read_entry(key),
        )

    # Mutations -----------------------------------------------------
    def write(self, key: str, body: str) -> None:
        """Atomically replace the body of *key*."""
        path = self.available_path(key)
        if self.content_root is not None and infer_site_kind(body) is UnitKind.STATIC:
            self._provision_content_dir(validate_key(key))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        except OSError as exc:
            raise StoreIOError(f"Failed to prepare {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors=_ERRORS, newline="") as handle:
                handle.write(body)
            os.chmod(tmp_path, self.file_mode)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreIOError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        logger.info("wrote %s %s (%d bytes)", self.kind, key, len(body))

    def write_enabled(self, key: str, body: str) -> None:
        """Write *key* and make sure it is enabled."""
        self.write(key, body)
        self.activate(key)

    def activate(self, key: str) -> None:
        """Point the activation link at the available body, replacing stale links."""
        source = self.available_path(key)
        link = self.enabled_path(key)
        if not source.is_file():
            raise StoreIOError(f"Cannot enable {self.kind} '{key}': {source} does not exist.")
        if self.is_enabled(key):
            return
        tmp_link = link.with_name(f".{link.name}.link")
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            tmp_link.unlink(missing_ok=True)
            tmp_link.symlink_to(source)
            os.replace(tmp_link, link)
        except OSError as exc:
            tmp_link.unlink(missing_ok=True)
            raise StoreIOError(f"Failed to enable {self.kind} '{key}': {exc}") from exc
        logger.info("enabled %s %s", self.kind, key)

    def deactivate(self, key: str) -> None:
        """Remove the activation link of *key*; a no-op when it is absent."""
        link = self.enabled_path(key)
        try:
            link.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StoreIOError(f"Failed to disable {self.kind} '{key}': {exc}") from exc
        logger.info("disabled %s %s", self.kind, key)

    def delete(self, key: str) -> None:
        """Remove the activation link and then the body of *key*."""
        path = self.available_path(key)
        if not path.is_file():
            raise UnitNotFoundError(f"{self.kind} '{key}' not found ({path}).")
        self.deactivate(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StoreIOError(f"Failed to delete {path}: {exc}") from exc
        logger.info("deleted %s %s", self.kind, key)

    def restore(self, snapshot: UnitSnapshot) -> None:
        """Put *snapshot* back on disk: body bytes and the enabled entry as found."""
        if snapshot.body is None:
            path = self.available_path(snapshot.key)
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StoreIOError(f"Failed to remove {path}: {exc}") from exc
        else:
            self.write(snapshot.key, snapshot.body)
        self._restore_entry(snapshot.key, snapshot.entry)

    # ------------------------------------------------------------------
    def _read_entry(self, key: str) -> EnabledEntry:
        path = self.enabled_path(key)
        try:
            info = path.lstat()
        except FileNotFoundError:
            return EnabledEntry()
        except OSError as exc:
            raise StoreIOError(f"Failed to inspect {path}: {exc}") from exc
        try:
            if stat.S_ISLNK(info.st_mode):
                return EnabledEntry(kind=EntryKind.SYMLINK, target=os.readlink(path))
            if stat.S_ISREG(info.st_mode):
                return EnabledEntry(
                    kind=EntryKind.FILE,
                    data=path.read_bytes(),
                    mode=stat.S_IMODE(info.st_mode),
                )
        except OSError as exc:
            raise StoreIOError(f"Failed to read {path}: {exc}") from exc
        return EnabledEntry(kind=EntryKind.OTHER)

    def _restore_entry(self, key: str, entry: EnabledEntry) -> None:
        if entry.kind is EntryKind.OTHER:
            # Directories and devices are never modified by the store.
            return
        if entry.kind is EntryKind.ABSENT:
            self.deactivate(key)
            return
        if self._read_entry(key) == entry:
            return
        link = self.enabled_path(key)
        tmp_path = link.with_name(f".{link.name}.restore")
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.unlink(missing_ok=True)
            if entry.kind is EntryKind.SYMLINK:
                os.symlink(entry.target or "", tmp_path)
            else:
                tmp_path.write_bytes(entry.data or b"")
                os.chmod(tmp_path, entry.mode if entry.mode is not None else self.file_mode)
            os.replace(tmp_path, link)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StoreIOError(f"Failed to restore {link}: {exc}") from exc
        logger.info("restored %s %s enabled entry (%s)", self.kind, key, entry.describe())

    def _provision_content_dir(self, key: str) -> None:
        assert self.content_root is not None
        target = self.content_root / key
        try:
            target.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreIOError(f"Failed to create content directory {target}: {exc}") from exc


__all__ = [
    "ConfigurationStore",
    "EnabledEntry",
    "EntryKind",
    "InvalidUnitKeyError",
    "StoreError",
    "StoreIOError",
    "UnitExistsError",
    "UnitNotFoundError",
    "UnitSnapshot",
    "validate_key",
]
