"""Index of explicit backups (``backups.json``) kept beside the archives.

Archives found by scanning the backups root are always restorable by path;
the index adds identifiers, checksums and operator notes so ``backup
restore <id>`` can name a specific archive.
"""
from __future__ import annotations

import json
import os
import secrets
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


class BackupNotFoundError(BackupRegistryError, ValueError):
    """Raised when a backup identifier is not in the index."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(slots=True)
class BackupRecord:
    """One archive written by ``system backup``."""

    id: str
    archive_path: Path
    checksum: str
    size_bytes: int
    sources: Sequence[str] = ()
    message: str | None = None
    actor: Mapping[str, object] | None = None
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable index entry."""
        entry: dict[str, object] = {
            "id": self.id,
            "created_at": self.created_at,
            "path": str(self.archive_path),
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "sources": list(self.sources),
        }
        if self.message:
            entry["message"] = self.message
        if self.actor:
            entry["created_by"] = dict(self.actor)
        return entry


@dataclass(slots=True)
class BackupsRegistry:
    """Read and append ``backups.json`` under the backups root."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Create the backups root, readable by owner and group only."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def list_entries(self) -> list[dict[str, object]]:
        """Return every well-formed entry, oldest first."""
        backups = self._load().get("backups", [])
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def record(self, record: BackupRecord) -> None:
        """Append *record* to the index."""
        entries = self.list_entries()
        entries.append(record.to_dict())
        self._save({"backups": entries})

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        wanted = backup_id.strip()
        if not wanted:
            raise BackupRegistryError("Backup identifier must be a non-empty string.")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == wanted:
                return entry
        return None

    def resolve_archive(self, backup_id: str) -> Path:
        """Return the archive recorded under *backup_id*.

        Raises :class:`BackupNotFoundError` for unknown identifiers and
        :class:`BackupRegistryError` when the entry names no archive or the
        archive has since been removed.
        """
        entry = self.find_by_id(backup_id)
        if entry is None:
            raise BackupNotFoundError(f"Backup '{backup_id}' is not in {self.index}.")
        raw_path = str(entry.get("path", "")).strip()
        if not raw_path:
            raise BackupRegistryError(f"Backup '{backup_id}' has no archive path.")
        path = Path(raw_path)
        if not path.is_file():
            raise BackupRegistryError(f"Archive of backup '{backup_id}' is missing: {path}")
        return path

    def generate_identifier(self) -> str:
        """Return a unique backup identifier."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        return f"{timestamp}-{secrets.token_hex(3)}"

    # ------------------------------------------------------------------
    def _load(self) -> dict[str, object]:
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def _save(self, payload: Mapping[str, object]) -> None:
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.index.parent), prefix=f".{self.index.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, self.index)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "BackupError",
    "BackupNotFoundError",
    "BackupRecord",
    "BackupRegistryError",
    "BackupsRegistry",
]
