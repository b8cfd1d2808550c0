"""Tests for the engine facade over stores, transactions, backups and restores."""
from __future__ import annotations

import json
import shutil
from collections.abc import Sequence
from pathlib import Path

import pytest

from edgectl.backups import BackupNotFoundError
from edgectl.config import load_config
from edgectl.engine import Engine
from edgectl.models import SiteConfig, StreamConfig, UnitKind
from edgectl.providers.nginx import ValidationFailure
from edgectl.restore import RestoreOutcome
from edgectl.runner import CommandResult, CommandRunner
from edgectl.store import UnitExistsError, UnitNotFoundError
from edgectl.transaction import TransactionOutcome


class ServiceRunner(CommandRunner):
    """Run ``tar`` for real and script ``nginx`` and ``systemctl``."""

    def __init__(self) -> None:
        """Start with every scripted command succeeding."""
        super().__init__()
        self.calls: list[list[str]] = []
        self.failures: dict[str, int] = {}

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Dispatch ``tar`` to the real runner; answer the rest from ``failures``."""
        command = [str(item) for item in args]
        if command[0] == "tar":
            return super().run(command, check=check, timeout=timeout)
        self.calls.append(command)
        returncode = self.failures.get(command[1], 0)
        if command[1] == "-v":
            return CommandResult(args=command, returncode=0, stderr="nginx version: nginx/1.24.0")
        if command[1] == "is-active":
            return CommandResult(args=command, returncode=0, stdout="active\n")
        stderr = "" if returncode == 0 else f'[emerg] {command[0]} {command[1]} "failed"'
        return CommandResult(args=command, returncode=returncode, stderr=stderr)


@pytest.fixture
def runner() -> ServiceRunner:
    """Return the scripted runner."""
    return ServiceRunner()


@pytest.fixture
def engine(tmp_path: Path, runner: ServiceRunner) -> Engine:
    """Return an engine whose every path lives under *tmp_path*."""
    conf_dir = tmp_path / "etc" / "nginx"
    conf_dir.mkdir(parents=True)
    (conf_dir / "nginx.conf").write_text("events {}\n")
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "lock_timeout": 2,
            "nginx": {
                "conf_dir": str(conf_dir),
                "content_root": str(tmp_path / "www"),
                "nginx_bin": "nginx",
            },
            "backups": {
                "root": str(tmp_path / "backups"),
                "snapshot_dir": str(tmp_path / "snapshots"),
            },
        },
    )
    return Engine.from_config(config, runner=runner)


def _proxy(domain: str = "a.example.com", port: int = 8080) -> SiteConfig:
    return SiteConfig(domain=domain, kind=UnitKind.PROXY, backend_ip="10.0.0.5", backend_port=port)


def _operations(engine: Engine) -> list[dict[str, object]]:
    path = engine.config.logs_dir / "operations.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_create_site_commits_and_logs(engine: Engine) -> None:
    """A committed create is readable back and recorded in the operations log."""
    result = engine.create_site(_proxy())

    assert result.outcome is TransactionOutcome.COMMITTED
    assert engine.get_site("a.example.com") == _proxy()
    assert engine.sites.is_enabled("a.example.com")
    [record] = _operations(engine)
    assert record["command"] == "site create"
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["lock_wait_ms"] is not None


def test_create_existing_site_is_rejected(engine: Engine) -> None:
    """Creating over an existing unit is a validation error, not an overwrite."""
    engine.create_site(_proxy())

    with pytest.raises(UnitExistsError):
        engine.create_site(_proxy(port=9090))

    assert engine.get_site("a.example.com").backend_port == 8080


def test_update_missing_site_is_rejected(engine: Engine) -> None:
    """Updating or deleting an unknown unit raises UnitNotFoundError."""
    with pytest.raises(UnitNotFoundError):
        engine.update_site(_proxy())
    with pytest.raises(UnitNotFoundError):
        engine.delete_site("a.example.com")


def test_rejected_update_is_rolled_back(engine: Engine, runner: ServiceRunner) -> None:
    """A failed update keeps the previous body and logs an error with rc 4."""
    engine.create_site(_proxy())
    before = engine.read_site_raw("a.example.com")
    runner.failures["-t"] = 1

    result = engine.update_site(_proxy(port=9090))

    assert result.rolled_back
    assert engine.read_site_raw("a.example.com") == before
    record = _operations(engine)[-1]
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["rc"] == 4  # type: ignore[index]


def test_raw_site_edit_enables_site(engine: Engine) -> None:
    """Raw site edits write the body and re-enable a disabled site."""
    engine.create_site(_proxy())
    engine.sites.deactivate("a.example.com")

    result = engine.edit_site_raw("a.example.com", "# site_type: proxy\nserver {}\n")

    assert result.committed
    assert engine.read_site_raw("a.example.com") == "# site_type: proxy\nserver {}\n"
    assert engine.sites.is_enabled("a.example.com")


def test_stream_lifecycle(engine: Engine) -> None:
    """Streams can be created, edited raw (re-enabled), listed and deleted."""
    stream = StreamConfig(name="mysql", listen_port=3306, target="10.0.0.7:3306")
    engine.create_stream(stream)
    engine.streams.deactivate("mysql")

    engine.edit_stream_raw("mysql", engine.read_stream_raw("mysql").replace("3306;", "3307;", 1))

    assert engine.streams.is_enabled("mysql")
    assert [item.name for item in engine.list_streams()] == ["mysql"]
    assert engine.delete_stream("mysql").committed
    assert engine.list_streams() == []


def test_apply_mutation_creates_or_updates(engine: Engine) -> None:
    """The generic mutation picks create or update from the store state."""
    first = engine.apply_mutation("site", "b.example.com", "# site_type: static\nserver {}\n")
    second = engine.apply_mutation("site", "b.example.com", "# site_type: static\n")

    assert first.action.value == "create"
    assert second.action.value == "update"
    with pytest.raises(ValueError):
        engine.apply_mutation("upstream", "x", "y")


def test_reload_validates_first(engine: Engine, runner: ServiceRunner) -> None:
    """Reload refuses to touch the service when the config is invalid."""
    runner.failures["-t"] = 1

    with pytest.raises(ValidationFailure):
        engine.reload()

    assert all(call[1] != "reload" for call in runner.calls)


def test_status_reports_service_state(engine: Engine) -> None:
    """Status combines systemd state, nginx version and config health."""
    status = engine.status()

    assert status.active
    assert status.version == "nginx version: nginx/1.24.0"
    assert status.config_valid


@pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")
def test_backup_records_index_and_checksum(engine: Engine) -> None:
    """Backups land in the root with a checksum sidecar and an index entry."""
    archive = engine.backup(message="before upgrade")

    assert archive.path.parent == engine.config.backups.root
    assert archive.path.name.startswith("nginx_conf_")
    assert Path(f"{archive.path}.sha256").exists()
    [entry] = engine.backups.list_entries()
    assert entry["path"] == str(archive.path)
    assert entry["message"] == "before upgrade"
    assert entry["sources"] == [str(engine.config.nginx.conf_dir)]


@pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")
def test_backup_then_restore_round_trip(engine: Engine, runner: ServiceRunner) -> None:
    """Restoring the latest backup brings back a deleted site."""
    engine.create_site(_proxy())
    engine.backup()
    engine.delete_site("a.example.com")

    result = engine.restore(engine.config.backups.root)

    assert result.outcome is RestoreOutcome.DONE
    assert engine.sites.exists("a.example.com")
    assert engine.sites.is_enabled("a.example.com")
    assert ["systemctl", "start", "nginx"] in runner.calls


@pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")
def test_failed_restore_is_logged_with_provider_code(
    engine: Engine, runner: ServiceRunner
) -> None:
    """A rolled back restore is recorded as an error with rc 4."""
    engine.backup()
    runner.failures["-t"] = 1

    result = engine.restore(engine.config.backups.root)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    record = _operations(engine)[-1]
    assert record["command"] == "system restore"
    assert record["result"]["rc"] == 4  # type: ignore[index]


@pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")
def test_restore_backup_by_identifier(engine: Engine) -> None:
    """An indexed backup is restored by id even when a newer archive exists."""
    engine.create_site(_proxy())
    first_body = engine.read_site_raw("a.example.com")
    engine.backup(message="first")
    engine.update_site(_proxy(port=9090))
    engine.backup(message="second")
    [first, _second] = engine.backups.list_entries()

    result = engine.restore_backup(str(first["id"]))

    assert result.outcome is RestoreOutcome.DONE
    assert result.archive is not None
    assert result.archive.name == Path(str(first["path"])).name
    assert engine.read_site_raw("a.example.com") == first_body


def test_restore_unknown_backup_identifier(engine: Engine, runner: ServiceRunner) -> None:
    """Unknown identifiers are rejected before nginx is touched."""
    with pytest.raises(BackupNotFoundError):
        engine.restore_backup("20240101-000000-abcdef")

    assert runner.calls == []
