"""Tests for the restore state machine."""
from __future__ import annotations

import os
import shutil
from collections.abc import Sequence
from pathlib import Path

import pytest

from edgectl.archive import Archive, ArchiveManager
from edgectl.providers.nginx import NginxProvider
from edgectl.providers.systemd import SystemdProvider
from edgectl.restore import (
    RestoreOrchestrator,
    RestoreOutcome,
    merge_tree,
    replace_tree,
)
from edgectl.runner import CommandResult, CommandRunner
from edgectl.transaction import RollbackFailure

pytestmark = pytest.mark.skipif(shutil.which("tar") is None, reason="tar is required")


class ServiceRunner(CommandRunner):
    """Run ``tar`` for real and script ``nginx``, ``systemctl`` and ``pkill``."""

    def __init__(self) -> None:
        """Start with every scripted command succeeding."""
        super().__init__()
        self.calls: list[list[str]] = []
        self.failures: dict[str, int] = {}
        self.queued: dict[str, list[int]] = {}

    def fail_next(self, subcommand: str, *returncodes: int) -> None:
        """Queue exit codes for the next calls of *subcommand* (``-xzf``, ``start``...)."""
        self.queued.setdefault(subcommand, []).extend(returncodes or (1,))

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Pop queued codes first; otherwise run ``tar`` and answer from ``failures``."""
        command = [str(item) for item in args]
        queue = self.queued.get(command[1], [])
        if queue:
            returncode = queue.pop(0)
        elif command[0] == "tar":
            return super().run(command, check=check, timeout=timeout)
        else:
            returncode = self.failures.get(command[1], 0)
        self.calls.append(command)
        stderr = "" if returncode == 0 else f"{command[0]} {command[1]} failed"
        return CommandResult(args=command, returncode=returncode, stderr=stderr)

    def commands(self) -> list[str]:
        """Return the scripted commands as ``"<tool> <subcommand>"`` strings."""
        return [f"{call[0]} {call[1]}" for call in self.calls]


class Env:
    """A fake filesystem root with live trees, a backup directory and an orchestrator."""

    def __init__(self, tmp_path: Path) -> None:
        """Lay out ``etc/nginx`` and ``var/www/html`` under a private root."""
        self.tmp_path = tmp_path
        self.root = tmp_path / "root"
        self.conf = self.root / "etc" / "nginx"
        self.html = self.root / "var" / "www" / "html"
        self.snapshots = tmp_path / "snapshots"
        self.backups = tmp_path / "backups"
        (self.conf / "sites-available").mkdir(parents=True)
        (self.conf / "nginx.conf").write_text("# live\nevents {}\n")
        (self.conf / "sites-available" / "live.example.com").write_text("server {}\n")
        self.html.mkdir(parents=True)
        (self.html / "index.html").write_text("live page\n")
        self.backups.mkdir()
        self.runner = ServiceRunner()
        self.archives = ArchiveManager(
            self.runner, (self.conf, self.html), root=self.root, snapshot_dir=self.snapshots
        )
        systemd = SystemdProvider(runner=self.runner, systemctl_bin="systemctl")
        self.orchestrator = RestoreOrchestrator(
            self.archives,
            NginxProvider(runner=self.runner, systemd=systemd, nginx_bin="nginx"),
            systemd,
            conf_dir=self.conf,
            content_root=self.html,
        )

    def build_archive(self, name: str, files: dict[str, str]) -> Archive:
        """Pack *files* (relative path -> text) into ``backups/<name>``."""
        source = self.tmp_path / f"src-{name}"
        for relative, text in files.items():
            path = source / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text)
        top_level = sorted({Path(relative).parts[0] for relative in files})
        packer = ArchiveManager(CommandRunner(), [], root=source)
        return packer.create([source / entry for entry in top_level], self.backups / name)


def _tree(path: Path) -> dict[str, bytes | str]:
    """Return every entry below *path* mapped to its bytes or link target."""
    entries: dict[str, bytes | str] = {}
    for dirpath, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            full = Path(dirpath) / name
            key = full.relative_to(path).as_posix()
            if full.is_symlink():
                entries[key] = f"-> {os.readlink(full)}"
            elif full.is_file():
                entries[key] = full.read_bytes()
            else:
                entries[key] = "<dir>"
    return entries


@pytest.fixture
def env(tmp_path: Path) -> Env:
    """Return a prepared restore environment."""
    return Env(tmp_path)


def test_restore_merges_archive_over_live_trees(env: Env) -> None:
    """Archived files replace live ones; other live files stay."""
    archive = env.build_archive(
        "nginx_conf_1.tar.gz",
        {
            "etc/nginx/nginx.conf": "# restored\nevents {}\n",
            "var/www/html/new.html": "restored page\n",
        },
    )

    result = env.orchestrator.restore(archive.path)

    assert result.outcome is RestoreOutcome.DONE
    assert result.ok
    assert (env.conf / "nginx.conf").read_text() == "# restored\nevents {}\n"
    assert (env.conf / "sites-available" / "live.example.com").exists()
    assert (env.html / "new.html").read_text() == "restored page\n"
    assert (env.html / "index.html").read_text() == "live page\n"
    assert env.runner.commands() == ["systemctl stop", "nginx -t", "systemctl start"]
    assert result.stages[-1] == "done"


def test_restore_cleans_up_snapshot_and_staging(env: Env) -> None:
    """Nothing is left behind in the snapshot directory."""
    archive = env.build_archive("b.tar.gz", {"etc/nginx/nginx.conf": "x\n"})

    env.orchestrator.restore(archive.path)

    assert list(env.snapshots.iterdir()) == []


def test_corrupt_archive_aborts_before_stopping(env: Env) -> None:
    """A broken archive never touches the running service or the live trees."""
    corrupt = env.backups / "nginx_conf_broken.tar.gz"
    corrupt.write_bytes(b"not a tarball")
    before = _tree(env.root)

    result = env.orchestrator.restore(corrupt)

    assert result.outcome is RestoreOutcome.ABORTED
    assert "verifying" in result.detail
    assert env.runner.calls == []
    assert _tree(env.root) == before


def test_missing_archive_aborts(env: Env) -> None:
    """An empty backup directory aborts at the resolving stage."""
    result = env.orchestrator.restore(env.backups)

    assert result.outcome is RestoreOutcome.ABORTED
    assert result.detail.startswith("resolving:")
    assert result.to_dict()["rollback_attempted"] is False


def test_validation_failure_rolls_back_exactly(env: Env) -> None:
    """A rejected configuration leaves the live trees byte-identical to before."""
    (env.conf / "conf.d").mkdir()
    (env.conf / "conf.d" / "link.conf").symlink_to("../nginx.conf")
    before = _tree(env.root)
    archive = env.build_archive(
        "bad.tar.gz",
        {
            "etc/nginx/nginx.conf": "broken {\n",
            "etc/nginx/extra.conf": "added by archive\n",
            "var/www/html/index.html": "overwritten\n",
        },
    )
    env.runner.failures["-t"] = 1

    result = env.orchestrator.restore(archive.path)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert result.detail.startswith("validating:")
    assert _tree(env.root) == before
    assert env.runner.commands()[-1] == "systemctl start"
    assert "rolling_back" in result.stages
    assert list(env.snapshots.iterdir()) == []


def test_stop_failure_falls_back_to_force_kill(env: Env) -> None:
    """When systemd cannot stop the service the process is killed."""
    archive = env.build_archive("c.tar.gz", {"etc/nginx/nginx.conf": "x\n"})
    env.runner.failures["stop"] = 1

    result = env.orchestrator.restore(archive.path)

    assert result.ok
    assert env.runner.commands()[:2] == ["systemctl stop", "pkill -9"]


def test_failed_rollback_is_fatal(env: Env) -> None:
    """If the service cannot be started after rollback the state is inconsistent."""
    archive = env.build_archive("d.tar.gz", {"etc/nginx/nginx.conf": "broken {\n"})
    env.runner.failures["-t"] = 1
    env.runner.failures["start"] = 1

    result = env.orchestrator.restore(archive.path)

    assert result.outcome is RestoreOutcome.FATAL_INCONSISTENT
    assert result.fatal
    assert "systemctl start" in (result.rollback_error or "")
    assert result.safety_snapshot is not None
    assert result.safety_snapshot.exists()
    with pytest.raises(RollbackFailure):
        result.raise_for_fatal()


def test_extraction_failure_rolls_back(env: Env) -> None:
    """An archive that cannot be unpacked after the stop is undone."""
    before = _tree(env.root)
    archive = env.build_archive("f.tar.gz", {"etc/nginx/nginx.conf": "x\n"})
    env.runner.fail_next("-xzf")

    result = env.orchestrator.restore(archive.path)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert result.detail.startswith("extracting:")
    assert _tree(env.root) == before
    assert env.runner.commands()[-1] == "systemctl start"
    assert list(env.snapshots.iterdir()) == []


def test_start_failure_rolls_back_and_restarts(env: Env) -> None:
    """When nginx will not start on the restored tree the old tree is started instead."""
    before = _tree(env.root)
    archive = env.build_archive(
        "g.tar.gz",
        {
            "etc/nginx/nginx.conf": "# restored\nevents {}\n",
            "etc/nginx/extra.conf": "added by archive\n",
        },
    )
    env.runner.fail_next("start")

    result = env.orchestrator.restore(archive.path)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert result.detail.startswith("starting:")
    assert _tree(env.root) == before
    assert env.runner.commands().count("systemctl start") == 2
    assert env.runner.commands()[-1] == "systemctl start"


def test_directory_restores_newest_archive(env: Env) -> None:
    """Passing a directory selects the archive with the newest mtime."""
    older = env.build_archive("nginx_conf_b.tar.gz", {"etc/nginx/nginx.conf": "older\n"})
    newer = env.build_archive("nginx_conf_a.tar.gz", {"etc/nginx/nginx.conf": "newer\n"})
    os.utime(older.path, (1_000, 1_000))
    os.utime(newer.path, (2_000, 2_000))

    result = env.orchestrator.restore(env.backups)

    assert result.archive == newer.path
    assert (env.conf / "nginx.conf").read_text() == "newer\n"


def test_legacy_nginx_directory_maps_to_config_dir(env: Env) -> None:
    """Archives holding a top-level ``nginx/`` tree restore into the config dir."""
    archive = env.build_archive("legacy.tar.gz", {"nginx/nginx.conf": "legacy\n"})

    result = env.orchestrator.restore(archive.path)

    assert result.ok
    assert (env.conf / "nginx.conf").read_text() == "legacy\n"


def test_merge_tree_replaces_links_and_keeps_extras(tmp_path: Path) -> None:
    """Merging swaps symlinks in place and keeps destination-only entries."""
    source = tmp_path / "src"
    destination = tmp_path / "dst"
    (source / "sites-enabled").mkdir(parents=True)
    (source / "sites-enabled" / "a").symlink_to("../sites-available/a")
    (source / "nginx.conf").write_text("new\n")
    (destination / "sites-enabled").mkdir(parents=True)
    (destination / "sites-enabled" / "a").symlink_to("/elsewhere/a")
    (destination / "nginx.conf").write_text("old\n")
    (destination / "keep.conf").write_text("keep\n")

    merge_tree(source, destination)

    assert os.readlink(destination / "sites-enabled" / "a") == "../sites-available/a"
    assert (destination / "nginx.conf").read_text() == "new\n"
    assert (destination / "keep.conf").read_text() == "keep\n"


def test_replace_tree_removes_destination_when_source_missing(tmp_path: Path) -> None:
    """Replacing from a missing source deletes the destination."""
    destination = tmp_path / "dst"
    destination.mkdir()
    (destination / "file").write_text("x")

    replace_tree(tmp_path / "missing", destination)

    assert not destination.exists()


def test_failure_while_applying_rolls_back(
    monkeypatch: pytest.MonkeyPatch, env: Env
) -> None:
    """A copy that dies half way is undone and nginx is started again."""
    before = _tree(env.root)
    archive = env.build_archive("e.tar.gz", {"etc/nginx/nginx.conf": "x\n"})

    def half_merge(source: Path, destination: Path) -> None:
        (destination / "partial.conf").write_text("half written\n")
        raise OSError("No space left on device")

    monkeypatch.setattr("edgectl.restore.merge_tree", half_merge)

    result = env.orchestrator.restore(archive.path)

    assert result.outcome is RestoreOutcome.ROLLED_BACK
    assert result.detail.startswith("applying:")
    assert _tree(env.root) == before
    assert env.runner.commands()[-1] == "systemctl start"
