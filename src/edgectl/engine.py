"""Process-wide engine tying configuration, stores and providers together.

One :class:`Engine` is built at start-up from the resolved
:class:`~edgectl.config.AppConfig` and handed to every caller. All mutating
operations (unit changes, reloads, backups and restores) hold the global
mutation lock for their whole protocol.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .archive import (
    Archive,
    ArchiveManager,
    backup_filename,
    compute_checksum,
    write_checksum_file,
)
from .backups import BackupRecord, BackupsRegistry
from .config import AppConfig
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import (
    SiteConfig,
    StreamConfig,
    UnitKind,
    parse_site,
    parse_stream,
)
from .providers import NginxProvider, SystemdProvider
from .restore import RestoreOrchestrator, RestoreOutcome, RestoreResult
from .runner import CommandResult, CommandRunner
from .store import ConfigurationStore, UnitExistsError, UnitNotFoundError, validate_key
from .templates import TemplateEngine
from .transaction import MutationAction, MutationResult, TransactionManager

SITE = "site"
STREAM = "stream"


@dataclass(slots=True, frozen=True)
class ServiceStatus:
    """Snapshot of the managed service."""

    service: str
    active: bool
    version: str
    config_valid: bool
    config_detail: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "active": self.active,
            "version": self.version,
            "config_valid": self.config_valid,
            "config_detail": self.config_detail,
        }


class Engine:
    """Entry point for every site, stream, reload, backup and restore operation."""

    def __init__(
        self,
        *,
        config: AppConfig,
        runner: CommandRunner,
        sites: ConfigurationStore,
        streams: ConfigurationStore,
        templates: TemplateEngine,
        systemd: SystemdProvider,
        nginx: NginxProvider,
        archives: ArchiveManager,
        backups: BackupsRegistry,
        locks: LockManager,
        logger: StructuredLogger,
    ) -> None:
        """Store collaborators; use :meth:`from_config` to build them."""
        self.config = config
        self.runner = runner
        self.sites = sites
        self.streams = streams
        self.templates = templates
        self.systemd = systemd
        self.nginx = nginx
        self.archives = archives
        self.backups = backups
        self.locks = locks
        self.logger = logger
        self.transactions = TransactionManager(nginx=nginx)
        self.restorer = RestoreOrchestrator(
            archives,
            nginx,
            systemd,
            conf_dir=config.nginx.conf_dir,
            content_root=config.nginx.content_root,
            service=config.nginx.service,
            process_name=Path(config.nginx.nginx_bin).name or "nginx",
        )

    @classmethod
    def from_config(cls, config: AppConfig, *, runner: CommandRunner | None = None) -> Engine:
        """Wire every collaborator from *config*."""
        runner = runner or CommandRunner(timeout=config.commands.timeout)
        nginx_config = config.nginx
        systemd = SystemdProvider(
            runner=runner,
            systemctl_bin=config.systemd.systemctl_bin,
            pkill_bin=config.systemd.pkill_bin,
        )
        nginx = NginxProvider(
            runner=runner,
            systemd=systemd,
            nginx_bin=nginx_config.nginx_bin,
            service=nginx_config.service,
        )
        return cls(
            config=config,
            runner=runner,
            sites=ConfigurationStore(
                nginx_config.sites_available,
                nginx_config.sites_enabled,
                kind=SITE,
                content_root=nginx_config.content_root,
            ),
            streams=ConfigurationStore(
                nginx_config.streams_available,
                nginx_config.streams_enabled,
                kind=STREAM,
            ),
            templates=TemplateEngine.with_overrides(config.templates_dir),
            systemd=systemd,
            nginx=nginx,
            archives=ArchiveManager(
                runner,
                (nginx_config.conf_dir, nginx_config.content_root),
                snapshot_dir=config.backups.snapshot_dir,
                tar_bin=config.commands.tar_bin,
            ),
            backups=BackupsRegistry(config.backups.root, config.backups.index),
            locks=LockManager(config.runtime_dir, config.lock_timeout),
            logger=StructuredLogger(config.logs_dir),
        )

    # Generic mutation ------------------------------------------------
    def store_for(self, kind: str) -> ConfigurationStore:
        """Return the store holding units of *kind* (``site`` or ``stream``)."""
        if kind == SITE:
            return self.sites
        if kind == STREAM:
            return self.streams
        raise ValueError(f"Unknown unit kind '{kind}'. Expected 'site' or 'stream'.")

    def apply_mutation(
        self,
        kind: str,
        key: str,
        proposed_body: str,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Create or replace *key* with *proposed_body* and enable it."""
        store = self.store_for(kind)
        key = validate_key(key)
        with self._operation(op, f"{kind} apply", key, kind) as scope:
            with self._locked(scope):
                action = MutationAction.UPDATE if store.exists(key) else MutationAction.CREATE
                result = self.transactions.execute(
                    store, key, action, proposed_body, op=scope
                )
            return self._finish(scope, result, raise_on_fatal)

    # Sites -----------------------------------------------------------
    def create_site(
        self,
        site: SiteConfig,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Render and enable a new site."""
        return self._templated(
            self.sites,
            site.domain,
            self._render_site(site),
            MutationAction.CREATE,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def update_site(
        self,
        site: SiteConfig,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Re-render an existing site from new parameters."""
        return self._templated(
            self.sites,
            site.domain,
            self._render_site(site),
            MutationAction.UPDATE,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def edit_site_raw(
        self,
        domain: str,
        body: str,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Replace a site's body verbatim and make sure it is enabled."""
        return self._templated(
            self.sites,
            domain,
            body,
            MutationAction.RAW_EDIT,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def delete_site(
        self,
        domain: str,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Disable and remove a site."""
        return self._templated(
            self.sites,
            domain,
            None,
            MutationAction.DELETE,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def get_site(self, domain: str) -> SiteConfig:
        """Return the parsed parameters of *domain*."""
        return parse_site(validate_key(domain), self.sites.read(domain))

    def read_site_raw(self, domain: str) -> str:
        """Return the body of *domain* exactly as stored."""
        return self.sites.read(domain)

    def list_sites(self) -> list[SiteConfig]:
        """Return every site with its parsed parameters."""
        return [parse_site(key, self.sites.read(key)) for key in self.sites.list_keys()]

    # Streams ---------------------------------------------------------
    def create_stream(
        self,
        stream: StreamConfig,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Render and enable a new stream."""
        return self._templated(
            self.streams,
            stream.name,
            self._render_stream(stream),
            MutationAction.CREATE,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def update_stream(
        self,
        stream: StreamConfig,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Re-render an existing stream from new parameters."""
        return self._templated(
            self.streams,
            stream.name,
            self._render_stream(stream),
            MutationAction.UPDATE,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def edit_stream_raw(
        self,
        name: str,
        body: str,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Replace a stream's body verbatim and make sure it is enabled."""
        return self._templated(
            self.streams,
            name,
            body,
            MutationAction.RAW_EDIT,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def delete_stream(
        self,
        name: str,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> MutationResult:
        """Disable and remove a stream."""
        return self._templated(
            self.streams,
            name,
            None,
            MutationAction.DELETE,
            op=op,
            raise_on_fatal=raise_on_fatal,
        )

    def get_stream(self, name: str) -> StreamConfig:
        """Return the parsed parameters of *name*."""
        return parse_stream(validate_key(name), self.streams.read(name))

    def read_stream_raw(self, name: str) -> str:
        """Return the body of *name* exactly as stored."""
        return self.streams.read(name)

    def list_streams(self) -> list[StreamConfig]:
        """Return every stream with its parsed parameters."""
        return [parse_stream(key, self.streams.read(key)) for key in self.streams.list_keys()]

    # Service ---------------------------------------------------------
    def reload(self, *, op: OperationScope | None = None) -> tuple[CommandResult, CommandResult]:
        """Validate the live configuration, then reload the service."""
        with self._operation(op, "system reload", None, "service") as scope:
            with self._locked(scope):
                validation, reload_result = self.nginx.validate_and_reload()
            scope.add_step("nginx.validate", status="success", detail=validation.describe())
            scope.add_step("nginx.reload", status="success", detail=reload_result.describe())
            scope.success("Configuration reloaded.", changed=1)
            return validation, reload_result

    def status(self) -> ServiceStatus:
        """Report whether the service runs, its version and whether its config is valid."""
        service = self.config.nginx.service
        report = self.nginx.check()
        return ServiceStatus(
            service=service,
            active=self.systemd.is_active(service),
            version=self.nginx.version(),
            config_valid=report.healthy,
            config_detail=report.details,
        )

    # Backup & restore ------------------------------------------------
    def backup(
        self,
        source_paths: Iterable[Path] | None = None,
        *,
        message: str | None = None,
        op: OperationScope | None = None,
    ) -> Archive:
        """Archive the managed trees into the backups root and record it."""
        with self._operation(op, "system backup", None, "backup") as scope:
            with self._locked(scope):
                roots = list(source_paths) if source_paths is not None else None
                self.backups.ensure_root()
                destination = self._unique_backup_path()
                archive = self.archives.create(roots, destination)
                scope.add_step("archive.create", status="success", detail=str(archive.path))
                checksum = compute_checksum(archive.path)
                write_checksum_file(archive.path, checksum)
                scope.add_step("archive.checksum", status="success", detail=checksum)
                sources = [
                    str(path)
                    for path in (roots if roots is not None else self.archives.managed_roots)
                    if path.exists()
                ]
                backup_id = self.backups.generate_identifier()
                self.backups.record(
                    BackupRecord(
                        id=backup_id,
                        archive_path=archive.path,
                        checksum=checksum,
                        size_bytes=archive.size_bytes,
                        sources=sources,
                        message=message,
                        actor=scope.actor,
                    )
                )
                scope.add_step("backups.index", status="success", detail=backup_id)
            scope.success(
                f"Backup written to {archive.path}.",
                changed=1,
                context={"id": backup_id, "path": str(archive.path)},
            )
            return archive

    def restore(
        self,
        path_or_directory: Path,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> RestoreResult:
        """Restore the managed trees from an archive or the newest one in a directory."""
        with self._operation(op, "system restore", str(path_or_directory), "archive") as scope:
            with self._locked(scope):
                result = self.restorer.restore(path_or_directory, op=scope)
            context = result.to_dict()
            if result.outcome is RestoreOutcome.DONE:
                scope.success(f"Restored {result.archive}.", changed=1, context=context)
            elif result.outcome is RestoreOutcome.FATAL_INCONSISTENT:
                scope.error(
                    "Restore failed and rollback failed; live state is unknown.",
                    errors=[result.detail, result.rollback_error or ""],
                    rc=int(ExitCode.FATAL),
                    context=context,
                )
            else:
                scope.error(
                    f"Restore {result.outcome.value}: {result.detail}",
                    rc=int(
                        ExitCode.PROVIDER
                        if result.outcome is RestoreOutcome.ROLLED_BACK
                        else ExitCode.VALIDATION
                    ),
                    context=context,
                )
            if raise_on_fatal:
                result.raise_for_fatal()
            return result

    def restore_backup(
        self,
        backup_id: str,
        *,
        op: OperationScope | None = None,
        raise_on_fatal: bool = False,
    ) -> RestoreResult:
        """Restore the archive recorded under *backup_id* in the backup index."""
        return self.restore(
            self.backups.resolve_archive(backup_id), op=op, raise_on_fatal=raise_on_fatal
        )

    # ------------------------------------------------------------------
    def _templated(
        self,
        store: ConfigurationStore,
        key: str,
        body: str | None,
        action: MutationAction,
        *,
        op: OperationScope | None,
        raise_on_fatal: bool,
    ) -> MutationResult:
        key = validate_key(key)
        with self._operation(op, f"{store.kind} {action.value}", key, store.kind) as scope:
            with self._locked(scope):
                exists = store.exists(key)
                if action is MutationAction.CREATE and exists:
                    raise UnitExistsError(f"{store.kind} '{key}' already exists.")
                if action is not MutationAction.CREATE and not exists:
                    raise UnitNotFoundError(f"{store.kind} '{key}' not found.")
                result = self.transactions.execute(
                    store, key, action, body, op=scope
                )
            return self._finish(scope, result, raise_on_fatal)

    def _render_site(self, site: SiteConfig) -> str:
        context = site.to_context()
        context["content_root"] = str(self.config.nginx.content_root)
        return self.templates.render_body(site.kind, context)

    def _render_stream(self, stream: StreamConfig) -> str:
        return self.templates.render_body(UnitKind.STREAM, stream.to_context())

    def _unique_backup_path(self) -> Path:
        destination = self.backups.root / backup_filename()
        counter = 1
        while destination.exists():
            stem = destination.name.removesuffix(".tar.gz")
            destination = self.backups.root / f"{stem}_{counter}.tar.gz"
            counter += 1
        return destination

    @contextmanager
    def _operation(
        self,
        op: OperationScope | None,
        command: str,
        key: str | None,
        kind: str,
    ) -> Iterator[OperationScope]:
        if op is not None:
            yield op
            return
        target: dict[str, object] = {"kind": kind}
        if key is not None:
            target["name"] = key
        with self.logger.operation(command, args={"key": key}, target=target) as scope:
            yield scope

    @contextmanager
    def _locked(self, scope: OperationScope) -> Iterator[None]:
        with self.locks.mutation_lock() as handle:
            scope.set_lock_wait_ms(handle.wait_ms)
            yield

    @staticmethod
    def _finish(
        scope: OperationScope,
        result: MutationResult,
        raise_on_fatal: bool,
    ) -> MutationResult:
        context = result.to_dict()
        if result.committed:
            scope.success(
                f"{result.action.value} {result.unit_key} committed.",
                changed=1,
                context=context,
            )
        elif result.rolled_back:
            scope.error(
                f"{result.action.value} {result.unit_key} failed and was rolled back: "
                f"{result.detail}",
                rc=int(ExitCode.PROVIDER),
                context=context,
            )
        else:
            scope.error(
                f"{result.action.value} {result.unit_key} failed and rollback failed: "
                f"{result.rollback_error}",
                errors=[result.detail, result.rollback_error or ""],
                rc=int(ExitCode.FATAL),
                context=context,
            )
        if raise_on_fatal:
            result.raise_for_fatal()
        return result


__all__ = ["Engine", "SITE", "STREAM", "ServiceStatus"]
