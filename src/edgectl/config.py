"""Configuration loader for edgectl.

Configuration values are merged from the following sources, lowest priority
first:

1. Built-in defaults.
2. ``/etc/edgectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``EDGECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export EDGECTL_NGINX__CONF_DIR=/srv/nginx
    export EDGECTL_LOCK_TIMEOUT=5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resolved configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in packaging
    raise RuntimeError(
        "PyYAML is required to load edgectl configuration. Install with "
        "`pip install edgectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "EDGECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NginxConfig:
    """Locations and binaries of the managed nginx server."""

    conf_dir: Path = Path("/etc/nginx")
    content_root: Path = Path("/var/www/html")
    nginx_bin: str = "/usr/sbin/nginx"
    service: str = "nginx"

    @property
    def sites_available(self) -> Path:
        """Directory holding the available site bodies."""
        return self.conf_dir / "sites-available"

    @property
    def sites_enabled(self) -> Path:
        """Directory holding the site activation links."""
        return self.conf_dir / "sites-enabled"

    @property
    def streams_available(self) -> Path:
        """Directory holding the available stream bodies."""
        return self.conf_dir / "streams-available"

    @property
    def streams_enabled(self) -> Path:
        """Directory holding the stream activation links."""
        return self.conf_dir / "streams-enabled"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "conf_dir": str(self.conf_dir),
            "content_root": str(self.content_root),
            "nginx_bin": self.nginx_bin,
            "service": self.service,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage locations."""

    root: Path
    index: Path
    snapshot_dir: Path = Path("/tmp")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "snapshot_dir": str(self.snapshot_dir),
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Service manager binaries."""

    systemctl_bin: str = "systemctl"
    pkill_bin: str = "pkill"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin, "pkill_bin": self.pkill_bin}


@dataclass(frozen=True)
class CommandsConfig:
    """External command execution settings."""

    timeout: float | None = None
    tar_bin: str = "tar"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "tar_bin": self.tar_bin}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for edgectl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    nginx: NginxConfig
    backups: BackupConfig
    systemd: SystemdConfig
    commands: CommandsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "nginx": self.nginx.to_dict(),
            "backups": self.backups.to_dict(),
            "systemd": self.systemd.to_dict(),
            "commands": self.commands.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/edgectl/config.yml",
    "logs_dir": "/var/log/edgectl",
    "runtime_dir": "/run/edgectl",
    "templates_dir": "/etc/edgectl/templates",
    "lock_timeout": 30.0,
    "nginx": {
        "conf_dir": "/etc/nginx",
        "content_root": "/var/www/html",
        "nginx_bin": "/usr/sbin/nginx",
        "service": "nginx",
    },
    "backups": {
        "root": "/root/nginx_backups",
        "index": None,  # derived from root when absent
        "snapshot_dir": "/tmp",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "pkill_bin": "pkill",
    },
    "commands": {
        "timeout": None,
        "tar_bin": "tar",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "nginx": {"conf_dir", "content_root", "nginx_bin", "service"},
    "backups": {"root", "index", "snapshot_dir"},
    "systemd": {"systemctl_bin", "pkill_bin"},
    "commands": {"timeout", "tar_bin"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(merged["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    service = _as_dict(raw.get("nginx"), "nginx").get("service")
    if service is not None and not str(service).strip():
        raise ConfigError("nginx.service must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    nginx_mapping = _as_dict(raw.get("nginx"), "nginx")
    nginx = NginxConfig(
        conf_dir=_to_path(nginx_mapping.get("conf_dir", "/etc/nginx")),
        content_root=_to_path(nginx_mapping.get("content_root", "/var/www/html")),
        nginx_bin=str(nginx_mapping.get("nginx_bin", "/usr/sbin/nginx")),
        service=str(nginx_mapping.get("service", "nginx")).strip(),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/root/nginx_backups"))
    index_value = backups_mapping.get("index")
    backups = BackupConfig(
        root=backups_root,
        index=_to_path(index_value) if index_value else backups_root / "backups.json",
        snapshot_dir=_to_path(backups_mapping.get("snapshot_dir", "/tmp")),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        pkill_bin=str(systemd_mapping.get("pkill_bin", "pkill")),
    )

    commands_mapping = _as_dict(raw.get("commands"), "commands")
    timeout_value = commands_mapping.get("timeout")
    commands = CommandsConfig(
        timeout=(
            None
            if timeout_value is None
            else _expect_positive_float(timeout_value, "commands.timeout", default=60.0)
        ),
        tar_bin=str(commands_mapping.get("tar_bin", "tar")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        nginx=nginx,
        backups=backups,
        systemd=systemd,
        commands=commands,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
        elif isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
        else:
            raise ConfigError(
                "Environment overrides conflict with existing scalar value at "
                f"{'.'.join(path)}"
            )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "CommandsConfig",
    "ConfigError",
    "NginxConfig",
    "SystemdConfig",
    "load_config",
]
