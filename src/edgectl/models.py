"""Data models for configuration units and their parsed parameters."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

SITE_TYPE_MARKER = "site_type:"


class UnitKind(str, Enum):
    """Kind of a configuration unit."""

    PROXY = "proxy"
    STATIC = "static"
    LOAD_BALANCED = "lb"
    REDIRECT = "redirect"
    STREAM = "stream"

    @property
    def is_site(self) -> bool:
        """Return ``True`` for the site kinds (everything but streams)."""
        return self is not UnitKind.STREAM

    @classmethod
    def parse(cls, value: str) -> UnitKind:
        """Return the kind named by *value* or raise ``ValueError``."""
        normalised = value.strip().lower()
        for kind in cls:
            if kind.value == normalised:
                return kind
        allowed = ", ".join(kind.value for kind in cls)
        raise ValueError(f"Unsupported unit kind '{value}'. Allowed: {allowed}.")


@dataclass(slots=True)
class SiteConfig:
    """Parameters describing a site unit."""

    domain: str
    kind: UnitKind = UnitKind.PROXY
    backend_ip: str = ""
    backend_port: int = 0
    backends: list[str] = field(default_factory=list)
    target_url: str = ""

    def to_context(self) -> dict[str, object]:
        """Return the template rendering context for this site."""
        return {
            "domain": self.domain,
            "site_type": self.kind.value,
            "backend_ip": self.backend_ip,
            "backend_port": self.backend_port,
            "backends": list(self.backends),
            "target_url": self.target_url,
            "upstream_name": self.domain.replace(".", "_"),
        }

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "type": self.kind.value,
            "backend_ip": self.backend_ip,
            "backend_port": self.backend_port,
            "backends": list(self.backends),
            "target_url": self.target_url,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> SiteConfig:
        """Build a site from loosely typed input (CLI/JSON payloads)."""
        domain = str(data.get("domain", "")).strip()
        if not domain:
            raise ValueError("Site domain must be a non-empty string.")
        kind = UnitKind.parse(str(data.get("type", data.get("kind", "proxy"))))
        if kind is UnitKind.STREAM:
            raise ValueError("Streams are not sites; use a stream definition instead.")
        backends_raw = data.get("backends") or []
        if isinstance(backends_raw, str):
            backends = [item.strip() for item in backends_raw.split(",") if item.strip()]
        else:
            backends = [str(item).strip() for item in backends_raw if str(item).strip()]
        return cls(
            domain=domain,
            kind=kind,
            backend_ip=str(data.get("backend_ip", "") or ""),
            backend_port=int(data.get("backend_port", 0) or 0),
            backends=backends,
            target_url=str(data.get("target_url", "") or ""),
        )


@dataclass(slots=True)
class StreamConfig:
    """Parameters describing a TCP/UDP stream forwarding unit."""

    name: str
    listen_port: int = 0
    target: str = ""

    def to_context(self) -> dict[str, object]:
        """Return the template rendering context for this stream."""
        return {"name": self.name, "listen_port": self.listen_port, "target": self.target}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "listen_port": self.listen_port, "target": self.target}


def extract_site_type(body: str) -> str:
    """Return the ``# site_type:`` marker value, or an empty string."""
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith("#") and SITE_TYPE_MARKER in stripped:
            return stripped.split(SITE_TYPE_MARKER, 1)[1].strip()
    return ""


def infer_site_kind(body: str) -> UnitKind:
    """Infer the kind of a site from its raw configuration *body*."""
    marker = extract_site_type(body)
    if marker:
        try:
            kind = UnitKind.parse(marker)
        except ValueError:
            return UnitKind.STATIC
        return kind if kind.is_site else UnitKind.STATIC
    if "proxy_pass" in body:
        return UnitKind.LOAD_BALANCED if "upstream" in body else UnitKind.PROXY
    if "return 301" in body:
        return UnitKind.REDIRECT
    return UnitKind.STATIC


def parse_site(domain: str, body: str) -> SiteConfig:
    """Parse a site body back into its parameters."""
    config = SiteConfig(domain=domain, kind=infer_site_kind(body))
    if config.kind is UnitKind.LOAD_BALANCED:
        config.backends = _parse_backends(body)
    elif config.kind is UnitKind.PROXY:
        config.backend_ip, config.backend_port = _parse_proxy_backend(body)
    elif config.kind is UnitKind.REDIRECT:
        config.target_url = _parse_redirect_target(body)
    return config


def parse_stream(name: str, body: str) -> StreamConfig:
    """Parse a stream body back into its parameters."""
    config = StreamConfig(name=name)
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith("listen "):
            value = stripped[len("listen ") :].rstrip(";").split()[0]
            try:
                config.listen_port = int(value)
            except ValueError as exc:
                raise ValueError(f"Unable to parse stream listen port: {value!r}") from exc
        elif stripped.startswith("server ") and stripped.endswith(";"):
            config.target = stripped[len("server ") : -1].strip()
    return config


def _parse_backends(body: str) -> list[str]:
    backends: list[str] = []
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith("server ") and stripped.endswith(";"):
            address = stripped[len("server ") : -1].strip()
            if address:
                backends.append(address)
    return backends


def _parse_proxy_backend(body: str) -> tuple[str, int]:
    prefix = "proxy_pass http://"
    index = body.find(prefix)
    if index == -1:
        return "", 0
    remainder = body[index + len(prefix) :]
    end = remainder.find(";")
    if end == -1:
        return "", 0
    host, _, port = remainder[:end].partition(":")
    try:
        return host, int(port.rstrip("/")) if port else 0
    except ValueError:
        return host, 0


def _parse_redirect_target(body: str) -> str:
    prefix = "return 301 "
    index = body.find(prefix)
    if index == -1:
        return ""
    remainder = body[index + len(prefix) :]
    end = remainder.find(";")
    return remainder[:end] if end != -1 else ""


__all__ = [
    "SiteConfig",
    "StreamConfig",
    "UnitKind",
    "extract_site_type",
    "infer_site_kind",
    "parse_site",
    "parse_stream",
]
