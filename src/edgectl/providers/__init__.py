"""Provider interfaces for edgectl."""
from __future__ import annotations

from .nginx import HealthReport, NginxError, NginxProvider, ReloadFailure, ValidationFailure
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "HealthReport",
    "NginxError",
    "NginxProvider",
    "ReloadFailure",
    "SystemdError",
    "SystemdProvider",
    "ValidationFailure",
]
