"""Nginx provider: configuration self-check and hot reload.

``test_config`` is the health validator (``nginx -t``) and ``reload`` the
reload controller. Reload never validates on its own; callers run the check
first.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..runner import CommandResult, CommandRunner
from .systemd import SystemdError, SystemdProvider


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""

    def __init__(self, message: str, details: str = "") -> None:
        """Store the tool's diagnostic *details* alongside the message."""
        super().__init__(message)
        self.details = details or message


class ValidationFailure(NginxError):
    """The configuration on disk is rejected by ``nginx -t``."""


class ReloadFailure(NginxError):
    """The configuration is valid but the service refused to reload."""


@dataclass(slots=True, frozen=True)
class HealthReport:
    """Outcome of the nginx self-check."""

    healthy: bool
    details: str = ""


@dataclass(slots=True)
class NginxProvider:
    """Validate and reload the nginx configuration."""

    runner: CommandRunner
    systemd: SystemdProvider
    nginx_bin: str = "/usr/sbin/nginx"
    service: str = "nginx"

    def test_config(self) -> CommandResult:
        """Run ``nginx -t``; raise :class:`ValidationFailure` when it fails."""
        result = self._run_nginx(["-t"])
        if not result.ok:
            details = result.diagnostic()
            raise ValidationFailure(
                f"{self.nginx_bin} -t failed (exit {result.returncode}): {details}",
                details,
            )
        return result

    def check(self) -> HealthReport:
        """Return the self-check verdict without raising."""
        try:
            result = self.test_config()
        except ValidationFailure as exc:
            return HealthReport(healthy=False, details=exc.details)
        return HealthReport(healthy=True, details=result.diagnostic())

    def reload(self) -> CommandResult:
        """Reload the running service; raise :class:`ReloadFailure` on failure."""
        try:
            return self.systemd.reload(self.service)
        except SystemdError as exc:
            raise ReloadFailure(f"Reload of {self.service} failed: {exc}", str(exc)) from exc

    def validate_and_reload(self) -> tuple[CommandResult, CommandResult]:
        """Run the combined commit attempt: self-check, then reload."""
        validation = self.test_config()
        return validation, self.reload()

    def version(self) -> str:
        """Return the ``nginx -v`` banner (nginx prints it on stderr)."""
        result = self._run_nginx(["-v"])
        return (result.stderr or result.stdout).strip()

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> CommandResult:
        return self.runner.run([self.nginx_bin, *args])


__all__ = [
    "HealthReport",
    "NginxError",
    "NginxProvider",
    "ReloadFailure",
    "ValidationFailure",
]
