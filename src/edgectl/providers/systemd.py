"""Systemd provider for controlling the managed nginx service."""
from __future__ import annotations

from dataclasses import dataclass

from ..runner import CommandResult, CommandRunner


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Start, stop, reload and query a systemd service."""

    runner: CommandRunner
    systemctl_bin: str = "systemctl"
    pkill_bin: str = "pkill"

    def start(self, service: str) -> CommandResult:
        """Start *service*."""
        return self._systemctl("start", service)

    def stop(self, service: str) -> CommandResult:
        """Stop *service*."""
        return self._systemctl("stop", service)

    def reload(self, service: str) -> CommandResult:
        """Ask *service* to reload its configuration."""
        return self._systemctl("reload", service)

    def is_active(self, service: str) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports ``active``."""
        result = self._systemctl("is-active", service, check=False)
        return result.stdout.strip() == "active"

    def force_kill(self, process_name: str) -> CommandResult:
        """Send SIGKILL to every process called *process_name*.

        ``pkill`` exits 1 when nothing matched, which is not a failure here.
        """
        result = self.runner.run([self.pkill_bin, "-9", process_name])
        if result.returncode not in (0, 1):
            raise SystemdError(
                f"{self.pkill_bin} -9 {process_name} failed "
                f"(exit {result.returncode}): {result.diagnostic()}"
            )
        return result

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, service: str, *, check: bool = True) -> CommandResult:
        result = self.runner.run([self.systemctl_bin, command, service])
        if check and not result.ok:
            raise SystemdError(
                f"{self.systemctl_bin} {command} {service} failed "
                f"(exit {result.returncode}): {result.diagnostic()}"
            )
        return result


__all__ = ["SystemdError", "SystemdProvider"]
