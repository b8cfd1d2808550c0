"""Tests for the systemd provider."""
from __future__ import annotations

from collections.abc import Sequence

import pytest

from edgectl.providers.systemd import SystemdError, SystemdProvider
from edgectl.runner import CommandResult, CommandRunner


class DummyRunner(CommandRunner):
    """Runner returning a fixed result for every command."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy runner."""
        super().__init__()
        self.calls: list[list[str]] = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        """Record *args* and return the configured result."""
        command = [str(item) for item in args]
        self.calls.append(command)
        return CommandResult(
            args=command, returncode=self.returncode, stdout=self.stdout, stderr=self.stderr
        )


@pytest.mark.parametrize("command", ["start", "stop", "reload"])
def test_service_commands_invoke_systemctl(command: str) -> None:
    """Lifecycle commands map onto ``systemctl <command> <service>``."""
    runner = DummyRunner()
    provider = SystemdProvider(runner=runner, systemctl_bin="/bin/systemctl")

    getattr(provider, command)("nginx")

    assert runner.calls == [["/bin/systemctl", command, "nginx"]]


def test_failure_raises_systemd_error() -> None:
    """A non-zero exit raises with the diagnostic text."""
    runner = DummyRunner(returncode=5, stderr="Unit nginx.service not loaded.")
    provider = SystemdProvider(runner=runner)

    with pytest.raises(SystemdError, match="not loaded"):
        provider.stop("nginx")


@pytest.mark.parametrize(("stdout", "expected"), [("active\n", True), ("inactive\n", False)])
def test_is_active(stdout: str, expected: bool) -> None:
    """``is_active`` reads the state word and never raises."""
    runner = DummyRunner(returncode=0 if expected else 3, stdout=stdout)

    assert SystemdProvider(runner=runner).is_active("nginx") is expected


@pytest.mark.parametrize("returncode", [0, 1])
def test_force_kill_tolerates_no_match(returncode: int) -> None:
    """``pkill`` exiting 1 (nothing matched) is not an error."""
    runner = DummyRunner(returncode=returncode)

    SystemdProvider(runner=runner).force_kill("nginx")

    assert runner.calls == [["pkill", "-9", "nginx"]]


def test_force_kill_reports_real_failures() -> None:
    """Other ``pkill`` exit codes raise SystemdError."""
    runner = DummyRunner(returncode=3, stderr="pkill: bad option")

    with pytest.raises(SystemdError):
        SystemdProvider(runner=runner).force_kill("nginx")
