"""Exception types raised by the harness."""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for all harness errors."""


class ConstructionError(HarnessError):
    """Invalid or incomplete device configuration, raised before any process starts."""


class LaunchError(HarnessError):
    """The hypervisor process could not be started."""


class AlreadyRunningError(LaunchError):
    """Start was called while the instance still owns a process."""


class StopError(HarnessError):
    """The hypervisor process could not be reaped."""


class ReadinessTimeout(HarnessError):
    """The device did not answer the readiness probe in time."""

    def __init__(self, name: str, timeout: float, attempts: int):
        self.name = name
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(
            f"timeout waiting for {name} to be ready after {timeout:g}s "
            f"({attempts} probe attempts)"
        )


class RemoteCommandError(HarnessError):
    """A remote command failed.

    exit_status is None when the transport failed before the command
    produced an exit status. output holds whatever the command printed,
    so callers that tolerate failure can still inspect it.
    """

    def __init__(
        self,
        command: str,
        message: str,
        exit_status: int | None = None,
        output: str = "",
    ):
        self.command = command
        self.exit_status = exit_status
        self.output = output
        super().__init__(message)


class TransferError(HarnessError):
    """A file copy to the remote host failed or was incomplete."""

    def __init__(self, message: str, written: int | None = None, expected: int | None = None):
        self.written = written
        self.expected = expected
        super().__init__(message)


class VerificationError(HarnessError):
    """Re-probing after an action showed it did not converge."""


class DownloadError(HarnessError):
    """A host-side dependency download failed."""


class StepError(HarnessError):
    """A fatal lifecycle step failed."""

    def __init__(self, component: str, step: str, cause: BaseException):
        self.component = component
        self.step = step
        self.cause = cause
        super().__init__(f"{component}: {step}: {cause}")
