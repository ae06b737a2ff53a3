"""Errors raised while provisioning a host."""
from typing import Optional


class ProvisionError(Exception):
    """Base class for fatal provisioning errors."""

    exit_code = 1


class UnsupportedEnvironment(ProvisionError):
    """The host OS or architecture is not one we know how to provision."""


class PrivilegeError(ProvisionError):
    """The tool was not run with root privileges."""


class StepExecutionError(ProvisionError):
    """A wrapped command returned non-zero (or a file could not be written)."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result

    @property
    def exit_code(self) -> int:
        code: Optional[int] = getattr(self.result, 'exit_code', None)
        if code is None or not 0 < code < 256:
            return 1
        return code

    @property
    def stderr(self) -> str:
        return getattr(self.result, 'stderr', '') or ''


class NetworkFetchError(StepExecutionError):
    """Downloading a binary, key or manifest failed."""


class VerificationError(ProvisionError):
    """The cluster did not become ready before the timeout."""
