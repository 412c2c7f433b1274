"""Error taxonomy for hashi-up"""

from typing import Optional

from .reconcile import (
    ChecksumMismatchError,
    MissingDependencyError,
    MissingServiceSupervisorError,
    ReconcileError,
    UnsupportedArchitectureError,
)


class HashiUpError(Exception):
    """Base class for every error surfaced to the CLI"""


class ConfigurationError(HashiUpError):
    """Invalid or partial option combination, detected before any connection"""


class VersionLookupError(HashiUpError):
    """Latest version could not be determined and none was supplied"""


class TargetConnectionError(HashiUpError, ConnectionError):
    """SSH dial or authentication failure"""


class UploadError(HashiUpError):
    """An artifact could not be written to the target"""

    def __init__(self, destination: str, reason: str, label: str = ""):
        self.destination = destination
        self.reason = reason
        self.label = label
        if label:
            super().__init__(f"error received during upload {label} to {destination}: {reason}")
        else:
            super().__init__(f"upload to {destination} failed: {reason}")


class CommandError(HashiUpError):
    """A command exited with a non-zero status"""

    def __init__(self, command: str, exit_code: Optional[int], output: str = "", context: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.context = context
        message = f"command '{command}' exited with status {exit_code}"
        if output.strip():
            message += f": {output.strip()}"
        if context:
            message = f"{context}: {message}"
        super().__init__(message)


class RemoteExecutionError(CommandError):
    """The reconciliation routine failed on the target"""


__all__ = [
    "HashiUpError",
    "ConfigurationError",
    "VersionLookupError",
    "TargetConnectionError",
    "UploadError",
    "CommandError",
    "RemoteExecutionError",
    "ReconcileError",
    "UnsupportedArchitectureError",
    "MissingServiceSupervisorError",
    "MissingDependencyError",
    "ChecksumMismatchError",
]
