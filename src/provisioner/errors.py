"""Error taxonomy for the provisioning run.

Every failure is raised as a ``ProvisioningError`` carrying an ``ErrorKind``.
The kind decides the process exit code, which is applied only at the CLI
boundary in ``provisioner.main``.
"""

from enum import Enum
from typing import Optional, Sequence


class ErrorKind(str, Enum):
    """Failure categories and their process exit codes."""

    PRIVILEGE = "privilege"
    VALIDATION = "validation"
    CONNECTIVITY = "connectivity"
    COLLABORATOR = "collaborator"
    INTERRUPTED = "interrupted"
    ALREADY_RUNNING = "already_running"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    ErrorKind.PRIVILEGE: 2,
    ErrorKind.VALIDATION: 2,
    ErrorKind.CONNECTIVITY: 3,
    ErrorKind.COLLABORATOR: 1,
    ErrorKind.INTERRUPTED: 130,
    ErrorKind.ALREADY_RUNNING: 1,
}


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""

    kind: ErrorKind = ErrorKind.COLLABORATOR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def exit_code(self) -> int:
        return self.kind.exit_code


class PrivilegeError(ProvisioningError):
    kind = ErrorKind.PRIVILEGE


class ValidationError(ProvisioningError):
    kind = ErrorKind.VALIDATION


class ConnectivityError(ProvisioningError):
    kind = ErrorKind.CONNECTIVITY


class CollaboratorError(ProvisioningError):
    kind = ErrorKind.COLLABORATOR


class CommandError(CollaboratorError):
    """An external command exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        command: Sequence[str] = (),
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(CommandError):
    """An external command exceeded its timeout and was killed."""


class AlreadyRunningError(ProvisioningError):
    kind = ErrorKind.ALREADY_RUNNING

    def __init__(self, pid: int):
        super().__init__(f"ALREADY_RUNNING: provisioning already running with PID {pid}")
        self.pid = pid
