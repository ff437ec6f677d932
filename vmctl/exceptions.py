"""Custom exceptions for vmctl."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors.

    ``details`` carries captured tool output or a failure report that the CLI
    prints underneath the error line.
    """

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.details = details


class ImageNotFound(ManagerError):
    """The requested base image is not present in the local image store."""


class VMNotFound(ManagerError):
    """No persisted state exists for the requested VM."""


class TemplateNotFound(ManagerError):
    """No template with the requested name exists."""


class AlreadyExists(ManagerError):
    """A non-deleted VM with the same name already exists."""


class InvalidState(ManagerError):
    """The requested transition is not allowed from the VM's current status."""


class NoCredentialsAvailable(ManagerError):
    """Every SSH authentication method was exhausted."""


class HypervisorLaunchFailed(ManagerError):
    """The QEMU process could not be started or exited immediately."""


class HypervisorExited(HypervisorLaunchFailed):
    """QEMU was spawned but exited before the launch settled."""


class ReadinessTimeout(ManagerError):
    """No readiness signal was observed within the allotted budget."""


class CanceledByCaller(ManagerError):
    """The caller canceled a blocking operation."""


class DiskOperationFailed(ManagerError):
    """qemu-img or the ISO packer returned an error."""


class SessionError(ManagerError):
    """The terminal multiplexer rejected a session operation."""
