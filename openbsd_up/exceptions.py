"""Custom exceptions for openbsd-up."""


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code or 1


class NotFoundError(ManagerError):
    """No VM or image record matches the requested name or ID."""


class LaunchError(ManagerError):
    """The hypervisor process could not be spawned."""


class StopCommandError(ManagerError):
    """Terminating the hypervisor process failed."""


class StoreError(ManagerError):
    """The state database could not be read or written."""


class CommandError(ManagerError):
    """An external helper command (curl, qemu-img, oras, ...) failed."""
