"""Exceptions raised while preparing and supervising agent containers."""

from __future__ import annotations


class MountValidationError(Exception):
    """A single additional mount was rejected. The mount is dropped, the launch continues."""


class AllowlistUnavailable(Exception):
    """The mount allowlist is missing or unreadable. Every additional mount is denied."""


class ContainerError(Exception):
    """Base class for failures of a container run."""

    def __init__(self, message: str, container_name: str | None = None) -> None:
        super().__init__(message)
        self.container_name = container_name


class ContainerTimeout(ContainerError):
    """The run exceeded its hard timeout and was stopped."""


class OutputOverflow(ContainerError):
    """The container wrote more than CONTAINER_MAX_OUTPUT_SIZE bytes to stdout."""


class ContainerFailure(ContainerError):
    """The container exited non-zero or could not be started."""

    def __init__(self, message: str, container_name: str | None = None, exit_code: int | None = None) -> None:
        super().__init__(message, container_name)
        self.exit_code = exit_code
