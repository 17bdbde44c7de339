"""Project-specific exception types."""

from __future__ import annotations


class CloudVMError(RuntimeError):
    """Base error for domain-level cloudvm failures."""


class ValidationError(CloudVMError):
    """Raised when one or more VM fields are malformed."""

    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__('; '.join(self.problems))


class NotFoundError(CloudVMError):
    """Raised when a VM record or one of its artifacts is missing."""


class CorruptRecordError(NotFoundError):
    """Raised when a VM record exists but cannot be parsed."""


class DownloadFailure(CloudVMError):
    """Raised when the base image could not be fetched."""


class ResizeFailure(CloudVMError):
    """Raised when qemu-img refuses to resize a disk image."""


class SeedBuildError(CloudVMError):
    """Raised when the cloud-init seed image could not be built."""


class VMRunningError(CloudVMError):
    """Raised when an operation requires the VM to be stopped."""


class ConfirmationDenied(CloudVMError):
    """Raised when a destructive operation was not confirmed."""
