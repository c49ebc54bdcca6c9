"""Exception hierarchy for qvm lifecycle operations."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class QVMError(Exception):
    """Base exception for qvm errors."""

    def __init__(self, message: str, *, vm: Optional[str] = None):
        super().__init__(message)
        self.vm = vm


class NotFoundError(QVMError):
    """Raised when a VM or one of its resources does not exist."""

    def __init__(
        self,
        message: str,
        *,
        vm: Optional[str] = None,
        path: Optional[Union[str, Path]] = None,
    ):
        super().__init__(message, vm=vm)
        self.path = Path(path) if path is not None else None


class VMNotFoundError(NotFoundError):
    """Raised when no VM directory or configuration exists for a name."""


class DiskNotFoundError(NotFoundError):
    """Raised when a VM's disk image is missing at start time."""


class BinaryNotFoundError(NotFoundError):
    """Raised when the engine binary is not on the search path."""


class FirmwareNotFoundError(NotFoundError):
    """Raised when a firmware code or vars template file is missing."""


class AlreadyExistsError(QVMError):
    """Raised when creating a VM whose name or directory is taken."""


class AlreadyRunningError(QVMError):
    """Raised when starting a VM that already has a live engine process."""


class NotRunningError(QVMError):
    """Reported when stopping a VM that is not running."""


class VMRunningError(QVMError):
    """Raised when a destructive operation is attempted on a running VM."""


class ConfigValidationError(QVMError):
    """Raised when a configuration field is malformed or inconsistent."""


class ConfigParseError(QVMError):
    """Raised when a configuration document cannot be parsed."""


class SchemaVersionError(ConfigParseError):
    """Raised when a configuration document is newer than supported."""

    def __init__(self, message: str, *, vm: Optional[str] = None, found: int, supported: int):
        super().__init__(message, vm=vm)
        self.found = found
        self.supported = supported


class VMIOError(QVMError):
    """Raised on filesystem or process-spawn failures."""


class SpawnError(VMIOError):
    """Raised when the engine process fails to start or exits immediately."""


class DiskProvisionError(VMIOError):
    """Raised when the disk provisioner cannot create an image."""


class StopTimeoutError(QVMError):
    """Raised when the engine ignores a graceful stop within the grace period."""


class VMLockedError(QVMError):
    """Raised when another invocation holds the VM directory lock."""
