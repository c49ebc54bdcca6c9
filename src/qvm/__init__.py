"""qvm: lifecycle management for locally-run QEMU virtual machines."""

from .config_store import load_config, save_config
from .errors import (
    AlreadyExistsError,
    AlreadyRunningError,
    BinaryNotFoundError,
    ConfigParseError,
    ConfigValidationError,
    DiskNotFoundError,
    DiskProvisionError,
    FirmwareNotFoundError,
    NotFoundError,
    NotRunningError,
    QVMError,
    SchemaVersionError,
    SpawnError,
    StopTimeoutError,
    VMIOError,
    VMLockedError,
    VMNotFoundError,
    VMRunningError,
)
from .liveness import ProcessChecker, PsutilChecker, SignalChecker, is_running
from .logging_config import configure_logging
from .models import (
    Architecture,
    BridgedNetwork,
    CocoaDisplay,
    ConsoleMode,
    CreateRequest,
    DisplayMode,
    HeadlessDisplay,
    NetworkMode,
    PortForward,
    SharedNetwork,
    SpiceDisplay,
    StartOptions,
    UserNetwork,
    VMConfig,
    VncDisplay,
)
from .paths import resolve_under_root
from .qemu_driver import build_vm_command
from .settings import QVMSettings
from .vm_manager import OperationResult, VMManager, VMStatus

__version__ = "0.1.0"

__all__ = [
    "AlreadyExistsError",
    "AlreadyRunningError",
    "Architecture",
    "BinaryNotFoundError",
    "BridgedNetwork",
    "CocoaDisplay",
    "ConfigParseError",
    "ConfigValidationError",
    "ConsoleMode",
    "CreateRequest",
    "DiskNotFoundError",
    "DiskProvisionError",
    "DisplayMode",
    "FirmwareNotFoundError",
    "HeadlessDisplay",
    "NetworkMode",
    "NotFoundError",
    "NotRunningError",
    "OperationResult",
    "PortForward",
    "ProcessChecker",
    "PsutilChecker",
    "QVMError",
    "QVMSettings",
    "SchemaVersionError",
    "SharedNetwork",
    "SignalChecker",
    "SpawnError",
    "SpiceDisplay",
    "StartOptions",
    "StopTimeoutError",
    "UserNetwork",
    "VMConfig",
    "VMIOError",
    "VMLockedError",
    "VMManager",
    "VMNotFoundError",
    "VMRunningError",
    "VMStatus",
    "VncDisplay",
    "build_vm_command",
    "configure_logging",
    "is_running",
    "load_config",
    "resolve_under_root",
    "save_config",
]
