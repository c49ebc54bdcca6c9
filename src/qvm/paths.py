"""Path helpers for VM directories and the files inside them."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from .errors import VMNotFoundError

VM_DIR_SUFFIX = ".qvm"
CONFIG_FILENAME = "vm.json"
PID_FILENAME = "vm.pid"
LOCK_FILENAME = ".lock"
ENGINE_LOG_FILENAME = "qemu.log"
SERIAL_LOG_FILENAME = "serial.log"

PathLike = Union[str, Path]


def resolve_under_root(root: PathLike, candidate: PathLike) -> Path:
    """Return ``candidate`` unchanged if absolute, otherwise joined onto ``root``."""
    candidate = Path(candidate)
    if candidate.is_absolute():
        return candidate
    return Path(root) / candidate


def qvm_home(base: Optional[PathLike] = None) -> Path:
    if base is not None:
        return Path(base).expanduser()
    return Path.home() / "qvm"


def vm_dir_for(home: PathLike, name: str) -> Path:
    return Path(home) / f"{name}{VM_DIR_SUFFIX}"


def conf_path(root: PathLike) -> Path:
    return Path(root) / CONFIG_FILENAME


def pid_path(root: PathLike) -> Path:
    return Path(root) / PID_FILENAME


def lock_path(root: PathLike) -> Path:
    return Path(root) / LOCK_FILENAME


def find_vm_dir(home: PathLike, name: str) -> Path:
    """Locate an existing VM directory, raising if it is absent."""
    vm_dir = vm_dir_for(home, name)
    if not vm_dir.is_dir():
        raise VMNotFoundError(f"VM '{name}' not found in {home}", vm=name, path=vm_dir)
    return vm_dir
