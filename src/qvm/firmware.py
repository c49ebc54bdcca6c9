"""UEFI firmware discovery."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import structlog

from .arch_defaults import defaults_for
from .errors import FirmwareNotFoundError
from .models import Architecture

logger = structlog.get_logger()

WELL_KNOWN_SHARE_DIRS = (
    Path("/run/current-system/sw/share/qemu"),
    Path("/nix/var/nix/profiles/system/sw/share/qemu"),
    Path("/opt/homebrew/share/qemu"),
    Path("/usr/local/share/qemu"),
    Path("/usr/share/qemu"),
    Path("/usr/share/OVMF"),
    Path("/usr/share/AAVMF"),
    Path("/usr/share/edk2/ovmf"),
    Path("/usr/share/edk2/aarch64"),
)
NIX_STORE = Path("/nix/store")


def candidate_dirs(engine_binary: Optional[Path] = None) -> List[Path]:
    """Directories to search, the engine's own ``share/qemu`` first."""
    dirs: List[Path] = []
    if engine_binary is not None:
        real = Path(os.path.realpath(engine_binary))
        dirs.append(real.parent.parent / "share" / "qemu")
    dirs.extend(WELL_KNOWN_SHARE_DIRS)
    if NIX_STORE.is_dir():
        dirs.extend(sorted(NIX_STORE.glob("*-qemu-*/share/qemu")))
    return dirs


def locate_firmware(
    arch: Architecture,
    *,
    engine_binary: Optional[Path] = None,
    search_dirs: Optional[Iterable[Path]] = None,
) -> Tuple[Path, Path]:
    """Return (code, vars template) for ``arch`` from the first directory holding both."""
    dirs = list(search_dirs) if search_dirs is not None else candidate_dirs(engine_binary)
    pairs = defaults_for(arch).firmware_pairs
    for directory in dirs:
        if not directory.is_dir():
            continue
        for code_name, vars_name in pairs:
            code = directory / code_name
            vars_template = directory / vars_name
            if code.is_file() and vars_template.is_file():
                return code, vars_template
    raise FirmwareNotFoundError(
        f"UEFI firmware for {Architecture(arch).value} not found in: "
        + ", ".join(str(d) for d in dirs)
    )


def locate_firmware_or_default(
    arch: Architecture,
    *,
    engine_binary: Optional[Path] = None,
    search_dirs: Optional[Iterable[Path]] = None,
) -> Tuple[Path, Path]:
    try:
        return locate_firmware(arch, engine_binary=engine_binary, search_dirs=search_dirs)
    except FirmwareNotFoundError as exc:
        fallback = defaults_for(arch).fallback_firmware
        logger.warning(
            "Firmware not found; using default paths",
            arch=Architecture(arch).value,
            error=str(exc),
            code=str(fallback[0]),
            vars_template=str(fallback[1]),
        )
        return fallback
