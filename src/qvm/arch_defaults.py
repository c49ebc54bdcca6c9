"""Per-architecture defaults consulted when a VM is created."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from .models import Architecture


@dataclass(frozen=True)
class ArchDefaults:
    engine_binary: str
    machine: str
    accel: str
    cpu_model: str
    gpu_device: str
    # (code, vars template) filename pairs, most preferred first.
    firmware_pairs: Tuple[Tuple[str, str], ...]
    fallback_firmware: Tuple[Path, Path]


ARCH_DEFAULTS: Dict[Architecture, ArchDefaults] = {
    Architecture.ARM64: ArchDefaults(
        engine_binary="qemu-system-aarch64",
        machine="virt,gic-version=3",
        accel="hvf",
        cpu_model="host",
        gpu_device="virtio-gpu-pci",
        firmware_pairs=(
            ("edk2-aarch64-code.fd", "edk2-arm-vars.fd"),
            ("edk2-aarch64-code.fd", "edk2-aarch64-vars.fd"),
            ("AAVMF_CODE.fd", "AAVMF_VARS.fd"),
        ),
        fallback_firmware=(
            Path("/run/current-system/sw/share/qemu/edk2-aarch64-code.fd"),
            Path("/run/current-system/sw/share/qemu/edk2-arm-vars.fd"),
        ),
    ),
    Architecture.X86_64: ArchDefaults(
        engine_binary="qemu-system-x86_64",
        machine="q35",
        accel="kvm",
        cpu_model="qemu64",
        gpu_device="virtio-vga",
        firmware_pairs=(
            ("OVMF_CODE.fd", "OVMF_VARS.fd"),
            ("edk2-x86_64-code.fd", "edk2-x86_64-vars.fd"),
            ("edk2-x86_64-code.fd", "edk2-i386-vars.fd"),
        ),
        fallback_firmware=(
            Path("/run/current-system/sw/share/qemu/OVMF_CODE.fd"),
            Path("/run/current-system/sw/share/qemu/OVMF_VARS.fd"),
        ),
    ),
}


def defaults_for(arch: Architecture) -> ArchDefaults:
    return ARCH_DEFAULTS[Architecture(arch)]


def normalize_cpu_model(arch: Architecture, requested: Optional[str]) -> str:
    """Pick the CPU model for a new VM.

    ``host`` passthrough is only kept on arm64; on x86_64 it becomes ``qemu64``.
    """
    defaults = defaults_for(arch)
    if not requested:
        return defaults.cpu_model
    if Architecture(arch) == Architecture.X86_64 and requested == "host":
        return defaults.cpu_model
    return requested
