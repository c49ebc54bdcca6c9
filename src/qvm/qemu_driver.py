"""QEMU command generation for launching qvm VMs."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

import structlog

from .arch_defaults import defaults_for
from .errors import BinaryNotFoundError, FirmwareNotFoundError
from .models import (
    Architecture,
    BridgedNetwork,
    CocoaDisplay,
    ConsoleMode,
    SpiceDisplay,
    StartOptions,
    UserNetwork,
    VMConfig,
    VncDisplay,
)
from .paths import SERIAL_LOG_FILENAME

logger = structlog.get_logger()

NIX_SYSTEM_BIN = Path("/run/current-system/sw/bin")
USB_INPUT_DEVICES = ["-device", "qemu-xhci", "-device", "usb-kbd", "-device", "usb-tablet"]


def find_engine_binary(arch: Architecture) -> Path:
    """Locate ``qemu-system-*`` for ``arch``, preferring the Nix system profile."""
    binary_name = defaults_for(arch).engine_binary
    nix_candidate = NIX_SYSTEM_BIN / binary_name
    if nix_candidate.is_file():
        return nix_candidate
    found = shutil.which(binary_name)
    if not found:
        raise BinaryNotFoundError(f"{binary_name} is required to launch {Architecture(arch).value} VMs")
    return Path(found)


def _opt(value: object) -> str:
    """Escape a value embedded in a comma-separated QEMU option string."""
    return str(value).replace(",", ",,")


def _firmware_args(config: VMConfig) -> List[str]:
    for required in (config.firmware.code, config.firmware.vars_template):
        if not required.is_file():
            raise FirmwareNotFoundError(
                f"Firmware file {required} for VM '{config.name}' does not exist",
                vm=config.name,
                path=required,
            )
    return [
        "-drive",
        f"if=pflash,format=raw,unit=0,readonly=on,file={_opt(config.firmware.code)}",
        "-drive",
        f"if=pflash,format=raw,unit=1,file={_opt(config.efi_vars_path())}",
    ]


def _network_args(config: VMConfig) -> List[str]:
    network = config.network
    if isinstance(network, BridgedNetwork):
        netdev = f"vmnet-bridged,id=net0,ifname={_opt(network.bridge_if)}"
    elif isinstance(network, UserNetwork):
        rules = []
        for rule_name in sorted(network.forwards):
            rule = network.forwards[rule_name]
            if not rule.assigned:
                logger.debug(
                    "Skipping port forward without a host port",
                    vm=config.name,
                    rule=rule_name,
                    guest=rule.guest,
                )
                continue
            rules.append(f"hostfwd={rule.protocol}::{rule.host}-:{rule.guest}")
        netdev = ",".join(["user", "id=net0", *rules])
    else:
        netdev = "vmnet-shared,id=net0"

    return [
        "-netdev",
        netdev,
        "-device",
        f"virtio-net-pci,netdev=net0,mac={config.hardware.mac}",
    ]


def _display_args(config: VMConfig, display) -> List[str]:
    gpu = ["-device", defaults_for(config.arch).gpu_device]

    if isinstance(display, CocoaDisplay):
        return ["-display", "cocoa", *gpu, *USB_INPUT_DEVICES]

    if isinstance(display, VncDisplay):
        if display.use_unix:
            target = f"unix:{_opt(config.resolve(display.sock))}"
        else:
            target = f"{_opt(display.host)}:{display.display}"
        return ["-display", "none", "-vnc", target, *gpu, *USB_INPUT_DEVICES]

    if isinstance(display, SpiceDisplay):
        if display.use_unix:
            spice = f"unix=on,addr={_opt(config.resolve(display.sock))}"
        else:
            spice = f"addr={_opt(display.addr)},port={display.port}"
        if display.disable_ticketing:
            spice += ",disable-ticketing=on"
        return ["-display", "none", "-spice", spice, *gpu, *USB_INPUT_DEVICES]

    return ["-display", "none"]


def _boot_media_args(config: VMConfig, iso: Path) -> List[str]:
    if config.arch == Architecture.X86_64:
        return ["-cdrom", str(iso), "-boot", "once=d"]
    return [
        "-device",
        "virtio-scsi-pci,id=scsi0",
        "-drive",
        f"if=none,id=cdrom0,media=cdrom,readonly=on,file={_opt(iso)}",
        "-device",
        "scsi-cd,drive=cdrom0,bus=scsi0.0",
    ]


def build_vm_command(config: VMConfig, options: Optional[StartOptions] = None) -> List[str]:
    """Translate ``config`` (plus start-time overrides) into a QEMU argv.

    The flag order is fixed so identical inputs always produce identical
    command lines. The engine binary is looked up on every call.
    """
    options = options or StartOptions()
    hardware = config.hardware
    display = options.display if options.display is not None else config.display

    cmd: List[str] = [str(find_engine_binary(config.arch))]
    cmd.extend(["-name", config.name, "-uuid", str(config.meta.uuid)])
    cmd.extend(
        [
            "-machine",
            hardware.machine,
            "-accel",
            hardware.accel,
            "-cpu",
            hardware.cpu_model,
            "-smp",
            f"{hardware.vcpus},sockets={hardware.sockets},cores={hardware.cores},threads={hardware.threads}",
            "-m",
            str(hardware.mem_mb),
        ]
    )
    cmd.extend(_firmware_args(config))
    cmd.extend(["-drive", f"if=virtio,format=qcow2,file={_opt(config.disk_path())}"])
    cmd.extend(_network_args(config))
    cmd.extend(_display_args(config, display))

    if options.console == ConsoleMode.SERIAL:
        cmd.extend(["-serial", "mon:stdio"])
    else:
        cmd.extend(["-serial", f"file:{config.root / SERIAL_LOG_FILENAME}"])

    if options.iso is not None:
        cmd.extend(_boot_media_args(config, Path(options.iso)))

    return cmd
