"""Pydantic models describing a VM's persisted configuration."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator

from .paths import resolve_under_root

SCHEMA_VERSION = 1
MIN_MEMORY_MB = 128
NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"
MAC_PATTERN = r"^[0-9a-fA-F]{2}(:[0-9a-fA-F]{2}){5}$"
DISK_SIZE_PATTERN = r"^[1-9][0-9]*[KMGT]?$"

# Guest ports for forward rules persisted in the bare ``name: host_port`` form.
WELL_KNOWN_GUEST_PORTS = {
    "ssh": 22,
    "http": 80,
    "https": 443,
    "rdp": 3389,
}


class Architecture(str, Enum):
    ARM64 = "arm64"
    X86_64 = "x86_64"


class NetworkMode(str, Enum):
    SHARED = "vmnet-shared"
    BRIDGED = "vmnet-bridged"
    USER = "user"


class DisplayMode(str, Enum):
    COCOA = "cocoa"
    VNC = "vnc"
    SPICE = "spice"
    HEADLESS = "headless"


class ConsoleMode(str, Enum):
    GUI = "gui"
    SERIAL = "serial"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_arch(value: Any) -> Any:
    if isinstance(value, str) and value.lower() == "aarch64":
        return Architecture.ARM64.value
    return value


def _within_root(value: Path) -> Path:
    if not value.is_absolute() and os.path.normpath(value).split(os.sep)[0] == "..":
        raise ValueError(f"relative path '{value}' escapes the VM directory")
    return value


class Meta(BaseModel):
    """Identity of a VM."""

    model_config = ConfigDict(extra="allow")

    version: int = Field(SCHEMA_VERSION, ge=1)
    generated: datetime = Field(default_factory=utc_now)
    name: str = Field(..., pattern=NAME_PATTERN, max_length=64)
    arch: Architecture
    uuid: UUID

    @field_validator("arch", mode="before")
    @classmethod
    def accept_aarch64(cls, value: Any) -> Any:
        return _normalize_arch(value)


class VMPaths(BaseModel):
    """Files owned by a VM; ``disk`` and ``efi_vars`` may be relative to ``root``."""

    model_config = ConfigDict(extra="allow")

    root: Path
    disk: Path = Path("disk.qcow2")
    efi_vars: Path = Path("efi_vars.fd")

    @field_validator("root")
    @classmethod
    def root_is_absolute(cls, value: Path) -> Path:
        if not value.is_absolute():
            raise ValueError("root must be an absolute path")
        return value

    @field_validator("disk", "efi_vars")
    @classmethod
    def stays_under_root(cls, value: Path) -> Path:
        return _within_root(value)


class Hardware(BaseModel):
    model_config = ConfigDict(extra="allow")

    cpu_model: str = Field(..., min_length=1)
    sockets: PositiveInt = 1
    cores: PositiveInt = 4
    threads: PositiveInt = 1
    mem_mb: int = Field(4096, ge=MIN_MEMORY_MB)
    machine: str = Field(..., min_length=1)
    accel: str = Field(..., min_length=1)
    mac: str = Field(..., pattern=MAC_PATTERN)

    @property
    def vcpus(self) -> int:
        return self.sockets * self.cores * self.threads


class Firmware(BaseModel):
    """UEFI firmware image and the template used to seed per-VM variables."""

    model_config = ConfigDict(extra="allow")

    code: Path
    vars_template: Path

    @field_validator("code", "vars_template")
    @classmethod
    def must_be_absolute(cls, value: Path) -> Path:
        if not value.is_absolute():
            raise ValueError("firmware paths must be absolute")
        return value


class PortForward(BaseModel):
    model_config = ConfigDict(extra="allow")

    protocol: Literal["tcp", "udp"] = "tcp"
    host: int = Field(0, ge=0, le=65535)
    guest: int = Field(..., ge=1, le=65535)

    @property
    def assigned(self) -> bool:
        return self.host != 0


def default_forwards() -> Dict[str, PortForward]:
    return {"ssh": PortForward(guest=22)}


class _NetworkBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    forwards: Dict[str, PortForward] = Field(default_factory=default_forwards)

    @field_validator("forwards", mode="before")
    @classmethod
    def expand_bare_host_ports(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        expanded: Dict[str, Any] = {}
        for rule, entry in value.items():
            if isinstance(entry, int) and not isinstance(entry, bool):
                guest = WELL_KNOWN_GUEST_PORTS.get(rule)
                if guest is None:
                    raise ValueError(f"forward rule '{rule}' needs an explicit guest port")
                entry = {"host": entry, "guest": guest}
            expanded[rule] = entry
        return expanded

    @field_validator("forwards")
    @classmethod
    def unique_host_ports(cls, value: Dict[str, PortForward]) -> Dict[str, PortForward]:
        claimed: Dict[Tuple[str, int], str] = {}
        for rule_name in sorted(value):
            rule = value[rule_name]
            if not rule.assigned:
                continue
            key = (rule.protocol, rule.host)
            if key in claimed:
                raise ValueError(
                    f"forward rules '{claimed[key]}' and '{rule_name}' both use "
                    f"{rule.protocol} host port {rule.host}"
                )
            claimed[key] = rule_name
        return value


class _UnbridgedNetwork(_NetworkBase):
    @model_validator(mode="before")
    @classmethod
    def drop_bridge_interface(cls, data: Any) -> Any:
        if isinstance(data, dict) and "bridge_if" in data:
            data = {key: value for key, value in data.items() if key != "bridge_if"}
        return data


class SharedNetwork(_UnbridgedNetwork):
    mode: Literal["vmnet-shared"] = "vmnet-shared"


class BridgedNetwork(_NetworkBase):
    mode: Literal["vmnet-bridged"] = "vmnet-bridged"
    bridge_if: str = Field(..., min_length=1)

    @field_validator("bridge_if")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("bridge interface cannot be blank")
        return value.strip()


class UserNetwork(_UnbridgedNetwork):
    mode: Literal["user"] = "user"


NetworkConfig = Annotated[
    Union[SharedNetwork, BridgedNetwork, UserNetwork],
    Field(discriminator="mode"),
]


class CocoaDisplay(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: Literal["cocoa"] = "cocoa"


class VncDisplay(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: Literal["vnc"] = "vnc"
    use_unix: bool = False
    host: str = "127.0.0.1"
    display: int = Field(1, ge=0, le=99)
    sock: Path = Path("vnc.sock")

    @field_validator("sock")
    @classmethod
    def sock_under_root(cls, value: Path) -> Path:
        return _within_root(value)


class SpiceDisplay(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: Literal["spice"] = "spice"
    use_unix: bool = False
    addr: str = "127.0.0.1"
    port: int = Field(5930, ge=1, le=65535)
    disable_ticketing: bool = True
    sock: Path = Path("spice.sock")

    @field_validator("sock")
    @classmethod
    def sock_under_root(cls, value: Path) -> Path:
        return _within_root(value)


class HeadlessDisplay(BaseModel):
    model_config = ConfigDict(extra="allow")

    mode: Literal["headless"] = "headless"


DisplayConfig = Annotated[
    Union[CocoaDisplay, VncDisplay, SpiceDisplay, HeadlessDisplay],
    Field(discriminator="mode"),
]


class VMConfig(BaseModel):
    """Canonical VM configuration document (``vm.json``)."""

    model_config = ConfigDict(extra="allow")

    meta: Meta
    paths: VMPaths
    hardware: Hardware
    firmware: Firmware
    network: NetworkConfig
    display: DisplayConfig

    @model_validator(mode="before")
    @classmethod
    def flatten_nested_display(cls, data: Any) -> Any:
        # Older documents kept every display sub-config nested under its mode name.
        if not isinstance(data, dict):
            return data
        display = data.get("display")
        if not isinstance(display, dict):
            return data
        mode = display.get("mode")
        if not any(isinstance(display.get(key), dict) for key in ("vnc", "spice")):
            return data
        flattened = {"mode": mode}
        nested = display.get(mode)
        if isinstance(nested, dict):
            flattened.update(nested)
        return {**data, "display": flattened}

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def arch(self) -> Architecture:
        return self.meta.arch

    @property
    def root(self) -> Path:
        return self.paths.root

    def resolve(self, candidate: Union[str, Path]) -> Path:
        return resolve_under_root(self.paths.root, candidate)

    def disk_path(self) -> Path:
        return self.resolve(self.paths.disk)

    def efi_vars_path(self) -> Path:
        return self.resolve(self.paths.efi_vars)


class CreateRequest(BaseModel):
    """Validated inputs for creating a VM."""

    name: str = Field(..., pattern=NAME_PATTERN, max_length=64)
    arch: Architecture = Architecture.ARM64
    cpu_model: Optional[str] = None
    smp: Optional[PositiveInt] = None
    sockets: Optional[PositiveInt] = None
    cores: Optional[PositiveInt] = None
    threads: Optional[PositiveInt] = None
    mem_mb: int = Field(4096, ge=MIN_MEMORY_MB)
    network: NetworkConfig = Field(default_factory=SharedNetwork)
    display: DisplayConfig = Field(default_factory=CocoaDisplay)
    disk: Path = Path("disk.qcow2")
    disk_size: Optional[str] = Field(None, pattern=DISK_SIZE_PATTERN)

    @field_validator("arch", mode="before")
    @classmethod
    def accept_aarch64(cls, value: Any) -> Any:
        return _normalize_arch(value)

    def topology(self) -> Tuple[int, int, int]:
        """Return (sockets, cores, threads); explicit topology wins over ``smp``."""
        if self.sockets or self.cores or self.threads:
            return (self.sockets or 1, self.cores or 1, self.threads or 1)
        if self.smp:
            return (1, self.smp, 1)
        return (1, 4, 1)


class StartOptions(BaseModel):
    """Transient start-time overrides; never persisted."""

    iso: Optional[Path] = None
    display: Optional[DisplayConfig] = None
    console: ConsoleMode = ConsoleMode.GUI
    detach: bool = True

    @model_validator(mode="after")
    def serial_console_needs_foreground(self) -> "StartOptions":
        if self.console == ConsoleMode.SERIAL and self.detach:
            raise ValueError("a serial console requires a foreground (non-detached) start")
        return self
