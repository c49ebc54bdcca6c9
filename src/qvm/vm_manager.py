"""
VM Manager - Handles qvm virtual machine lifecycle operations
"""

from __future__ import annotations

import random
import shutil
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import psutil
import structlog
from pydantic import TypeAdapter, ValidationError

from .arch_defaults import defaults_for, normalize_cpu_model
from .config_store import format_validation_error, load_config, save_config
from .disk import DiskProvisioner, QemuImgProvisioner
from .errors import (
    AlreadyExistsError,
    AlreadyRunningError,
    BinaryNotFoundError,
    ConfigValidationError,
    DiskNotFoundError,
    NotFoundError,
    NotRunningError,
    QVMError,
    SpawnError,
    StopTimeoutError,
    VMIOError,
    VMRunningError,
)
from .firmware import locate_firmware_or_default
from .liveness import (
    ProcessChecker,
    PsutilChecker,
    clear_pid_record,
    is_running,
    read_pid_record,
    write_pid_record,
)
from .locking import vm_lock
from .models import (
    CreateRequest,
    DisplayConfig,
    Firmware,
    Hardware,
    Meta,
    NetworkConfig,
    NetworkMode,
    StartOptions,
    VMConfig,
    VMPaths,
)
from .paths import ENGINE_LOG_FILENAME, VM_DIR_SUFFIX, find_vm_dir, pid_path, vm_dir_for
from .qemu_driver import build_vm_command, find_engine_binary
from .settings import QVMSettings

logger = structlog.get_logger()

DISPLAY_ADAPTER: TypeAdapter = TypeAdapter(DisplayConfig)
NETWORK_ADAPTER: TypeAdapter = TypeAdapter(NetworkConfig)

NOT_RUNNING = "not_running"


def generate_mac() -> str:
    """Random locally-administered MAC under the QEMU OUI."""
    return "52:54:00:%02x:%02x:%02x" % tuple(random.randint(0, 255) for _ in range(3))


@dataclass
class OperationResult:
    """Outcome of a lifecycle operation."""

    success: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    condition: Optional[str] = None


@dataclass
class VMStatus:
    name: str
    running: bool
    pid: Optional[int]
    vm_dir: Path
    config: VMConfig


class VMManager:
    """Manages qvm virtual machine operations."""

    def __init__(
        self,
        settings: Optional[QVMSettings] = None,
        checker: Optional[ProcessChecker] = None,
        provisioner: Optional[DiskProvisioner] = None,
    ):
        self.settings = settings or QVMSettings()
        self.home = self.settings.home
        self.checker = checker or PsutilChecker()
        self.provisioner = provisioner or QemuImgProvisioner()
        self.log = logger.bind(component="vm_manager")

    def _lock(self, vm_dir: Path, name: str):
        return vm_lock(vm_dir, timeout=self.settings.lock_timeout, name=name)

    def _find_vm_dir(self, name: str) -> Path:
        return find_vm_dir(self.home, name)

    def _build_config(self, request: CreateRequest, vm_dir: Path) -> VMConfig:
        defaults = defaults_for(request.arch)

        try:
            engine_binary: Optional[Path] = find_engine_binary(request.arch)
        except BinaryNotFoundError as exc:
            self.log.warning("Engine binary not found at create time", vm=request.name, error=str(exc))
            engine_binary = None
        fw_code, fw_vars_template = locate_firmware_or_default(
            request.arch, engine_binary=engine_binary
        )

        sockets, cores, threads = request.topology()
        try:
            return VMConfig(
                meta=Meta(name=request.name, arch=request.arch, uuid=uuid.uuid4()),
                paths=VMPaths(root=vm_dir, disk=request.disk, efi_vars=Path("efi_vars.fd")),
                hardware=Hardware(
                    cpu_model=normalize_cpu_model(request.arch, request.cpu_model),
                    sockets=sockets,
                    cores=cores,
                    threads=threads,
                    mem_mb=request.mem_mb,
                    machine=defaults.machine,
                    accel=defaults.accel,
                    mac=generate_mac(),
                ),
                firmware=Firmware(code=fw_code, vars_template=fw_vars_template),
                network=request.network,
                display=request.display,
            )
        except ValidationError as exc:
            raise ConfigValidationError(
                f"Invalid settings for VM '{request.name}': {format_validation_error(exc)}",
                vm=request.name,
            ) from exc

    def create_vm(self, request: CreateRequest) -> VMConfig:
        """Create a new VM directory and its configuration."""
        name = request.name
        try:
            self.home.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise VMIOError(f"Unable to create qvm home {self.home}: {exc}", vm=name) from exc

        vm_dir = vm_dir_for(self.home, name)
        try:
            vm_dir.mkdir()
        except FileExistsError as exc:
            raise AlreadyExistsError(f"VM '{name}' already exists at {vm_dir}", vm=name) from exc
        except OSError as exc:
            raise VMIOError(f"Unable to create {vm_dir}: {exc}", vm=name) from exc

        try:
            with self._lock(vm_dir, name):
                config = self._build_config(request, vm_dir)
                disk = config.disk_path()
                if request.disk_size and not disk.exists():
                    self.provisioner.create(disk, request.disk_size)
                elif not disk.exists():
                    self.log.info(
                        "No disk image yet; pass a disk size to create one",
                        vm=name,
                        disk=str(disk),
                    )
                save_config(config)
        except Exception:
            shutil.rmtree(vm_dir, ignore_errors=True)
            raise

        self.log.info(
            "VM created",
            vm=name,
            arch=config.arch.value,
            vm_dir=str(vm_dir),
            mem_mb=config.hardware.mem_mb,
            vcpus=config.hardware.vcpus,
        )
        return config

    def _seed_efi_vars(self, config: VMConfig) -> None:
        target = config.efi_vars_path()
        if target.exists():
            return
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(config.firmware.vars_template, target)
        except OSError as exc:
            raise VMIOError(
                f"Unable to seed EFI variables for VM '{config.name}' at {target}: {exc}",
                vm=config.name,
            ) from exc
        self.log.info("Seeded EFI variables", vm=config.name, path=str(target))

    def _spawn(self, config: VMConfig, cmd: List[str], options: StartOptions) -> subprocess.Popen:
        log_path = config.root / ENGINE_LOG_FILENAME
        try:
            if options.detach:
                with open(log_path, "ab") as engine_log:
                    process = subprocess.Popen(
                        cmd,
                        stdin=subprocess.DEVNULL,
                        stdout=engine_log,
                        stderr=subprocess.STDOUT,
                        cwd=str(config.root),
                        start_new_session=True,
                    )
            else:
                process = subprocess.Popen(cmd, cwd=str(config.root))
        except OSError as exc:
            raise SpawnError(f"Failed to launch {cmd[0]} for VM '{config.name}': {exc}", vm=config.name) from exc

        time.sleep(self.settings.spawn_settle_delay)
        returncode = process.poll()
        if returncode is not None:
            hint = f"; see {log_path}" if options.detach else ""
            raise SpawnError(
                f"QEMU for VM '{config.name}' exited immediately with code {returncode}{hint}",
                vm=config.name,
            )
        return process

    def start_vm(self, name: str, options: Optional[StartOptions] = None) -> OperationResult:
        """Start a VM's engine process and record its pid."""
        options = options or StartOptions()
        vm_dir = self._find_vm_dir(name)

        with self._lock(vm_dir, name):
            config = load_config(vm_dir, name=name)

            if is_running(vm_dir, self.checker):
                record = read_pid_record(vm_dir)
                pid = record.pid if record else "unknown"
                raise AlreadyRunningError(f"VM '{name}' is already running (pid {pid})", vm=name)

            disk = config.disk_path()
            if not disk.is_file():
                raise DiskNotFoundError(
                    f"Disk image {disk} for VM '{name}' does not exist", vm=name, path=disk
                )
            if options.iso is not None:
                # The engine runs inside the VM directory; relative paths mean the caller's cwd.
                iso = Path(options.iso).absolute()
                if not iso.is_file():
                    raise NotFoundError(
                        f"Boot image {iso} for VM '{name}' does not exist",
                        vm=name,
                        path=iso,
                    )
                options = options.model_copy(update={"iso": iso})

            cmd = build_vm_command(config, options)
            self._seed_efi_vars(config)

            process = self._spawn(config, cmd, options)
            try:
                write_pid_record(vm_dir, process.pid)
            except VMIOError:
                process.kill()
                raise

            self.log.info(
                "VM started",
                vm=name,
                pid=process.pid,
                detached=options.detach,
                display=(options.display or config.display).mode,
            )

        details: Dict[str, Any] = {"pid": process.pid, "command": cmd}
        if options.detach:
            details["log"] = str(config.root / ENGINE_LOG_FILENAME)
            return OperationResult(True, f"Started VM '{name}' (pid {process.pid})", details)

        returncode = process.wait()
        with self._lock(vm_dir, name):
            record = read_pid_record(vm_dir)
            if record is not None and record.pid == process.pid:
                clear_pid_record(vm_dir)
        self.log.info("VM exited", vm=name, pid=process.pid, returncode=returncode)
        details["returncode"] = returncode
        return OperationResult(True, f"VM '{name}' exited with code {returncode}", details)

    def _terminate(self, name: str, pid: int, *, force: bool) -> bool:
        """SIGTERM ``pid`` and wait; returns True if SIGKILL was needed."""
        timeout = self.settings.stop_timeout
        try:
            process = psutil.Process(pid)
            process.terminate()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as exc:
            raise VMIOError(f"Not permitted to signal pid {pid} of VM '{name}'", vm=name) from exc

        try:
            process.wait(timeout=timeout)
            return False
        except psutil.NoSuchProcess:
            return False
        except psutil.TimeoutExpired as exc:
            if not force:
                raise StopTimeoutError(
                    f"VM '{name}' (pid {pid}) did not exit within {timeout:g}s; "
                    "stop it again with force to kill it",
                    vm=name,
                ) from exc

        self.log.warning("Engine ignored SIGTERM; killing", vm=name, pid=pid, waited=timeout)
        try:
            process.kill()
            process.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired as exc:
            raise StopTimeoutError(
                f"VM '{name}' (pid {pid}) survived SIGKILL for {timeout:g}s", vm=name
            ) from exc
        return True

    def stop_vm(self, name: str, *, force: bool = False, strict: bool = False) -> OperationResult:
        """Stop a running VM.

        Stopping a VM that is not running succeeds with the ``not_running``
        condition (after removing any stale record) unless ``strict`` is set.
        """
        vm_dir = self._find_vm_dir(name)

        with self._lock(vm_dir, name):
            had_record = pid_path(vm_dir).exists()
            if not is_running(vm_dir, self.checker):
                if strict:
                    raise NotRunningError(f"VM '{name}' is not running", vm=name)
                self.log.info("VM not running", vm=name, stale_record_removed=had_record)
                return OperationResult(
                    True,
                    f"VM '{name}' is not running",
                    {"stale_record_removed": had_record},
                    condition=NOT_RUNNING,
                )

            record = read_pid_record(vm_dir)
            forced = self._terminate(name, record.pid, force=force)
            clear_pid_record(vm_dir)

        self.log.info("VM stopped", vm=name, pid=record.pid, forced=forced)
        return OperationResult(
            True, f"Stopped VM '{name}'", {"pid": record.pid, "forced": forced}
        )

    def delete_vm(self, name: str, *, force: bool = False) -> OperationResult:
        """Remove a VM directory and everything in it."""
        vm_dir = self._find_vm_dir(name)

        with self._lock(vm_dir, name):
            details: Dict[str, Any] = {"vm_dir": str(vm_dir)}
            if is_running(vm_dir, self.checker):
                record = read_pid_record(vm_dir)
                if not force:
                    raise VMRunningError(
                        f"Cannot delete VM '{name}': it is running (pid {record.pid}). "
                        "Stop it first or delete with force",
                        vm=name,
                    )
                try:
                    self._terminate(name, record.pid, force=True)
                except QVMError as exc:
                    self.log.warning("Best-effort stop before delete failed", vm=name, error=str(exc))
                details["stopped_pid"] = record.pid

            try:
                disk = load_config(vm_dir, name=name).disk_path()
            except QVMError:
                disk = None
            if disk is not None and vm_dir not in disk.parents:
                details["external_disk_kept"] = str(disk)

            try:
                shutil.rmtree(vm_dir)
            except OSError as exc:
                raise VMIOError(f"Unable to remove {vm_dir}: {exc}", vm=name) from exc

        self.log.info("VM deleted", vm=name, **details)
        return OperationResult(True, f"Deleted VM '{name}'", details)

    def _update_config(
        self, name: str, mutate: Callable[[VMConfig], VMConfig]
    ) -> Tuple[VMConfig, bool]:
        """Load, mutate and atomically save a config; returns (config, running)."""
        vm_dir = self._find_vm_dir(name)
        with self._lock(vm_dir, name):
            config = load_config(vm_dir, name=name)
            updated = mutate(config)
            save_config(updated)
            running = is_running(vm_dir, self.checker)
        return updated, running

    def _settings_result(self, name: str, what: str, running: bool, **details: Any) -> OperationResult:
        message = f"Updated {what} for VM '{name}'"
        if running:
            message += "; the running instance is unaffected until the next start"
            self.log.warning("Configuration changed while running", vm=name, setting=what)
        details.update({"running": running, "applies_on_next_start": running})
        return OperationResult(True, message, details)

    def set_display(self, name: str, display: Union[DisplayConfig, Dict[str, Any]]) -> OperationResult:
        try:
            new_display = DISPLAY_ADAPTER.validate_python(display)
        except ValidationError as exc:
            raise ConfigValidationError(
                f"Invalid display settings for VM '{name}': {format_validation_error(exc)}", vm=name
            ) from exc

        _, running = self._update_config(
            name, lambda config: config.model_copy(update={"display": new_display})
        )
        return self._settings_result(name, "display", running, mode=new_display.mode)

    def set_network_mode(
        self,
        name: str,
        mode: Union[NetworkMode, str],
        bridge_if: Optional[str] = None,
    ) -> OperationResult:
        try:
            mode = NetworkMode(mode)
        except ValueError as exc:
            raise ConfigValidationError(f"Unknown network mode '{mode}' for VM '{name}'", vm=name) from exc
        if bridge_if is not None and mode != NetworkMode.BRIDGED:
            raise ConfigValidationError(
                f"A bridge interface only applies to {NetworkMode.BRIDGED.value} networking "
                f"(VM '{name}', mode {mode.value})",
                vm=name,
            )

        def mutate(config: VMConfig) -> VMConfig:
            payload: Dict[str, Any] = {
                "mode": mode.value,
                "forwards": {rule: fwd.model_dump() for rule, fwd in config.network.forwards.items()},
            }
            if bridge_if is not None:
                payload["bridge_if"] = bridge_if
            try:
                network = NETWORK_ADAPTER.validate_python(payload)
            except ValidationError as exc:
                raise ConfigValidationError(
                    f"Invalid network settings for VM '{name}': {format_validation_error(exc)}",
                    vm=name,
                ) from exc
            return config.model_copy(update={"network": network})

        _, running = self._update_config(name, mutate)
        return self._settings_result(name, "network", running, mode=mode.value)

    def _replace_forwards(self, config: VMConfig, forwards: Dict[str, Any]) -> VMConfig:
        payload = config.network.model_dump()
        payload["forwards"] = forwards
        try:
            network = NETWORK_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise ConfigValidationError(
                f"Invalid port forwards for VM '{config.name}': {format_validation_error(exc)}",
                vm=config.name,
            ) from exc
        return config.model_copy(update={"network": network})

    def set_port_forward(
        self,
        name: str,
        rule: str,
        *,
        guest: int,
        host: int = 0,
        protocol: str = "tcp",
    ) -> OperationResult:
        if not rule.strip():
            raise ConfigValidationError(f"Port forward rule for VM '{name}' needs a name", vm=name)

        def mutate(config: VMConfig) -> VMConfig:
            forwards = {key: fwd.model_dump() for key, fwd in config.network.forwards.items()}
            forwards[rule] = {"protocol": protocol, "host": host, "guest": guest}
            return self._replace_forwards(config, forwards)

        _, running = self._update_config(name, mutate)
        return self._settings_result(name, f"port forward '{rule}'", running, rule=rule)

    def remove_port_forward(self, name: str, rule: str) -> OperationResult:
        def mutate(config: VMConfig) -> VMConfig:
            if rule not in config.network.forwards:
                raise NotFoundError(f"VM '{name}' has no port forward named '{rule}'", vm=name)
            forwards = {
                key: fwd.model_dump() for key, fwd in config.network.forwards.items() if key != rule
            }
            return self._replace_forwards(config, forwards)

        _, running = self._update_config(name, mutate)
        return self._settings_result(name, f"port forward '{rule}'", running, rule=rule)

    def status_vm(self, name: str) -> VMStatus:
        vm_dir = self._find_vm_dir(name)
        config = load_config(vm_dir, name=name)
        # Read-only: stale records are left for the next locked operation.
        running = is_running(vm_dir, self.checker, cleanup=False)
        record = read_pid_record(vm_dir) if running else None
        return VMStatus(
            name=name,
            running=running,
            pid=record.pid if record else None,
            vm_dir=vm_dir,
            config=config,
        )

    def list_vms(self) -> List[VMStatus]:
        if not self.home.is_dir():
            return []
        results: List[VMStatus] = []
        for vm_dir in sorted(self.home.glob(f"*{VM_DIR_SUFFIX}")):
            if not vm_dir.is_dir():
                continue
            name = vm_dir.name[: -len(VM_DIR_SUFFIX)]
            try:
                results.append(self.status_vm(name))
            except QVMError as exc:
                self.log.warning("Skipping unreadable VM", vm=name, error=str(exc))
        return results
