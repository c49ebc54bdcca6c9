"""Tests for QEMU command generation and firmware discovery."""
from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest import mock

from qvm.errors import BinaryNotFoundError, FirmwareNotFoundError
from qvm.firmware import locate_firmware, locate_firmware_or_default
from qvm.models import (
    Architecture,
    BridgedNetwork,
    HeadlessDisplay,
    SpiceDisplay,
    StartOptions,
    UserNetwork,
    VncDisplay,
)
from qvm.qemu_driver import build_vm_command, find_engine_binary

from vm_factories import make_config, make_firmware


def _value_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


def _fake_binary(arch):
    suffix = "aarch64" if arch == Architecture.ARM64 else "x86_64"
    return Path(f"/usr/bin/qemu-system-{suffix}")


class BuildVMCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)
        self.vm_dir = self.tmp / "vm1.qvm"

        patcher = mock.patch("qvm.qemu_driver.find_engine_binary", side_effect=_fake_binary)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _config(self, arch: Architecture = Architecture.ARM64, **overrides):
        firmware = make_firmware(self.tmp / "fw", arch)
        return make_config(self.vm_dir, arch=arch, firmware=firmware, **overrides)

    def test_base_command(self) -> None:
        cmd = build_vm_command(self._config())

        self.assertEqual(cmd[0], "/usr/bin/qemu-system-aarch64")
        self.assertEqual(_value_after(cmd, "-name"), "vm1")
        self.assertEqual(_value_after(cmd, "-uuid"), "12345678-1234-5678-1234-567812345678")
        self.assertEqual(_value_after(cmd, "-machine"), "virt,gic-version=3")
        self.assertEqual(_value_after(cmd, "-accel"), "hvf")
        self.assertEqual(_value_after(cmd, "-cpu"), "host")
        self.assertEqual(_value_after(cmd, "-smp"), "4,sockets=1,cores=4,threads=1")
        self.assertEqual(_value_after(cmd, "-m"), "4096")
        self.assertIn(f"if=virtio,format=qcow2,file={self.vm_dir / 'disk.qcow2'}", cmd)
        self.assertIn(
            f"if=pflash,format=raw,unit=1,file={self.vm_dir / 'efi_vars.fd'}",
            cmd,
        )
        self.assertEqual(_value_after(cmd, "-netdev"), "vmnet-shared,id=net0")
        self.assertIn("virtio-net-pci,netdev=net0,mac=52:54:00:12:34:56", cmd)
        self.assertEqual(_value_after(cmd, "-display"), "cocoa")
        self.assertEqual(_value_after(cmd, "-serial"), f"file:{self.vm_dir / 'serial.log'}")

    def test_deterministic(self) -> None:
        network = UserNetwork(
            forwards={"web": {"host": 8080, "guest": 80}, "ssh": {"host": 2222, "guest": 22}}
        )
        config = self._config(network=network)
        self.assertEqual(build_vm_command(config), build_vm_command(config))

    def test_command_does_not_depend_on_working_directory(self) -> None:
        config = self._config(display=VncDisplay(use_unix=True))
        first = build_vm_command(config)
        with mock.patch("os.getcwd", return_value="/somewhere/else"):
            second = build_vm_command(config)
        self.assertEqual(first, second)
        self.assertEqual(_value_after(first, "-vnc"), f"unix:{self.vm_dir / 'vnc.sock'}")

    def test_vnc_tcp(self) -> None:
        cmd = build_vm_command(self._config(display=VncDisplay(host="0.0.0.0", display=2)))
        self.assertEqual(_value_after(cmd, "-display"), "none")
        self.assertEqual(_value_after(cmd, "-vnc"), "0.0.0.0:2")
        self.assertNotIn("-spice", cmd)
        self.assertIn("virtio-gpu-pci", cmd)
        self.assertIn("usb-tablet", cmd)

    def test_spice(self) -> None:
        cmd = build_vm_command(self._config(display=SpiceDisplay()))
        self.assertEqual(_value_after(cmd, "-spice"), "addr=127.0.0.1,port=5930,disable-ticketing=on")
        self.assertNotIn("-vnc", cmd)

        cmd = build_vm_command(self._config(display=SpiceDisplay(use_unix=True, disable_ticketing=False)))
        self.assertEqual(_value_after(cmd, "-spice"), f"unix=on,addr={self.vm_dir / 'spice.sock'}")

    def test_headless(self) -> None:
        cmd = build_vm_command(self._config(display=HeadlessDisplay()))
        self.assertEqual(_value_after(cmd, "-display"), "none")
        self.assertNotIn("-vnc", cmd)
        self.assertNotIn("-spice", cmd)
        self.assertNotIn("virtio-gpu-pci", cmd)

    def test_display_override_at_start(self) -> None:
        config = self._config()
        cmd = build_vm_command(config, StartOptions(display=VncDisplay()))
        self.assertEqual(_value_after(cmd, "-vnc"), "127.0.0.1:1")
        self.assertEqual(config.display.mode, "cocoa")

    def test_user_network_forwards(self) -> None:
        network = UserNetwork(
            forwards={
                "ssh": {"host": 2222, "guest": 22},
                "dns": {"protocol": "udp", "host": 5353, "guest": 53},
                "web": {"host": 0, "guest": 80},
            }
        )
        cmd = build_vm_command(self._config(network=network))
        self.assertEqual(
            _value_after(cmd, "-netdev"),
            "user,id=net0,hostfwd=udp::5353-:53,hostfwd=tcp::2222-:22",
        )

    def test_bridged_network(self) -> None:
        cmd = build_vm_command(self._config(network=BridgedNetwork(bridge_if="en0")))
        self.assertEqual(_value_after(cmd, "-netdev"), "vmnet-bridged,id=net0,ifname=en0")

    def test_iso_on_x86_64(self) -> None:
        config = self._config(Architecture.X86_64)
        cmd = build_vm_command(config, StartOptions(iso=Path("/isos/installer.iso")))
        self.assertEqual(cmd[0], "/usr/bin/qemu-system-x86_64")
        self.assertEqual(_value_after(cmd, "-machine"), "q35")
        self.assertEqual(_value_after(cmd, "-cdrom"), "/isos/installer.iso")
        self.assertEqual(_value_after(cmd, "-boot"), "once=d")

    def test_iso_on_arm64(self) -> None:
        cmd = build_vm_command(self._config(), StartOptions(iso=Path("/isos/installer.iso")))
        self.assertNotIn("-cdrom", cmd)
        self.assertIn("virtio-scsi-pci,id=scsi0", cmd)
        self.assertIn("if=none,id=cdrom0,media=cdrom,readonly=on,file=/isos/installer.iso", cmd)
        self.assertIn("scsi-cd,drive=cdrom0,bus=scsi0.0", cmd)

    def test_serial_console(self) -> None:
        cmd = build_vm_command(self._config(), StartOptions(console="serial", detach=False))
        self.assertEqual(_value_after(cmd, "-serial"), "mon:stdio")

    def test_commas_in_paths_are_escaped(self) -> None:
        config = self._config(paths={"root": self.vm_dir, "disk": "disk,1.qcow2"})
        cmd = build_vm_command(config)
        self.assertIn(f"if=virtio,format=qcow2,file={self.vm_dir / 'disk,,1.qcow2'}", cmd)

    def test_commas_in_display_addresses_are_escaped(self) -> None:
        cmd = build_vm_command(self._config(display=VncDisplay(host="a,b")))
        self.assertEqual(_value_after(cmd, "-vnc"), "a,,b:1")

        cmd = build_vm_command(self._config(display=SpiceDisplay(addr="a,b", disable_ticketing=False)))
        self.assertEqual(_value_after(cmd, "-spice"), "addr=a,,b,port=5930")

    def test_missing_firmware(self) -> None:
        config = self._config()
        config.firmware.code.unlink()
        with self.assertRaises(FirmwareNotFoundError) as ctx:
            build_vm_command(config)
        self.assertEqual(ctx.exception.path, config.firmware.code)


class FindEngineBinaryTests(unittest.TestCase):
    def test_missing_binary(self) -> None:
        with mock.patch("qvm.qemu_driver.NIX_SYSTEM_BIN", Path("/nonexistent/bin")), mock.patch(
            "qvm.qemu_driver.shutil.which", return_value=None
        ):
            with self.assertRaises(BinaryNotFoundError) as ctx:
                find_engine_binary(Architecture.X86_64)
        self.assertIn("qemu-system-x86_64", str(ctx.exception))

    def test_found_on_path(self) -> None:
        with mock.patch("qvm.qemu_driver.NIX_SYSTEM_BIN", Path("/nonexistent/bin")), mock.patch(
            "qvm.qemu_driver.shutil.which", return_value="/usr/local/bin/qemu-system-aarch64"
        ):
            self.assertEqual(
                find_engine_binary(Architecture.ARM64), Path("/usr/local/bin/qemu-system-aarch64")
            )


class FirmwareDiscoveryTests(unittest.TestCase):
    def test_first_directory_with_both_files_wins(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            partial = Path(tmp) / "partial"
            partial.mkdir()
            (partial / "OVMF_CODE.fd").write_bytes(b"")
            firmware = make_firmware(Path(tmp) / "complete", Architecture.X86_64)

            code, vars_template = locate_firmware(
                Architecture.X86_64, search_dirs=[partial, Path(tmp) / "complete"]
            )

        self.assertEqual(code, firmware.code)
        self.assertEqual(vars_template, firmware.vars_template)

    def test_not_found(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(FirmwareNotFoundError):
                locate_firmware(Architecture.ARM64, search_dirs=[Path(tmp)])

    def test_fallback_paths(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            code, vars_template = locate_firmware_or_default(Architecture.ARM64, search_dirs=[Path(tmp)])
        self.assertEqual(code.name, "edk2-aarch64-code.fd")
        self.assertEqual(vars_template.name, "edk2-arm-vars.fd")


if __name__ == "__main__":
    unittest.main()
