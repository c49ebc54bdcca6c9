"""Tests for pid records and liveness checks."""
from __future__ import annotations

import os
import subprocess
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

import psutil

from qvm.liveness import (
    PidRecord,
    PsutilChecker,
    SignalChecker,
    clear_pid_record,
    is_running,
    pid_reused,
    read_pid_record,
    write_pid_record,
)

from vm_factories import FakeChecker


class PidRecordTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.vm_dir = Path(self._tmp.name)
        self.record_path = self.vm_dir / "vm.pid"

    def test_write_then_read(self) -> None:
        written = write_pid_record(self.vm_dir, 4242)
        record = read_pid_record(self.vm_dir)
        self.assertEqual(record.pid, 4242)
        self.assertEqual(record.started_at, written.started_at)
        self.assertFalse((self.vm_dir / ".vm.pid.tmp").exists())

    def test_bare_pid_record(self) -> None:
        self.record_path.write_text("1234\n", encoding="utf-8")
        record = read_pid_record(self.vm_dir)
        self.assertEqual(record.pid, 1234)
        self.assertIsNone(record.started_at)

    def test_unparsable_records(self) -> None:
        for content in ("", "abc\n", "-5\n", "0\n"):
            self.record_path.write_text(content, encoding="utf-8")
            self.assertIsNone(read_pid_record(self.vm_dir), msg=repr(content))

    def test_clear(self) -> None:
        self.assertFalse(clear_pid_record(self.vm_dir))
        write_pid_record(self.vm_dir, 1)
        self.assertTrue(clear_pid_record(self.vm_dir))
        self.assertFalse(self.record_path.exists())


class IsRunningTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.vm_dir = Path(self._tmp.name)
        self.record_path = self.vm_dir / "vm.pid"

    def test_no_record(self) -> None:
        self.assertFalse(is_running(self.vm_dir, FakeChecker()))

    def test_live_process(self) -> None:
        write_pid_record(self.vm_dir, 4242)
        self.assertTrue(is_running(self.vm_dir, FakeChecker(alive=[4242])))
        self.assertTrue(self.record_path.exists())

    def test_dead_process_record_is_removed(self) -> None:
        write_pid_record(self.vm_dir, 4242)
        self.assertFalse(is_running(self.vm_dir, FakeChecker()))
        self.assertFalse(self.record_path.exists())

    def test_unparsable_record_is_removed(self) -> None:
        self.record_path.write_text("garbage", encoding="utf-8")
        self.assertFalse(is_running(self.vm_dir, FakeChecker()))
        self.assertFalse(self.record_path.exists())

    def test_read_only_check_keeps_stale_record(self) -> None:
        write_pid_record(self.vm_dir, 4242)
        self.assertFalse(is_running(self.vm_dir, FakeChecker(), cleanup=False))
        self.assertTrue(self.record_path.exists())


class PidReuseTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.vm_dir = Path(self._tmp.name)
        self.record_path = self.vm_dir / "vm.pid"

        self.process = subprocess.Popen(["sleep", "30"])
        self.addCleanup(self.process.wait)
        self.addCleanup(self.process.kill)

    def test_record_older_than_process_is_stale(self) -> None:
        self.record_path.write_text(
            f"{self.process.pid}\n2001-01-01T00:00:00+00:00\n", encoding="utf-8"
        )
        self.assertFalse(is_running(self.vm_dir, PsutilChecker()))
        self.assertFalse(self.record_path.exists())

    def test_record_written_after_spawn_is_trusted(self) -> None:
        write_pid_record(self.vm_dir, self.process.pid)
        self.assertTrue(is_running(self.vm_dir, PsutilChecker()))
        self.assertTrue(self.record_path.exists())

    def test_record_without_start_time_is_trusted(self) -> None:
        self.record_path.write_text(f"{self.process.pid}\n", encoding="utf-8")
        self.assertTrue(is_running(self.vm_dir, PsutilChecker()))

    def test_pid_reused_for_uninspectable_process(self) -> None:
        record = PidRecord(pid=self.process.pid, started_at=datetime(2001, 1, 1, tzinfo=timezone.utc))
        with mock.patch("qvm.liveness.psutil.Process", side_effect=psutil.AccessDenied(1)):
            self.assertFalse(pid_reused(record))
        self.assertTrue(pid_reused(record))


class CheckerTests(unittest.TestCase):
    def test_signal_checker_sees_current_process(self) -> None:
        self.assertTrue(SignalChecker().is_alive(os.getpid()))

    def test_signal_checker_missing_process(self) -> None:
        with mock.patch("qvm.liveness.os.kill", side_effect=ProcessLookupError):
            self.assertFalse(SignalChecker().is_alive(999999))

    def test_signal_checker_other_users_process(self) -> None:
        with mock.patch("qvm.liveness.os.kill", side_effect=PermissionError):
            self.assertTrue(SignalChecker().is_alive(1))

    def test_psutil_checker_sees_current_process(self) -> None:
        self.assertTrue(PsutilChecker().is_alive(os.getpid()))

    def test_psutil_checker_missing_process(self) -> None:
        with mock.patch("qvm.liveness.psutil.Process", side_effect=psutil.NoSuchProcess(999999)):
            self.assertFalse(PsutilChecker().is_alive(999999))

    def test_psutil_checker_zombie(self) -> None:
        process = mock.Mock()
        process.is_running.return_value = True
        process.status.return_value = psutil.STATUS_ZOMBIE
        with mock.patch("qvm.liveness.psutil.Process", return_value=process):
            self.assertFalse(PsutilChecker().is_alive(4242))

    def test_psutil_checker_access_denied(self) -> None:
        with mock.patch("qvm.liveness.psutil.Process", side_effect=psutil.AccessDenied(1)):
            self.assertTrue(PsutilChecker().is_alive(1))


if __name__ == "__main__":
    unittest.main()
