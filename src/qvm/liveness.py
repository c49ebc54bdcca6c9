"""Process-identifier records and engine liveness checks."""

from __future__ import annotations

import errno
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Union

import psutil
import structlog

from .errors import VMIOError
from .models import utc_now
from .paths import PID_FILENAME, pid_path

logger = structlog.get_logger()

# Seconds of clock skew allowed between process creation and the record's timestamp.
PID_REUSE_TOLERANCE = 1.0


class ProcessChecker(Protocol):
    def is_alive(self, pid: int) -> bool:
        ...


class PsutilChecker:
    """Process-table lookup; zombies count as dead."""

    def is_alive(self, pid: int) -> bool:
        try:
            process = psutil.Process(pid)
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # The process exists but belongs to someone else.
            return True


class SignalChecker:
    """Signal-0 check."""

    def is_alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError as exc:
            if exc.errno == errno.ESRCH:
                return False
            raise
        return True


@dataclass
class PidRecord:
    pid: int
    started_at: Optional[datetime] = None


def _parse_record(text: str) -> Optional[PidRecord]:
    lines = text.strip().splitlines()
    if not lines:
        return None
    try:
        pid = int(lines[0].strip())
    except ValueError:
        return None
    if pid <= 0:
        return None
    started_at = None
    if len(lines) > 1:
        try:
            started_at = datetime.fromisoformat(lines[1].strip())
        except ValueError:
            started_at = None
    return PidRecord(pid=pid, started_at=started_at)


def pid_reused(record: PidRecord) -> bool:
    """True when the process holding ``record.pid`` was created after the record.

    Records without a start time, and processes psutil cannot inspect, are
    taken at face value.
    """
    if record.started_at is None:
        return False
    try:
        created = psutil.Process(record.pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False
    return created > record.started_at.timestamp() + PID_REUSE_TOLERANCE


def read_pid_record(vm_dir: Union[str, Path]) -> Optional[PidRecord]:
    """Return the recorded engine pid, or None when absent or unparsable."""
    path = pid_path(vm_dir)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except UnicodeDecodeError:
        return None
    except OSError as exc:
        raise VMIOError(f"Unable to read {path}: {exc}") from exc
    return _parse_record(text)


def write_pid_record(vm_dir: Union[str, Path], pid: int) -> PidRecord:
    record = PidRecord(pid=pid, started_at=utc_now())
    path = pid_path(vm_dir)
    temp = path.with_name(f".{PID_FILENAME}.tmp")
    try:
        temp.write_text(f"{record.pid}\n{record.started_at.isoformat()}\n", encoding="utf-8")
        os.replace(temp, path)
    except OSError as exc:
        raise VMIOError(f"Unable to write {path}: {exc}") from exc
    return record


def clear_pid_record(vm_dir: Union[str, Path]) -> bool:
    """Remove the record; returns False when there was nothing to remove."""
    path = pid_path(vm_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise VMIOError(f"Unable to remove {path}: {exc}") from exc
    return True


def is_running(
    vm_dir: Union[str, Path],
    checker: Optional[ProcessChecker] = None,
    *,
    cleanup: bool = True,
) -> bool:
    """Report whether the engine recorded in ``vm_dir`` is alive.

    A missing record, an unparsable one, or one naming a dead process all mean
    "not running"; with ``cleanup`` the stale record is removed.
    """
    path = pid_path(vm_dir)
    if not path.exists():
        return False

    record = read_pid_record(vm_dir)
    checker = checker or PsutilChecker()
    if record is not None and checker.is_alive(record.pid):
        if not pid_reused(record):
            return True
        logger.info(
            "Recorded pid now belongs to a newer process",
            vm_dir=str(vm_dir),
            pid=record.pid,
            recorded_start=record.started_at.isoformat(),
        )

    if cleanup and clear_pid_record(vm_dir):
        logger.debug(
            "Removed stale pid record",
            vm_dir=str(vm_dir),
            pid=record.pid if record else None,
        )
    return False
