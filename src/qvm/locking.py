"""Advisory per-VM directory lock.

Two independent qvm invocations may target the same VM. Every operation that
inspects and then mutates a VM directory holds an exclusive ``flock`` on
``<vm_dir>/.lock`` for its whole duration.
"""

from __future__ import annotations

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional, Union

import structlog

from .errors import VMIOError, VMLockedError
from .paths import lock_path

logger = structlog.get_logger()

POLL_INTERVAL = 0.1


@contextmanager
def vm_lock(
    vm_dir: Union[str, Path],
    *,
    timeout: float = 10.0,
    name: Optional[str] = None,
) -> Generator[None, None, None]:
    """Hold the VM directory lock, polling up to ``timeout`` seconds for it."""
    path = lock_path(vm_dir)
    try:
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    except FileNotFoundError as exc:
        raise VMIOError(f"VM directory {vm_dir} does not exist", vm=name) from exc
    except OSError as exc:
        raise VMIOError(f"Unable to open lock file {path}: {exc}", vm=name) from exc

    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise VMLockedError(
                        f"VM '{name or Path(vm_dir).name}' is locked by another qvm process "
                        f"(waited {timeout:g}s on {path})",
                        vm=name,
                    ) from exc
                time.sleep(POLL_INTERVAL)

        logger.debug("Acquired VM lock", vm=name, path=str(path))
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
