"""Disk image provisioning."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional, Protocol

import structlog

from .errors import DiskProvisionError
from .process_utils import ProcessError, run_command

logger = structlog.get_logger()


class DiskProvisioner(Protocol):
    def create(self, path: Path, size: str) -> None:
        ...


class QemuImgProvisioner:
    """Creates sparse qcow2 images with ``qemu-img``."""

    def __init__(self, qemu_img: str = "qemu-img", timeout: Optional[float] = 120):
        self.qemu_img = qemu_img
        self.timeout = timeout

    def create(self, path: Path, size: str) -> None:
        if path.exists():
            logger.info("Disk already present; not provisioning", path=str(path))
            return

        binary = shutil.which(self.qemu_img)
        if not binary:
            raise DiskProvisionError(f"{self.qemu_img} is required to create {path}")

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            run_command(
                [binary, "create", "-f", "qcow2", str(path), size],
                check=True,
                timeout=self.timeout,
            )
        except ProcessError as exc:
            detail = exc.result.stderr.strip() or str(exc)
            raise DiskProvisionError(
                f"{self.qemu_img} failed to create {path} (size {size}): {detail}"
            ) from exc
        except OSError as exc:
            raise DiskProvisionError(f"Unable to run {binary}: {exc}") from exc

        logger.info("Disk created", path=str(path), size=size)
