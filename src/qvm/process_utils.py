"""Subprocess helpers with consistent logging and timeout handling."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import structlog

logger = structlog.get_logger()


@dataclass
class ProcessResult:
    command: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float


class ProcessError(RuntimeError):
    def __init__(self, result: ProcessResult, message: Optional[str] = None):
        super().__init__(message or result.stderr or "process failed")
        self.result = result


def _decode(stream: Union[str, bytes, None]) -> str:
    if isinstance(stream, str):
        return stream
    return (stream or b"").decode("utf-8", "replace")


def run_command(
    command: Sequence[str],
    *,
    check: bool = False,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
    cwd: Optional[Union[str, Path]] = None,
) -> ProcessResult:
    """Run ``command`` to completion, capturing text output.

    A missing executable surfaces as ``FileNotFoundError`` so callers can tell
    "tool not installed" apart from "tool failed".
    """
    command = [str(part) for part in command]
    log = logger.bind(component="process_utils", command=command[0])
    start = time.monotonic()
    try:
        completed = subprocess.run(
            command,
            check=False,
            timeout=timeout,
            text=True,
            capture_output=True,
            env=env,
            cwd=str(cwd) if isinstance(cwd, Path) else cwd,
        )
    except subprocess.TimeoutExpired as exc:
        raise ProcessError(
            ProcessResult(
                command,
                -1,
                _decode(exc.output),
                _decode(exc.stderr),
                time.monotonic() - start,
            ),
            message=f"Command timed out after {timeout}s: {' '.join(command)}",
        ) from exc

    result = ProcessResult(
        command,
        completed.returncode,
        _decode(completed.stdout),
        _decode(completed.stderr),
        time.monotonic() - start,
    )
    log.debug("Command finished", returncode=result.returncode, duration=round(result.duration, 3))

    if check and completed.returncode != 0:
        raise ProcessError(result)

    return result
