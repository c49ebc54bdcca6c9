"""Load and atomically persist ``vm.json`` documents."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import ValidationError

from .errors import ConfigParseError, SchemaVersionError, VMIOError, VMNotFoundError
from .models import SCHEMA_VERSION, VMConfig
from .paths import CONFIG_FILENAME, conf_path

logger = structlog.get_logger()


def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def _raw_version(raw: dict) -> Optional[int]:
    meta = raw.get("meta")
    version = meta.get("version") if isinstance(meta, dict) else None
    if isinstance(version, bool):
        return None
    try:
        return int(version)
    except (TypeError, ValueError):
        return None


def _check_version(version: Optional[int], source: Path, name: Optional[str]) -> None:
    if version is not None and version > SCHEMA_VERSION:
        raise SchemaVersionError(
            f"{source} uses schema version {version}; this qvm supports up to {SCHEMA_VERSION}",
            vm=name,
            found=version,
            supported=SCHEMA_VERSION,
        )


def load_config(vm_dir: Union[str, Path], name: Optional[str] = None) -> VMConfig:
    """Read and validate the configuration stored in ``vm_dir``.

    ``paths.root`` is re-bound to ``vm_dir`` when the directory was moved since
    the document was written.
    """
    vm_dir = Path(vm_dir).absolute()
    source = conf_path(vm_dir)
    try:
        text = source.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise VMNotFoundError(
            f"VM '{name or vm_dir.name}' has no {CONFIG_FILENAME} in {vm_dir}",
            vm=name,
            path=source,
        ) from exc
    except OSError as exc:
        raise VMIOError(f"Unable to read {source}: {exc}", vm=name) from exc

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigParseError(f"{source} is not valid JSON: {exc}", vm=name) from exc
    if not isinstance(raw, dict):
        raise ConfigParseError(f"{source} must contain a JSON object", vm=name)

    # Newer layouts may not validate at all.
    _check_version(_raw_version(raw), source, name)

    try:
        config = VMConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigParseError(
            f"{source} is invalid: {format_validation_error(exc)}", vm=name
        ) from exc
    _check_version(config.meta.version, source, name)

    if config.paths.root != vm_dir:
        logger.warning(
            "VM directory moved; re-binding root",
            vm=config.name,
            recorded_root=str(config.paths.root),
            actual_root=str(vm_dir),
        )
        config = config.model_copy(
            update={"paths": config.paths.model_copy(update={"root": vm_dir})}
        )
    return config


def save_config(config: VMConfig) -> None:
    """Write ``config`` to ``<root>/vm.json`` via a temporary file and rename."""
    root = config.paths.root
    target = conf_path(root)
    payload = json.dumps(config.model_dump(mode="json"), indent=2) + "\n"

    temp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=root,
            prefix=f".{CONFIG_FILENAME}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            temp_path = Path(tmp.name)
            tmp.write(payload)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(temp_path, target)
        temp_path = None
    except OSError as exc:
        raise VMIOError(f"Unable to write {target}: {exc}", vm=config.name) from exc
    finally:
        if temp_path is not None:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass

    logger.debug("Configuration saved", vm=config.name, path=str(target))
