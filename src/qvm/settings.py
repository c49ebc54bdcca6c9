"""Pydantic settings for qvm."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .paths import qvm_home


class QVMSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QVM_",
        env_file=".env",
        extra="ignore",
    )

    home: Path = Field(
        default_factory=lambda: qvm_home(),
        description="Directory holding one <name>.qvm directory per VM.",
    )
    stop_timeout: float = Field(
        10.0, gt=0, description="Seconds to wait after SIGTERM before giving up or killing."
    )
    lock_timeout: float = Field(
        10.0, ge=0, description="Seconds to wait for another invocation's VM lock."
    )
    spawn_settle_delay: float = Field(
        0.5, ge=0, description="Seconds the engine must survive before a start counts."
    )
    log_level: str = Field("INFO", description="Minimum log level.")
    log_json: bool = Field(False, description="Render logs as JSON instead of console text.")

    @field_validator("home")
    @classmethod
    def absolute_home(cls, value: Path) -> Path:
        return value.expanduser().absolute()
