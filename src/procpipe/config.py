"""Layered settings for procpipe runners.

Priority, highest first: ``PROCPIPE_*`` environment variables, the project
``./procpipe.yaml``, the user ``~/.config/procpipe/config.yaml``, and the
model defaults.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from procpipe.exceptions import ConfigError
from procpipe.logging import get_logger

__all__ = [
    "BackgroundConfig",
    "CaptureConfig",
    "DecodingConfig",
    "ProcpipeConfig",
    "get_config",
    "get_project_config_path",
    "get_user_config_path",
    "load_config",
]

logger = get_logger(__name__)


class CaptureConfig(BaseModel):
    """Settings for the synchronous capture runner.

    Attributes:
        kill_retry_timeout_ms: How long each kill attempt waits for the
            process to die before the kill is repeated.
        default_timeout_ms: Timeout used by ``run`` when the caller passes
            none. 0 waits indefinitely.
    """

    kill_retry_timeout_ms: int = Field(default=1000, gt=0, le=60_000)
    default_timeout_ms: int = Field(default=0, ge=0)


class BackgroundConfig(BaseModel):
    """Settings for the event-driven background process.

    Attributes:
        poll_interval_ms: Interval between poll-callback invocations while
            waiting for the readers to finish.
        exit_grace_ms: After the process exits, how long the readers may go
            without delivering a line before the exit notification is sent
            without waiting for end-of-stream.
    """

    poll_interval_ms: int = Field(default=1, gt=0, le=10_000)
    exit_grace_ms: int = Field(default=100, gt=0, le=60_000)


class DecodingConfig(BaseModel):
    """Text decoding applied to the child's pipes."""

    encoding: str = "utf-8"
    errors: str = "replace"

    @field_validator("errors")
    @classmethod
    def check_error_handler(cls, v: str) -> str:
        allowed = {"strict", "replace", "ignore", "backslashreplace", "surrogateescape"}
        if v not in allowed:
            raise ValueError(f"errors must be one of {sorted(allowed)}")
        return v


class YamlConfigSource(PydanticBaseSettingsSource):
    """Settings source that loads one YAML file if it exists."""

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        yaml_file: Path | None = None,
    ):
        super().__init__(settings_cls)
        self.yaml_file = yaml_file
        self._config_data: dict[str, Any] = {}
        if yaml_file and yaml_file.exists():
            try:
                with open(yaml_file) as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(
                    message=f"Invalid YAML in {yaml_file}: {e}",
                    field=None,
                    value=None,
                ) from e
            if loaded is None:
                logger.warning("config_file_empty", path=str(yaml_file))
            elif not isinstance(loaded, dict):
                raise ConfigError(
                    message=f"Config file {yaml_file} must contain a mapping",
                    value=loaded,
                )
            else:
                self._config_data = loaded

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        if field_name in self._config_data:
            return self._config_data[field_name], field_name, False
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return self._config_data


class ProcpipeConfig(BaseSettings):
    """Root configuration object containing all procpipe settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROCPIPE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    decoding: DecodingConfig = Field(default_factory=DecodingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Order settings sources.

        Earlier sources win: explicit init kwargs, environment, project YAML,
        user YAML.
        """
        return (
            init_settings,
            env_settings,
            YamlConfigSource(settings_cls, get_project_config_path()),
            YamlConfigSource(settings_cls, get_user_config_path()),
        )


def get_user_config_path() -> Path:
    """Path to ~/.config/procpipe/config.yaml."""
    return Path.home() / ".config" / "procpipe" / "config.yaml"


def get_project_config_path() -> Path:
    """Path to ./procpipe.yaml in the current working directory."""
    return Path.cwd() / "procpipe.yaml"


def load_config() -> ProcpipeConfig:
    """Load configuration from every source.

    Returns:
        ProcpipeConfig with merged configuration.

    Raises:
        ConfigError: If a YAML file or a value is invalid.
    """
    try:
        return ProcpipeConfig()
    except ValidationError as e:
        first_error = e.errors()[0]
        field = ".".join(str(loc) for loc in first_error["loc"])
        raise ConfigError(
            message=f"Invalid configuration: {first_error['msg']}",
            field=field,
            value=first_error.get("input"),
        ) from e


@lru_cache(maxsize=1)
def get_config() -> ProcpipeConfig:
    """Process-wide configuration, loaded once.

    Call ``get_config.cache_clear()`` to pick up changed files or
    environment variables.
    """
    return load_config()
