"""Configuration management for squidctl."""

import logging
import sys
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class DeviceSettings(BaseModel):
    """Instrument connection defaults."""

    com_port: Optional[str] = Field(None, description="Serial port of the potentiostat, e.g. COM3")
    channel: int = Field(0, ge=0)
    channels: int = Field(1, ge=1, description="Channel count of the instrument")
    timeout_s: float = Field(3600.0, gt=0, description="Maximum run time before an experiment is stopped")
    instrument_type: Literal["auto", "simulation", "squidstat"] = "auto"


class StorageSettings(BaseModel):
    output_dir: Path = Path("./data")


class BrokerSettings(BaseModel):
    """TCP fan-out of streamed data points."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(5555, ge=0, le=65535)


class RetrySettings(BaseModel):
    max_attempts: int = Field(3, ge=1)
    backoff_s: float = Field(1.0, ge=0)
    backoff_factor: float = Field(2.0, ge=1)


class RemoteSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(5556, ge=0, le=65535)


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SQUIDCTL_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    debug: bool = False
    simulation_mode: bool = True
    log_level: str = "INFO"

    device: DeviceSettings = Field(default_factory=DeviceSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)

    def model_post_init(self, __context: Any) -> None:
        """Ensure the output directory exists."""
        self.storage.output_dir.mkdir(parents=True, exist_ok=True)


def load_settings(path: Union[str, Path], apply: bool = True) -> Settings:
    """Build settings from a YAML file.

    Values in the file take precedence over environment variables. Sections
    missing from the file fall back to their defaults, for example::

        device:
          com_port: COM3
          channel: 0
          channels: 4
          timeout_s: 600
        storage:
          output_dir: ./runs
        broker:
          enabled: true
          host: 0.0.0.0
          port: 5555

    Args:
        path: YAML file to read
        apply: Install the result as the module-level :data:`settings`, which
            every service reads its defaults from

    Returns:
        The module-level settings when `apply` is set, else a detached copy
    """
    with Path(path).open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    loaded = Settings(**payload)
    if not apply:
        return loaded
    apply_settings(loaded)
    return settings


def apply_settings(source: Settings) -> None:
    """Copy every field of `source` onto the module-level settings in place."""

    for name in Settings.model_fields:
        setattr(settings, name, getattr(source, name))
    logger.debug("Settings updated (simulation_mode=%s)", settings.simulation_mode)


def configure_logging(level: Optional[str] = None) -> None:
    """Install a single stream handler on the root logger."""

    if settings.debug:
        level = "DEBUG"
    level_name = (level or settings.log_level).upper()

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    )
    root.addHandler(handler)
    root.setLevel(level_name)


# Global settings instance
settings = Settings()
