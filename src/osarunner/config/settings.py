"""Configuration management for osarunner.

Loads settings from a YAML configuration file with environment variable
overrides (``OSARUNNER_`` prefix, ``__`` for nested keys). Supports .env
files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from osarunner.domain.models import CorrelationMode, RestartPolicy
from osarunner.pipeline.framing import DEFAULT_DELIMITER

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/osarunner.yaml")


class PipelineConfig(BaseModel):
    interpreter: str = Field(default="osascript", description="Command the script is piped into")
    shell: str = Field(default="/bin/sh")
    correlation: CorrelationMode = Field(default=CorrelationMode.FIFO)
    restart_policy: RestartPolicy = Field(default=RestartPolicy.REJECT_IN_FLIGHT)
    delimiter: str = Field(default=DEFAULT_DELIMITER, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    command_timeout: float | None = Field(default=None, gt=0)
    close_timeout: float = Field(default=5.0, gt=0)
    stream_limit: int = Field(default=16 * 1024 * 1024, gt=0)


class EndpointConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765, ge=1, le=65535)


class ClientConfig(BaseModel):
    base_url: str = Field(default="http://127.0.0.1:8765")
    timeout: float = Field(default=60.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for osarunner.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "OSARUNNER_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: env vars > .env file > YAML file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    _load_dotenv()

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _load_dotenv() -> None:
    """Load .env file into os.environ if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                if not os.environ.get(key):
                    os.environ[key] = value


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply overrides from prefixed environment variables.

    Init kwargs beat environment variables in pydantic-settings, so
    nested sections read from YAML are patched here to keep env vars on
    top.
    """
    prefix = "OSARUNNER_"
    for key, value in os.environ.items():
        if not key.startswith(prefix) or "__" not in key:
            continue
        section, _, field = key[len(prefix):].lower().partition("__")
        if section in yaml_data and isinstance(yaml_data[section], dict):
            yaml_data[section][field] = value
