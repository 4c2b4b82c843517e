"""Configuration loader for the Device Gateway.

Loads settings from a YAML file with built-in defaults. Supports environment
variable overrides using the GATEWAY_ prefix with double-underscore
nesting (e.g., GATEWAY_HEALTH__TIMEOUT=120).
"""

from __future__ import annotations

import os
import pathlib
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    name: str = "Device Gateway"
    host: str = "0.0.0.0"
    port: int = 3000


class WebSocketConfig(BaseModel):
    ping_interval: float = 30.0


class CommandConfig(BaseModel):
    default_timeout: float = 30.0


class HealthConfig(BaseModel):
    check_interval: float = 30.0
    timeout: float = 90.0

    @model_validator(mode="after")
    def _timeout_exceeds_interval(self) -> "HealthConfig":
        if self.timeout <= self.check_interval:
            raise ValueError("health.timeout must be greater than health.check_interval")
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    commands: CommandConfig = Field(default_factory=CommandConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Section merge helper
# ---------------------------------------------------------------------------

def _merge_sections(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Overlay *override* on *base* one section at a time.

    Settings are exactly two levels deep, so a section present in both is
    updated field by field and anything else is replaced.
    """
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in base.items()}
    for section, values in override.items():
        current = merged.get(section)
        if isinstance(current, dict) and isinstance(values, dict):
            current.update(values)
        else:
            merged[section] = values
    return merged


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "GATEWAY_"

_SECTIONS: dict[str, type[BaseModel]] = {
    "server": ServerConfig,
    "websocket": WebSocketConfig,
    "commands": CommandConfig,
    "health": HealthConfig,
    "logging": LoggingConfig,
}


def _collect_env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect GATEWAY_<SECTION>__<FIELD> env vars into a section dict.

    Only fields that exist on the settings models are picked up. Values stay
    strings; pydantic coerces them to each field's type.
    Example: GATEWAY_HEALTH__CHECK_INTERVAL=15
    becomes  {"health": {"check_interval": "15"}}
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, dict[str, str]] = {}
    for key, value in environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        section, sep, name = key[len(_ENV_PREFIX) :].lower().partition("__")
        model = _SECTIONS.get(section)
        if not sep or model is None or name not in model.model_fields:
            continue
        overrides.setdefault(section, {})[name] = value
    return overrides


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_BUILTIN_DEFAULTS_PATH = pathlib.Path(__file__).resolve().parents[3] / "config" / "gateway_defaults.yaml"


def load_settings(
    config_path: pathlib.Path | None = None,
) -> Settings:
    """Load settings with layered precedence: defaults < file < env vars.

    Parameters
    ----------
    config_path:
        Path to a YAML config file. If ``None`` or the file does not exist,
        built-in defaults are used.
    """
    base: dict[str, Any] = {}

    path = config_path if config_path is not None else _BUILTIN_DEFAULTS_PATH
    if path.exists():
        with open(path) as fh:
            file_data = yaml.safe_load(fh)
        if isinstance(file_data, dict):
            base = _merge_sections(base, file_data)

    env_overrides = _collect_env_overrides()
    if env_overrides:
        base = _merge_sections(base, env_overrides)

    return Settings(**base)
