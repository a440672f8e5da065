from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from bsrunner.schemas import BrowserSpec
from bsrunner.services.ports import DEFAULT_PORT_BASE

DEFAULT_CONFIG_PATH = Path("config.json")
DEFAULT_TUNNEL_JAR = "ext/BrowserStackTunnel.jar"
DEFAULT_COLLECTOR_PORT = 1942
DEFAULT_API_URL = "https://api.browserstack.com/4"

REQUIRED_KEYS = ("bs_username", "bs_password", "bs_key", "test_file", "directory", "browsers")


class ConfigError(ValueError):
    """Raised when the merged configuration cannot drive a run."""


class RunConfig(BaseModel):
    bs_username: str
    bs_password: str
    bs_key: str
    test_file: str
    directory: Path
    browsers: List[BrowserSpec]
    tunnel_jar: str = DEFAULT_TUNNEL_JAR
    collector_port: int = Field(default=DEFAULT_COLLECTOR_PORT, gt=0, lt=65536)
    port_base: int = Field(default=DEFAULT_PORT_BASE, gt=0, lt=65536)
    api_url: str = DEFAULT_API_URL
    verbose: bool = False

    @field_validator("test_file")
    @classmethod
    def strip_leading_slash(cls, value: str) -> str:
        return value.lstrip("/")


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RunConfig:
    """Read the JSON config file and layer command line values over it.

    Overrides that are ``None`` or empty leave the file value in place, so an
    unset flag never erases configuration. Every key in ``REQUIRED_KEYS`` must
    hold a value once both sources are merged.
    """
    data = _read_config_file(path or DEFAULT_CONFIG_PATH)
    for key, value in (overrides or {}).items():
        if value:
            data[key] = value

    for key in REQUIRED_KEYS:
        if not data.get(key):
            raise ConfigError(f"{key} not set in config or cli arguments")

    try:
        return RunConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
