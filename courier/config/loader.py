"""Configuration loading utilities."""

import json
import os
import re
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError

from courier.config.schema import Config

# KEY=value, optionally quoted; "export " prefixes are tolerated.
_DOTENV_LINE = re.compile(
    r"""^\s*(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*?)\s*$"""
)
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".courier" / "config.json"


def get_env_path() -> Path:
    return Path.home() / ".courier" / ".env"


def _load_dotenv(env_path: Path) -> dict[str, str]:
    """Read KEY=value pairs from a .env file. Comments and junk lines are skipped."""
    if not env_path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw in env_path.read_text(encoding="utf-8").splitlines():
        if raw.lstrip().startswith("#"):
            continue
        match = _DOTENV_LINE.match(raw)
        if not match:
            continue
        value = match["value"]
        if value[:1] in ("'", '"') and len(value) >= 2 and value[-1] == value[0]:
            value = value[1:-1]
        values[match["key"]] = value
    return values


def _inject_env(env_path: Path) -> None:
    """Export .env values; variables already set in the environment are kept."""
    for key, value in _load_dotenv(env_path).items():
        if key not in os.environ:
            os.environ[key] = value


def load_config(config_path: Path | None = None, env_path: Path | None = None) -> Config:
    """
    Load configuration from file + environment.

    Precedence, highest first:
      1. Environment variables (``COURIER_RETRY__MAX_RETRIES=5``)
      2. The .env file next to the config
      3. config.json

    A file that cannot be read or validated is reported and replaced by the
    defaults; delivery should never stop on a bad config file.
    """
    path = config_path or get_config_path()
    _inject_env(env_path or get_env_path())

    data: dict[str, Any] = {}
    if path.exists():
        try:
            data = convert_keys(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read config from {path}: {e}; using defaults")

    try:
        return Config(**data)
    except ValidationError as e:
        logger.warning(f"Invalid config in {path}: {e}; using defaults")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """Write ``config`` as camelCase JSON and return the path written."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(convert_to_camel(config.model_dump()), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    return path


def _rekey(data: Any, rename: Callable[[str], str]) -> Any:
    if isinstance(data, dict):
        return {rename(k): _rekey(v, rename) for k, v in data.items()}
    if isinstance(data, list):
        return [_rekey(item, rename) for item in data]
    return data


def convert_keys(data: Any) -> Any:
    """camelCase keys (as stored on disk) to snake_case field names."""
    return _rekey(data, camel_to_snake)


def convert_to_camel(data: Any) -> Any:
    return _rekey(data, snake_to_camel)


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)
