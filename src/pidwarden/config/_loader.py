# pyright: reportAny=false, reportUnknownVariableType=false, reportUnknownArgumentType=false
"""TOML configuration file loading."""

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pidwarden.exceptions import ConfigLoadError

from ._models import Config

ENV_STATE_DIR = "PIDWARDEN_STATE_DIR"
ENV_LOG_DIR = "PIDWARDEN_LOG_DIR"


def read_toml_file(path: Path) -> dict[str, Any]:  # pyright: ignore[reportExplicitAny]
    """Read and parse a TOML file.

    Args:
        path: Path to the TOML file.

    Returns:
        Parsed TOML content as dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigLoadError: If the file cannot be parsed.
    """
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        msg = f"Failed to parse TOML file: {e}"
        raise ConfigLoadError(
            msg,
            path=path,
            line=getattr(e, "lineno", None),
            column=getattr(e, "colno", None),
        ) from e


def apply_env_overrides(
    data: dict[str, Any],  # pyright: ignore[reportExplicitAny]
) -> dict[str, Any]:  # pyright: ignore[reportExplicitAny]
    """Apply directory overrides from the environment.

    `PIDWARDEN_STATE_DIR` replaces `store.directory` and `PIDWARDEN_LOG_DIR`
    replaces `logs.directory`. The input is not modified.
    """
    result = dict(data)
    for env_var, section in ((ENV_STATE_DIR, "store"), (ENV_LOG_DIR, "logs")):
        value = os.environ.get(env_var)
        if not value:
            continue
        existing = result.get(section)
        merged = dict(existing) if isinstance(existing, dict) else {}
        merged["directory"] = value
        result[section] = merged
    return result


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


def config_from_dict(
    data: dict[str, Any],  # pyright: ignore[reportExplicitAny]
    *,
    base_dir: Path,
    path: Path | None = None,
) -> Config:
    """Validate parsed configuration data.

    Args:
        data: Parsed configuration.
        base_dir: Directory relative paths are resolved against.
        path: Source file, for error messages.

    Raises:
        ConfigLoadError: If the data does not describe a valid configuration.
    """
    try:
        return Config.model_validate({**apply_env_overrides(data), "base_dir": base_dir})
    except ValidationError as e:
        msg = f"Invalid configuration: {_format_validation_error(e)}"
        raise ConfigLoadError(msg, path=path) from e


def load_config(path: Path) -> Config:
    """Load and validate a configuration file.

    Relative directories in the file are resolved against the directory
    containing it.

    Args:
        path: Path to the TOML configuration file.

    Returns:
        The validated configuration.

    Raises:
        ConfigLoadError: If the file is missing, unreadable or invalid.
    """
    try:
        data = read_toml_file(path)
    except FileNotFoundError as e:
        msg = f"Config file not found: {path}"
        raise ConfigLoadError(msg, path=path) from e
    except OSError as e:
        msg = f"Failed to read config file: {e}"
        raise ConfigLoadError(msg, path=path) from e

    return config_from_dict(data, base_dir=path.resolve().parent, path=path)
