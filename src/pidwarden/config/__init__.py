"""Configuration loading for pidwarden.

A configuration file is TOML with `[logging]`, `[store]`, `[logs]`,
`[control]` and `[supervisor]` sections plus one `[[services]]` table per
supervised service.
"""

from ._loader import (
    ENV_LOG_DIR,
    ENV_STATE_DIR,
    apply_env_overrides,
    config_from_dict,
    load_config,
    read_toml_file,
)
from ._models import (
    Config,
    ControlConfig,
    LogFormat,
    LoggingConfig,
    LogLevel,
    LogsConfig,
    ProgressConfig,
    ServiceSpec,
    StoreConfig,
    SupervisorSettings,
)

__all__ = [
    "ENV_LOG_DIR",
    "ENV_STATE_DIR",
    "Config",
    "ControlConfig",
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "LogsConfig",
    "ProgressConfig",
    "ServiceSpec",
    "StoreConfig",
    "SupervisorSettings",
    "apply_env_overrides",
    "config_from_dict",
    "load_config",
    "read_toml_file",
]
