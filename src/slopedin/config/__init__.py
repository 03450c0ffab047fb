from .config import (
    Config,
    FeedConfig,
    InferenceConfig,
    MonitoringConfig,
    PreferencesConfig,
    RelayConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "Config",
    "FeedConfig",
    "InferenceConfig",
    "MonitoringConfig",
    "PreferencesConfig",
    "RelayConfig",
    "find_config_file",
    "load_config",
]
