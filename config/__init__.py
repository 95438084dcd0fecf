"""Configuration package."""

from config.settings import CONFIG_KEYS, Settings, load_config, settings

__all__ = [
    "CONFIG_KEYS",
    "Settings",
    "load_config",
    "settings",
]
