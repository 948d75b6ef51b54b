"""Settings and tunables."""

from event_catalog.configs.config import Config, DedupConfig
from event_catalog.configs.settings import Settings, get_settings

__all__ = ["Config", "DedupConfig", "Settings", "get_settings"]
