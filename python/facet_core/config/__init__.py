"""Engine configuration."""

from facet_core.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
