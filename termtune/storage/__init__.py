"""
Storage Layer.

This package handles all data persistence: the INI configuration file and the
on-disk audio content cache with its manifest.
"""

from .cache import ContentCache
from .config_manager import ConfigManager

__all__ = ["ConfigManager", "ContentCache"]
