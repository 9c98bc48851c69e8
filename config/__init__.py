"""Configuration management."""

from .config_manager import ConfigManager
from .models import AppConfig

__all__ = ["ConfigManager", "AppConfig"]
