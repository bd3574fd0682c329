"""Configuration package for the UPI order service."""
from .settings import KNOWN_CHANNELS, VPA_PATTERN, Settings, get_settings

__all__ = ["KNOWN_CHANNELS", "VPA_PATTERN", "Settings", "get_settings"]
