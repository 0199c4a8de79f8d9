"""Configuration package for the booking core."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
