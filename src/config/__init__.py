"""
Configuration module for the personalization engine.

Environment-driven settings use pydantic-settings; algorithm constants
live in frozen dataclasses.

Usage:
    from config import get_settings

    settings = get_settings()
    blocklist_config = settings.to_blocklist_config()
"""

from config.settings import Settings, get_settings, get_settings_for_testing

__all__ = [
    "Settings",
    "get_settings",
    "get_settings_for_testing",
]
