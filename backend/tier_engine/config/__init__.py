"""
Configuration for the tier engine.
"""

from tier_engine.config.settings import TierEngineSettings, get_settings

__all__ = [
    "TierEngineSettings",
    "get_settings",
]
