"""Cadence configuration system."""

from cadence.config.manager import ConfigManager
from cadence.config.schema import CadenceConfig

__all__ = ["CadenceConfig", "ConfigManager"]
