"""
Utility modules for the crawler: configuration, logging and monitoring.
"""

from .config import Config, ConfigManager, load_config

__all__ = ['Config', 'ConfigManager', 'load_config']
