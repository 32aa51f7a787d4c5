"""
Configuration management modules for the PM2 client agent.
"""
from .config_manager import ConfigManager, DEFAULT_SERVER_URL

__all__ = [
    'ConfigManager',
    'DEFAULT_SERVER_URL'
]
