"""
Configuration management for battlehost.
"""

from .config import ConfigStore, ConfigurationSnapshot, parse_snapshot
from .manager import mask_sensitive_config, log_snapshot

__all__ = [
    'ConfigStore',
    'ConfigurationSnapshot',
    'parse_snapshot',
    'mask_sensitive_config',
    'log_snapshot',
]
