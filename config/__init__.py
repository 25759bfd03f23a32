"""Configuration module for the citizen indexer.

Provides configuration management for persistence, site layout, address
resolution and logging.
"""

from .settings import (
    IndexerConfig,
    load_config,
    CONFIG_ENV_VAR
)

__all__ = [
    'IndexerConfig',
    'load_config',
    'CONFIG_ENV_VAR'
]
