"""Indexer configuration.

Settings are resolved in three layers: built-in defaults, an optional YAML
file, then ``CITIZEN_*`` environment variables.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'CITIZEN_CONFIG'

# Environment variable -> config field
ENV_OVERRIDES = {
    'CITIZEN_WRITE_DELAY': 'write_delay',
    'CITIZEN_INDEX_DIR': 'index_dir',
    'CITIZEN_POSTS_DIR': 'posts_dir',
    'CITIZEN_PROFILE_PATH': 'profile_path',
    'CITIZEN_RESOLVER_TIMEOUT': 'resolver_timeout',
    'CITIZEN_RESOLVER_MAX_RETRIES': 'resolver_max_retries',
    'CITIZEN_RESOLVER_RETRY_DELAY': 'resolver_retry_delay',
    'CITIZEN_RESOLVER_SCHEME': 'resolver_scheme',
    'CITIZEN_MAX_CONCURRENT_CRAWLS': 'max_concurrent_crawls',
    'CITIZEN_LOG_LEVEL': 'log_level',
    'CITIZEN_LOG_JSON': 'log_json',
    'CITIZEN_LOG_FILE': 'log_file',
}


class IndexerConfig(BaseModel):
    """Crawl and index configuration."""
    # Persistence
    write_delay: float = Field(default=5.0, ge=0, description="Debounce window for index writes in seconds")
    index_dir: str = Field(default="/index", description="Directory holding the index files")

    # Site layout
    posts_dir: str = Field(default="/posts", description="Directory holding a site's posts")
    profile_path: str = Field(default="/profile.json", description="Path of a site's profile record")

    # Address resolution
    resolver_timeout: float = Field(default=10.0, gt=0, description="Well-known lookup timeout in seconds")
    resolver_max_retries: int = Field(default=2, ge=0, description="Retries for a failed well-known lookup")
    resolver_retry_delay: float = Field(default=0.5, ge=0, description="Base retry delay in seconds")
    resolver_scheme: str = Field(default="https", description="Scheme used to fetch well-known files")

    # Crawling
    max_concurrent_crawls: int = Field(default=4, ge=1, description="Sites crawled concurrently by crawl_sites")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON log lines on the console")
    log_file: Optional[str] = Field(default=None, description="Optional JSON log file")

    @property
    def site_index_path(self) -> str:
        return f"{self.index_dir.rstrip('/')}/citizen.json"

    @property
    def feed_index_path(self) -> str:
        return f"{self.index_dir.rstrip('/')}/citizen/microblog.json"

    @property
    def social_index_path(self) -> str:
        return f"{self.index_dir.rstrip('/')}/citizen/social.json"

    @classmethod
    def from_env(cls, base: Optional['IndexerConfig'] = None,
                 environ: Optional[Dict[str, str]] = None) -> 'IndexerConfig':
        """Apply ``CITIZEN_*`` environment overrides on top of ``base``."""
        environ = os.environ if environ is None else environ
        data = (base or cls()).model_dump()
        for env_name, field_name in ENV_OVERRIDES.items():
            if env_name in environ:
                data[field_name] = environ[env_name]
        return cls.model_validate(data)

    @classmethod
    def from_yaml(cls, path: str) -> 'IndexerConfig':
        """Load configuration from a YAML file, falling back to defaults."""
        config_path = Path(path)
        if not config_path.exists():
            logger.info(f"Indexer config file not found at {config_path}, using defaults")
            return cls()

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data: Any = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError("top-level YAML value must be a mapping")
            # Allow the settings to live under an "indexer" section
            data = data.get('indexer', data)
            return cls.model_validate(data)
        except (yaml.YAMLError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load indexer config from {config_path}: {e}")
            return cls()


def load_config(config_path: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None) -> IndexerConfig:
    """Resolve defaults, the YAML file and environment overrides."""
    environ = os.environ if environ is None else environ
    config_path = config_path or environ.get(CONFIG_ENV_VAR)
    base = IndexerConfig.from_yaml(config_path) if config_path else IndexerConfig()
    return IndexerConfig.from_env(base, environ)
