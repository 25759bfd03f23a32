"""Pipelines package for the citizen indexer.

Provides crawl coordination, debounced index persistence and the site
author API.
"""

from .persistence import DebouncedWriter
from .crawler import CrawlCoordinator, CrawlState, SiteCrawlResult
from .author import AuthoredPost, SiteAuthor, generate_post_id

__all__ = [
    # Crawler
    'CrawlCoordinator',
    'CrawlState',
    'SiteCrawlResult',

    # Persistence
    'DebouncedWriter',

    # Author
    'AuthoredPost',
    'SiteAuthor',
    'generate_post_id'
]
