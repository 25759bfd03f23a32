"""Indexer package: record decoding plus the feed and social indexes."""

from .schemas import (
    CrawlOptions,
    FeedItem,
    FeedQuery,
    Follow,
    PostRecord,
    ProfileRecord,
    SiteRecord,
    load_json,
    decode_crawl_options,
    decode_feed_query,
    decode_post,
    decode_profile
)
from .feed_index import FeedIndexer
from .social_index import SocialGraphIndexer

__all__ = [
    'CrawlOptions',
    'FeedItem',
    'FeedQuery',
    'Follow',
    'PostRecord',
    'ProfileRecord',
    'SiteRecord',
    'load_json',
    'decode_crawl_options',
    'decode_feed_query',
    'decode_post',
    'decode_profile',
    'FeedIndexer',
    'SocialGraphIndexer'
]
