"""
FeedRelay Ingestion Module
==========================

Feed payload caching and parsing into normalized candidate items.
"""

from .fetch_cache import FetchCache, CachedResponse
from .feed_parser import FeedParser, ParsedFeed

__all__ = [
    "FetchCache",
    "CachedResponse",
    "FeedParser",
    "ParsedFeed",
]
