"""
Crawl pipeline components.
"""

from .fetcher import WebFetcher, FetchResult
from .parser import ContentParser, ParsedPage, ExtractionError, classify_link
from .scheduler import CrawlScheduler, CrawlStats

__all__ = [
    'WebFetcher', 'FetchResult',
    'ContentParser', 'ParsedPage', 'ExtractionError', 'classify_link',
    'CrawlScheduler', 'CrawlStats'
]
