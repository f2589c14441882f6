"""
Wires storage, crawler and indexer together from a Config.
"""

import logging
from typing import Iterable, List, Optional

from .crawler.fetcher import WebFetcher
from .crawler.parser import ContentParser
from .crawler.scheduler import CrawlScheduler, CrawlStats
from .indexer.index import IndexBuilder, IndexStats
from .storage.database import DatabaseManager, StorageBackend
from .storage.models import CrawlRecord, SearchSettings
from .utils.config import Config
from .utils.monitoring import CrawlerMonitor, MetricsCollector


class SearchEngine:
    """
    Entry point for the scheduler and query layers.

    Owns one storage handle and passes it to the crawl scheduler and the index
    builder; nothing below this class reaches for a global connection.
    """

    def __init__(self, config: Config, backend: Optional[StorageBackend] = None,
                 fetcher: Optional[WebFetcher] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.monitor = CrawlerMonitor(MetricsCollector(
            enable_prometheus=config.monitoring.metrics_enabled,
            prometheus_port=config.monitoring.prometheus_port,
        ))
        self.database = DatabaseManager(config.database, config.search, backend=backend)
        self.fetcher = fetcher or WebFetcher(
            user_agent=config.crawler.user_agent,
            request_timeout=config.crawler.request_timeout,
            max_concurrent_requests=config.crawler.max_concurrent_requests,
            max_content_size=config.crawler.max_content_size,
        )
        self.parser = ContentParser(max_nodes=config.crawler.max_nodes)
        self.scheduler = CrawlScheduler(
            self.database,
            self.fetcher,
            self.parser,
            monitor=self.monitor,
            max_concurrent_requests=config.crawler.max_concurrent_requests,
            max_concurrent_per_host=config.crawler.max_concurrent_per_host,
        )
        self.indexer = IndexBuilder(self.database, monitor=self.monitor)

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """Open storage and start the HTTP session."""
        await self.database.initialize()
        await self.fetcher.start()
        self.logger.info("Search engine initialized")

    async def close(self):
        await self.fetcher.close()
        await self.database.close()
        self.logger.info("Search engine closed")

    async def run_crawl(self) -> CrawlStats:
        return await self.scheduler.run_crawl()

    async def run_index(self) -> IndexStats:
        return await self.indexer.run_index()

    async def search(self, term: str) -> List[CrawlRecord]:
        return await self.indexer.search(term)

    async def seed(self, urls: Iterable[str]) -> int:
        """Add start URLs; returns how many were new."""
        added = 0
        for url in urls:
            url = url.strip()
            if url and await self.database.insert_if_absent(url):
                added += 1
        self.logger.info(f"Seeded {added} new URLs")
        return added

    async def get_settings(self) -> SearchSettings:
        return await self.database.get_settings()

    async def update_settings(self, amount: Optional[int] = None, search_on: Optional[bool] = None,
                              add_new: Optional[bool] = None) -> SearchSettings:
        """Change any subset of the settings and return the stored result."""
        settings = await self.database.get_settings()
        if amount is not None:
            if amount < 0:
                raise ValueError("amount must be non-negative")
            settings.amount = amount
        if search_on is not None:
            settings.search_on = search_on
        if add_new is not None:
            settings.add_new = add_new
        await self.database.update_settings(settings)
        return await self.database.get_settings()
