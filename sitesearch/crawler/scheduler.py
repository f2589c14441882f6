"""
Crawl scheduler: runs one crawl batch from selection through write-back and URL discovery.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlsplit

from .fetcher import WebFetcher
from .parser import ContentParser, ExtractionError, ParsedPage
from ..storage.database import DatabaseManager, DatabaseError
from ..storage.models import CrawlRecord, utcnow
from ..utils.logger import get_crawler_logger, LoggingContext
from ..utils.monitoring import CrawlerMonitor


@dataclass
class CrawlStats:
    """Statistics for one crawl run."""
    start_time: float
    batch_size: int = 0
    urls_crawled: int = 0
    successes: int = 0
    failures: int = 0
    write_errors: int = 0
    candidates: int = 0
    urls_discovered: int = 0
    skipped: bool = False
    aborted: bool = False

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def pages_per_minute(self) -> float:
        elapsed_minutes = self.elapsed_time / 60
        return self.urls_crawled / elapsed_minutes if elapsed_minutes > 0 else 0


class CrawlScheduler:
    """
    Coordinates the fetcher, the parser and storage for one batch of untested URLs.

    Every selected record is written back as tested, failed or not; a URL that
    fails is not selected again unless its ``last_tested`` is cleared.
    """

    def __init__(self, database: DatabaseManager, fetcher: WebFetcher, parser: ContentParser,
                 monitor: Optional[CrawlerMonitor] = None, max_concurrent_requests: int = 1,
                 max_concurrent_per_host: int = 1):
        self.database = database
        self.fetcher = fetcher
        self.parser = parser
        self.monitor = monitor or CrawlerMonitor()
        self.max_concurrent_requests = max_concurrent_requests
        self.max_concurrent_per_host = max_concurrent_per_host

        self.logger = logging.getLogger(__name__)
        self.log = get_crawler_logger(__name__, component='crawler')
        self.is_running = False

    async def run_crawl(self) -> CrawlStats:
        """
        Crawl up to ``settings.amount`` untested URLs.

        Returns:
            CrawlStats for the run; ``skipped`` when search is turned off,
            ``aborted`` when settings or the batch could not be read.
        """
        stats = CrawlStats(start_time=time.time())

        if self.is_running:
            self.logger.warning("Crawl already running, skipping this trigger")
            stats.skipped = True
            return stats

        self.is_running = True
        try:
            await self._run(stats)
        finally:
            self.is_running = False
        return stats

    async def _run(self, stats: CrawlStats):
        self.logger.info("Crawl run started")

        try:
            settings = await self.database.get_settings()
        except DatabaseError as e:
            self.logger.error(f"Could not read search settings: {e}")
            stats.aborted = True
            return

        if not settings.search_on:
            self.logger.info("Search is turned off, nothing to crawl")
            stats.skipped = True
            return

        try:
            batch = await self.database.get_untested(settings.amount)
        except DatabaseError as e:
            self.logger.error(f"Could not load the next batch of URLs: {e}")
            stats.aborted = True
            return

        stats.batch_size = len(batch)
        self.monitor.record_batch_size(len(batch))

        # Shared by every record in this run
        tested_at = utcnow()

        with LoggingContext(self.log, run_started=tested_at.isoformat()):
            if self.max_concurrent_requests > 1 and len(batch) > 1:
                found_links = await self._crawl_concurrently(batch, tested_at, stats)
            else:
                found_links = []
                for record in batch:
                    found_links.append(await self._crawl_record(record, tested_at, stats))

            if settings.add_new:
                await self._add_new_urls(found_links, stats)
            else:
                self.logger.info("Adding new URLs is disabled, discarding discovered links")

            self._log_final_stats(stats)

    async def _crawl_record(self, record: CrawlRecord, tested_at: datetime,
                            stats: CrawlStats) -> List[str]:
        """Fetch, extract and write back one record; returns links found on success."""
        result = await self.fetcher.fetch(record.url)
        stats.urls_crawled += 1
        self.monitor.record_url_crawled(result.fetch_time)

        page = ParsedPage()
        success = result.success
        if not success:
            reason = 'transport' if result.status_code == 0 else 'status'
            self.monitor.record_crawl_failure(reason)
            self.log.log_url_event(logging.WARNING, record.url,
                                   f"Crawl failed ({result.status_code}): {result.error}")
        elif result.is_html:
            try:
                page = self.parser.parse(record.url, result.content)
            except ExtractionError as e:
                success = False
                self.monitor.record_crawl_failure('parse')
                self.log.log_url_event(logging.WARNING, record.url, f"Extraction failed: {e}")

        updated = replace(
            record,
            success=success,
            response_code=result.status_code,
            crawl_duration=page.extraction_time,
            page_title=page.title,
            page_description=page.description,
            headings=page.headings,
            last_tested=tested_at,
        )
        try:
            await self.database.update_result(updated)
        except DatabaseError as e:
            stats.write_errors += 1
            self.monitor.record_crawl_failure('storage')
            self.log.log_url_event(logging.ERROR, record.url, f"Could not save crawl result: {e}")

        if not success:
            stats.failures += 1
            return []

        stats.successes += 1
        self.log.log_url_event(logging.DEBUG, record.url,
                               f"Crawled {result.status_code}, {len(page.links)} links")
        return page.links

    async def _crawl_concurrently(self, batch: List[CrawlRecord], tested_at: datetime,
                                  stats: CrawlStats) -> List[List[str]]:
        """Bounded worker pool with one semaphore per host."""
        queue: asyncio.Queue = asyncio.Queue()
        for record in batch:
            queue.put_nowait(record)

        host_semaphores: Dict[str, asyncio.Semaphore] = {}
        found_links: List[List[str]] = []

        async def worker():
            while True:
                try:
                    record = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                host = _host_key(record.url)
                if host not in host_semaphores:
                    host_semaphores[host] = asyncio.Semaphore(self.max_concurrent_per_host)
                async with host_semaphores[host]:
                    found_links.append(await self._crawl_record(record, tested_at, stats))

        num_workers = min(self.max_concurrent_requests, len(batch))
        workers = [asyncio.create_task(worker()) for _ in range(num_workers)]
        self.logger.info(f"Crawling batch of {len(batch)} with {num_workers} workers")
        await asyncio.gather(*workers)
        return found_links

    async def _add_new_urls(self, found_links: List[List[str]], stats: CrawlStats):
        """Insert every newly seen link as an untested record."""
        candidates: List[str] = []
        seen = set()
        for links in found_links:
            for url in links:
                if url not in seen:
                    seen.add(url)
                    candidates.append(url)

        for url in candidates:
            try:
                if await self.database.url_exists(url):
                    continue
                stats.candidates += 1
                # Losing a race to another insert is fine
                if await self.database.insert_if_absent(url):
                    stats.urls_discovered += 1
            except DatabaseError as e:
                stats.write_errors += 1
                self.log.log_url_event(logging.ERROR, url, f"Could not add discovered URL: {e}")

        self.monitor.record_urls_discovered(stats.urls_discovered)
        self.logger.info(f"Added {stats.urls_discovered} new URLs to storage")

    def _log_final_stats(self, stats: CrawlStats):
        self.logger.info("=== CRAWL RUN COMPLETED ===")
        self.logger.info(f"Batch size: {stats.batch_size}")
        self.logger.info(f"Successful: {stats.successes}, failed: {stats.failures}")
        self.logger.info(f"Storage write errors: {stats.write_errors}")
        self.logger.info(f"Total time: {stats.elapsed_time:.2f} seconds")
        self.log.log_run_stat('urls_crawled', stats.urls_crawled)
        self.log.log_run_stat('fetcher', self.fetcher.get_stats())

    def get_stats(self) -> Dict:
        """Fetcher counters plus running state."""
        stats = self.fetcher.get_stats()
        stats['is_running'] = self.is_running
        return stats


def _host_key(url: str) -> str:
    try:
        return urlsplit(url).netloc
    except ValueError:
        return ''
