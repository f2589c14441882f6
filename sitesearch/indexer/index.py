"""
Inverted index construction, merge into storage, and keyword search.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .analyzer import analyze
from ..storage.database import DatabaseManager, DatabaseError
from ..storage.models import CrawlRecord
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


class InvertedIndex:
    """
    In-memory postings: token -> record IDs in the order they were added.

    A record ID is skipped only when it equals the last entry already in that
    token's list, so the same record can appear twice if another record was
    added for the token in between.
    """

    def __init__(self):
        self.postings: Dict[str, List[str]] = {}

    def add(self, records: Iterable[CrawlRecord]):
        for record in records:
            self.add_document(record.id, record.indexable_text())

    def add_document(self, doc_id: str, text: str):
        for token in analyze(text):
            ids = self.postings.setdefault(token, [])
            if ids and ids[-1] == doc_id:
                continue
            ids.append(doc_id)

    def get(self, token: str) -> List[str]:
        return list(self.postings.get(token, []))

    def items(self) -> Iterator[Tuple[str, List[str]]]:
        return iter(self.postings.items())

    def __len__(self) -> int:
        return len(self.postings)

    def __contains__(self, token: str) -> bool:
        return token in self.postings


@dataclass
class IndexStats:
    """Outcome of one index run."""
    start_time: float
    documents: int = 0
    tokens: int = 0
    aborted: bool = False

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time


class IndexBuilder:
    """
    Builds the token index from crawled records and answers searches against it.
    """

    def __init__(self, database: DatabaseManager, monitor: Optional[CrawlerMonitor] = None):
        self.database = database
        self.monitor = monitor or CrawlerMonitor()
        self.logger = logging.getLogger(__name__)
        self.log = get_crawler_logger(__name__, component='indexer')

    async def run_index(self) -> IndexStats:
        """Index every tested record not yet indexed, then mark them indexed."""
        stats = IndexStats(start_time=time.time())
        self.logger.info("Index run started")

        try:
            records = await self.database.get_tested_unindexed()
        except DatabaseError as e:
            self.logger.error(f"Could not load unindexed records: {e}")
            stats.aborted = True
            return stats

        self.logger.info(f"{len(records)} records waiting to be indexed")
        if not records:
            return stats

        index = InvertedIndex()
        index.add(records)

        try:
            await self._merge(index)
            await self.database.set_indexed([record.id for record in records])
        except DatabaseError as e:
            # Nothing is marked indexed, so the same records come back next run
            self.logger.error(f"Index merge failed: {e}", exc_info=True)
            stats.aborted = True
            return stats

        stats.documents = len(records)
        stats.tokens = len(index)
        self.monitor.record_documents_indexed(stats.documents)
        self.monitor.record_tokens_merged(stats.tokens)
        self.log.log_run_stat('documents_indexed', stats.documents)
        self.log.log_run_stat('tokens_merged', stats.tokens)
        self.logger.info(f"Index run finished in {stats.elapsed_time:.2f}s")
        return stats

    async def _merge(self, index: InvertedIndex):
        for token, ids in index.items():
            token_id = await self.database.find_or_create_token(token)
            await self.database.associate_documents(token_id, ids)

    async def search(self, term: str) -> List[CrawlRecord]:
        """
        Find records whose stored tokens contain any analyzed query token.

        Args:
            term: Free-text query

        Returns:
            Union of matches across query tokens, each record once, in first-seen order.
            An empty list is a normal result.
        """
        results: List[CrawlRecord] = []
        seen = set()

        for token in analyze(term):
            for record in await self.database.query_tokens_by_substring(token):
                if record.id in seen:
                    continue
                seen.add(record.id)
                results.append(record)

        self.monitor.record_search()
        self.logger.debug(f"Search {term!r} returned {len(results)} records")
        return results
