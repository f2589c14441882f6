"""
Shared fixtures: in-memory storage and a scripted fetcher.
"""

from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from sitesearch.crawler.fetcher import FetchResult
from sitesearch.storage.database import DatabaseManager
from sitesearch.utils.config import Config, DatabaseConfig


class StubFetcher:
    """Returns canned FetchResults and remembers which URLs were requested."""

    def __init__(self, responses: Optional[Dict[str, FetchResult]] = None):
        self.responses = responses or {}
        self.calls: List[str] = []

    async def start(self):
        pass

    async def close(self):
        pass

    async def fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        if url in self.responses:
            return self.responses[url]
        return FetchResult(url=url, status_code=0, error="Client error: unreachable")

    def get_stats(self):
        return {'total_requests': len(self.calls)}


def html_result(url: str, body: str) -> FetchResult:
    return FetchResult(
        url=url,
        status_code=200,
        success=True,
        is_html=True,
        content=body.encode('utf-8'),
        content_type='text/html; charset=utf-8',
    )


@pytest.fixture
def config() -> Config:
    config = Config()
    config.database = DatabaseConfig(type='sqlite', sqlite={'path': ':memory:'})
    return config


@pytest_asyncio.fixture
async def database(config):
    db = DatabaseManager(config.database, config.search)
    await db.initialize()
    yield db
    await db.close()
