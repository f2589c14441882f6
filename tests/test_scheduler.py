"""Tests for one crawl batch: selection, write-back and discovery."""

import fakeredis
import pytest

from conftest import StubFetcher, html_result
from sitesearch.crawler.fetcher import FetchResult
from sitesearch.crawler.parser import ContentParser
from sitesearch.crawler.scheduler import CrawlScheduler
from sitesearch.storage.database import DatabaseError, DatabaseManager, RedisStorageBackend
from sitesearch.storage.models import SearchSettings, utcnow
from sitesearch.utils.config import DatabaseConfig

_PAGE = (
    '<title>Hello</title><meta name="description" content="World"><h1>Hi</h1>'
    '<a href="/a">x</a><a href="https://ext.com">y</a>'
)


class FlakyDatabase:
    """Delegates to a real DatabaseManager but fails chosen calls."""

    def __init__(self, database, fail_methods=(), fail_urls=()):
        self.database = database
        self.fail_methods = set(fail_methods)
        self.fail_urls = set(fail_urls)

    def __getattr__(self, name):
        attr = getattr(self.database, name)
        if name in self.fail_methods:
            async def failing(*args, **kwargs):
                raise DatabaseError(f"{name} unavailable")
            return failing
        return attr

    async def update_result(self, record):
        if record.url in self.fail_urls:
            raise DatabaseError("write rejected")
        await self.database.update_result(record)


async def _settings(database, **changes):
    settings = await database.get_settings()
    for key, value in changes.items():
        setattr(settings, key, value)
    await database.update_settings(settings)


def _scheduler(database, fetcher, **kwargs):
    return CrawlScheduler(database, fetcher, ContentParser(), **kwargs)


class TestCrawlRun:
    @pytest.mark.asyncio
    async def test_search_off_does_nothing(self, database):
        await database.insert_if_absent("https://x.com/")
        await _settings(database, search_on=False)
        fetcher = StubFetcher()

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.skipped is True
        assert fetcher.calls == []
        assert len(await database.get_untested(10)) == 1

    @pytest.mark.asyncio
    async def test_success_writes_extracted_fields(self, database):
        await database.insert_if_absent("https://x.com/")
        await _settings(database, add_new=False)
        fetcher = StubFetcher({"https://x.com/": html_result("https://x.com/", _PAGE)})

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.successes == 1
        assert await database.get_untested(10) == []
        [record] = await database.get_tested_unindexed()
        assert record.success is True
        assert record.response_code == 200
        assert record.page_title == "Hello"
        assert record.page_description == "World"
        assert record.headings == "Hi"
        assert record.last_tested is not None
        assert record.crawl_duration >= 0.0

    @pytest.mark.asyncio
    async def test_batch_shares_one_timestamp(self, database):
        urls = ["https://x.com/1", "https://x.com/2", "https://x.com/3"]
        for url in urls:
            await database.insert_if_absent(url)
        await _settings(database, add_new=False)
        fetcher = StubFetcher({url: html_result(url, "<title>t</title>") for url in urls})

        await _scheduler(database, fetcher).run_crawl()

        records = await database.get_tested_unindexed()
        assert len(records) == 3
        assert len({record.last_tested for record in records}) == 1

    @pytest.mark.asyncio
    async def test_amount_limits_batch(self, database):
        for i in range(5):
            await database.insert_if_absent(f"https://x.com/{i}")
        await _settings(database, amount=2, add_new=False)
        fetcher = StubFetcher()

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.batch_size == 2
        assert len(fetcher.calls) == 2
        assert len(await database.get_untested(10)) == 3

    @pytest.mark.asyncio
    async def test_discovered_links_added(self, database):
        await database.insert_if_absent("https://x.com/")
        await _settings(database, add_new=True)
        fetcher = StubFetcher({"https://x.com/": html_result("https://x.com/", _PAGE)})

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.urls_discovered == 2
        untested = {record.url for record in await database.get_untested(10)}
        assert untested == {"https://x.com/a", "https://ext.com"}

    @pytest.mark.asyncio
    async def test_known_links_not_duplicated(self, database):
        await database.insert_if_absent("https://x.com/a")
        [known] = await database.get_untested(10)
        known.last_tested = utcnow()
        await database.update_result(known)

        await database.insert_if_absent("https://x.com/")
        await _settings(database, add_new=True)
        body = _PAGE + '<a href="/a">again</a>'
        fetcher = StubFetcher({"https://x.com/": html_result("https://x.com/", body)})

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.urls_discovered == 1
        assert fetcher.calls == ["https://x.com/"]
        assert [record.url for record in await database.get_untested(10)] == ["https://ext.com"]

    @pytest.mark.asyncio
    async def test_discovery_disabled(self, database):
        await database.insert_if_absent("https://x.com/")
        await _settings(database, add_new=False)
        fetcher = StubFetcher({"https://x.com/": html_result("https://x.com/", _PAGE)})

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.urls_discovered == 0
        assert await database.get_untested(10) == []

    @pytest.mark.asyncio
    async def test_failed_url_marked_tested_and_not_retried(self, database):
        await database.insert_if_absent("https://x.com/missing")
        await database.insert_if_absent("https://x.com/down")
        fetcher = StubFetcher({
            "https://x.com/missing": FetchResult(url="https://x.com/missing", status_code=404,
                                                 error="HTTP 404"),
        })
        scheduler = _scheduler(database, fetcher)

        stats = await scheduler.run_crawl()

        assert stats.failures == 2
        records = {r.url: r for r in await database.get_tested_unindexed()}
        assert records["https://x.com/missing"].success is False
        assert records["https://x.com/missing"].response_code == 404
        assert records["https://x.com/down"].response_code == 0
        assert records["https://x.com/down"].page_title == ""

        second = await scheduler.run_crawl()
        assert second.batch_size == 0
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_non_html_is_success_without_fields(self, database):
        await database.insert_if_absent("https://x.com/data.json")
        fetcher = StubFetcher({
            "https://x.com/data.json": FetchResult(url="https://x.com/data.json", status_code=200,
                                                   success=True, content_type="application/json"),
        })

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.successes == 1
        [record] = await database.get_tested_unindexed()
        assert record.success is True
        assert record.page_title == ""
        assert record.headings == ""

    @pytest.mark.asyncio
    async def test_extraction_failure_marks_unsuccessful(self, database):
        await database.insert_if_absent("https://x.com/")
        body = "<html><body>" + "<p>x</p>" * 100 + "</body></html>"
        fetcher = StubFetcher({"https://x.com/": html_result("https://x.com/", body)})
        scheduler = CrawlScheduler(database, fetcher, ContentParser(max_nodes=20))

        stats = await scheduler.run_crawl()

        assert stats.failures == 1
        [record] = await database.get_tested_unindexed()
        assert record.success is False
        assert record.response_code == 200

    @pytest.mark.asyncio
    async def test_write_failure_does_not_stop_batch(self, database):
        await database.insert_if_absent("https://x.com/bad")
        await database.insert_if_absent("https://x.com/good")
        await _settings(database, add_new=False)
        fetcher = StubFetcher({
            url: html_result(url, "<title>t</title>") for url in ("https://x.com/bad", "https://x.com/good")
        })
        flaky = FlakyDatabase(database, fail_urls={"https://x.com/bad"})

        stats = await _scheduler(flaky, fetcher).run_crawl()

        assert stats.write_errors == 1
        assert len(fetcher.calls) == 2
        assert [r.url for r in await database.get_untested(10)] == ["https://x.com/bad"]
        assert [r.url for r in await database.get_tested_unindexed()] == ["https://x.com/good"]

    @pytest.mark.asyncio
    async def test_settings_failure_aborts(self, database):
        await database.insert_if_absent("https://x.com/")
        fetcher = StubFetcher()
        flaky = FlakyDatabase(database, fail_methods={"get_settings"})

        stats = await _scheduler(flaky, fetcher).run_crawl()

        assert stats.aborted is True
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_malformed_redis_settings_abort(self):
        backend = RedisStorageBackend({"key_prefix": "test"},
                                      client=fakeredis.FakeAsyncRedis(decode_responses=True))
        database = DatabaseManager(DatabaseConfig(type="redis"), backend=backend)
        await database.initialize()
        await database.insert_if_absent("https://x.com/")
        await backend.client.hdel(backend.settings_key, "amount")
        fetcher = StubFetcher()

        stats = await _scheduler(database, fetcher).run_crawl()

        assert stats.aborted is True
        assert fetcher.calls == []
        await database.close()

    @pytest.mark.asyncio
    async def test_selection_failure_aborts(self, database):
        fetcher = StubFetcher()
        flaky = FlakyDatabase(database, fail_methods={"get_untested"})

        stats = await _scheduler(flaky, fetcher).run_crawl()

        assert stats.aborted is True
        assert fetcher.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_workers_crawl_whole_batch(self, database):
        urls = [f"https://host{i % 2}.com/{i}" for i in range(6)]
        for url in urls:
            await database.insert_if_absent(url)
        await _settings(database, add_new=False)
        fetcher = StubFetcher({url: html_result(url, "<title>t</title>") for url in urls})
        scheduler = _scheduler(database, fetcher, max_concurrent_requests=3)

        stats = await scheduler.run_crawl()

        assert stats.successes == 6
        assert sorted(fetcher.calls) == sorted(urls)
        assert await database.get_untested(10) == []
        assert scheduler.is_running is False


def test_settings_defaults():
    settings = SearchSettings()
    assert settings.amount == 100
    assert settings.search_on is True
    assert settings.add_new is True
