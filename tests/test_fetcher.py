"""
Tests for WebFetcher against a local aiohttp server.

No external network: every request goes to an ``aiohttp.test_utils.TestServer``
bound to localhost, or to a port nothing listens on.
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer as LocalServer

from sitesearch.crawler.fetcher import WebFetcher

_PAGE = "<html><head><title>Local</title></head><body><h1>Hi</h1></body></html>"


async def _html(request):
    return web.Response(text=_PAGE, content_type="text/html")


async def _json(request):
    return web.json_response({"ok": True})


async def _missing(request):
    return web.Response(status=404, text="<h1>Not found</h1>", content_type="text/html")


async def _server_error(request):
    return web.Response(status=500, text="boom", content_type="text/html")


async def _big(request):
    return web.Response(text="<p>" + "x" * 5000 + "</p>", content_type="text/html")


async def _slow(request):
    await asyncio.sleep(0.5)
    return web.Response(text=_PAGE, content_type="text/html")


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app.router.add_get("/html", _html)
    app.router.add_get("/json", _json)
    app.router.add_get("/missing", _missing)
    app.router.add_get("/error", _server_error)
    app.router.add_get("/big", _big)
    app.router.add_get("/slow", _slow)

    test_server = LocalServer(app)
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest_asyncio.fixture
async def fetcher():
    async with WebFetcher(user_agent="sitesearch-test", request_timeout=5) as web_fetcher:
        yield web_fetcher


class TestWebFetcher:
    def test_rejects_unbounded_timeout(self):
        with pytest.raises(ValueError):
            WebFetcher(user_agent="x", request_timeout=0)
        with pytest.raises(ValueError):
            WebFetcher(user_agent="x", request_timeout=None)

    @pytest.mark.asyncio
    async def test_html_success(self, server, fetcher):
        result = await fetcher.fetch(str(server.make_url("/html")))

        assert result.success is True
        assert result.is_html is True
        assert result.status_code == 200
        assert result.content == _PAGE.encode("utf-8")
        assert result.content_type.startswith("text/html")
        assert result.error is None

    @pytest.mark.asyncio
    async def test_non_html_is_empty_success(self, server, fetcher):
        result = await fetcher.fetch(str(server.make_url("/json")))

        assert result.success is True
        assert result.is_html is False
        assert result.status_code == 200
        assert result.content is None
        assert fetcher.get_stats()["non_html_responses"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path, status", [("/missing", 404), ("/error", 500)])
    async def test_non_200_is_failure(self, server, fetcher, path, status):
        result = await fetcher.fetch(str(server.make_url(path)))

        assert result.success is False
        assert result.status_code == status
        assert result.content is None

    @pytest.mark.asyncio
    async def test_oversized_body_is_failure(self, server):
        async with WebFetcher(user_agent="x", request_timeout=5, max_content_size=1024) as small:
            result = await small.fetch(str(server.make_url("/big")))

        assert result.success is False
        assert result.status_code == 200
        assert "size limit" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_transport_failure(self, server):
        async with WebFetcher(user_agent="x", request_timeout=0.1) as impatient:
            result = await impatient.fetch(str(server.make_url("/slow")))

        assert result.success is False
        assert result.status_code == 0
        assert result.error == "Request timeout"

    @pytest.mark.asyncio
    async def test_connection_refused_is_transport_failure(self, fetcher):
        result = await fetcher.fetch("http://127.0.0.1:1/")

        assert result.success is False
        assert result.status_code == 0
        assert result.error

    @pytest.mark.asyncio
    async def test_invalid_url_does_not_raise(self, fetcher):
        result = await fetcher.fetch("not a url")

        assert result.success is False
        assert result.status_code == 0

    @pytest.mark.asyncio
    async def test_stats_counted(self, server, fetcher):
        await fetcher.fetch(str(server.make_url("/html")))
        await fetcher.fetch(str(server.make_url("/missing")))

        stats = fetcher.get_stats()
        assert stats["total_requests"] == 2
        assert stats["successful_requests"] == 1
        assert stats["failed_requests"] == 1
