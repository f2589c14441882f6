"""
Web page fetcher with a bounded request timeout.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Optional, Dict
from dataclasses import dataclass
from aiohttp import ClientSession, ClientTimeout, ClientError

DEFAULT_REQUEST_TIMEOUT = 30.0


@dataclass
class FetchResult:
    """
    Result of a fetch operation.

    ``success`` is True for any 200 response; ``is_html`` tells whether
    ``content`` holds a body worth extracting.
    """
    url: str
    status_code: int
    success: bool = False
    is_html: bool = False
    content: Optional[bytes] = None
    content_type: Optional[str] = None
    error: Optional[str] = None
    fetch_time: float = 0.0


class WebFetcher:
    """
    Fetches web pages and turns every outcome into a FetchResult.
    """

    def __init__(self, user_agent: str, request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
                 max_concurrent_requests: int = 1, max_content_size: int = 10 * 1024 * 1024):
        if not request_timeout or request_timeout <= 0:
            raise ValueError("request_timeout must be a positive number of seconds")

        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.max_content_size = max_content_size

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'non_html_responses': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent}

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL. Never raises: transport problems come back as a
        failed FetchResult with status code 0.
        """
        if self.session is None:
            await self.start()

        start_time = time.time()
        self.stats['total_requests'] += 1

        def finish(status_code: int, **fields) -> FetchResult:
            result = FetchResult(url=url, status_code=status_code,
                                 fetch_time=time.time() - start_time, **fields)
            self.stats['successful_requests' if result.success else 'failed_requests'] += 1
            return result

        try:
            async with self.session.get(url) as response:
                status = response.status
                content_type = response.headers.get('content-type', '')

                if status != 200:
                    self.logger.debug(f"Fetched {url}: status {status}")
                    return finish(status, content_type=content_type, error=f"HTTP {status}")

                if not content_type.lower().startswith('text/html'):
                    self.stats['non_html_responses'] += 1
                    self.logger.debug(f"Non-HTML content at {url} ({content_type})")
                    return finish(status, success=True, content_type=content_type)

                content = await self._read_content_safely(response)
                if content is None:
                    return finish(status, content_type=content_type,
                                  error="Response body exceeds size limit")

                self.stats['total_bytes_downloaded'] += len(content)
                self.logger.debug(f"Fetched {url}: {status} ({len(content)} bytes)")
                return finish(status, success=True, is_html=True, content=content,
                              content_type=content_type)

        except asyncio.TimeoutError:
            self.logger.warning(f"Timeout fetching {url}")
            return finish(0, error="Request timeout")

        except ClientError as e:
            self.logger.warning(f"Client error fetching {url}: {e}")
            return finish(0, error=f"Client error: {e}")

        except ValueError as e:
            # Malformed URLs are rejected by yarl before any I/O
            self.logger.warning(f"Invalid URL {url}: {e}")
            return finish(0, error=f"Invalid URL: {e}")

        except Exception as e:
            self.logger.error(f"Unexpected error fetching {url}: {e}", exc_info=True)
            return finish(0, error=f"Unexpected error: {e}")

    async def _read_content_safely(self, response) -> Optional[bytes]:
        """
        Read the response body, giving up past ``max_content_size`` bytes.

        Returns:
            Body bytes, or None if the body is too large
        """
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_size:
            self.logger.warning(f"Content too large ({content_length} bytes): {response.url}")
            return None

        content_bytes = bytearray()
        async for chunk in response.content.iter_chunked(8192):
            content_bytes.extend(chunk)
            if len(content_bytes) > self.max_content_size:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                return None

        return bytes(content_bytes)

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
