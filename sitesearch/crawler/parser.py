"""
HTML extraction: title, description, h1 headings and classified links.
"""

import re
import time
import logging
from typing import List, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit, SplitResult
from dataclasses import dataclass, field

from bs4 import BeautifulSoup, Tag

INTERNAL = 'internal'
EXTERNAL = 'external'

_SKIPPED_PREFIXES = ('mailto:', 'tel:', 'javascript:')
_SKIPPED_SUFFIXES = ('.pdf', '.md')


class ExtractionError(Exception):
    """Raised when a fetched HTML document cannot be turned into a ParsedPage."""
    pass


@dataclass
class ParsedPage:
    """Structured data pulled out of one HTML page."""
    title: str = ""
    description: str = ""
    headings: str = ""
    internal_links: List[str] = field(default_factory=list)
    external_links: List[str] = field(default_factory=list)
    extraction_time: float = 0.0

    @property
    def links(self) -> List[str]:
        return self.internal_links + self.external_links


def _host(parts: SplitResult) -> str:
    # netloc minus any userinfo, port kept
    return parts.netloc.rpartition('@')[2]


def classify_link(href: str, base_url: str) -> Optional[Tuple[str, str]]:
    """
    Classify an anchor href relative to the page it was found on.

    Args:
        href: Raw ``href`` attribute value
        base_url: URL of the page containing the anchor

    Returns:
        ``(INTERNAL|EXTERNAL, url)`` or None when the link is skipped
    """
    href = href.strip()
    lowered = href.lower()
    if (href.startswith('#') or lowered.startswith(_SKIPPED_PREFIXES)
            or lowered.endswith(_SKIPPED_SUFFIXES)):
        return None

    try:
        parts = urlsplit(href)
        base_parts = urlsplit(base_url)
    except ValueError:
        return None

    if parts.scheme:
        if _host(parts) == _host(base_parts):
            return INTERNAL, href
        return EXTERNAL, href

    return INTERNAL, urljoin(base_url, href)


class ContentParser:
    """
    Parses HTML content to extract page metadata and outbound links.
    """

    def __init__(self, max_nodes: int = 200_000):
        self.max_nodes = max_nodes
        self.logger = logging.getLogger(__name__)
        self.whitespace_pattern = re.compile(r'\s+')

    def parse(self, base_url: str, html_content: Union[bytes, str]) -> ParsedPage:
        """
        Parse HTML content and extract structured data in a single tree walk.

        Args:
            base_url: The fetched URL, used to resolve and classify links
            html_content: Raw HTML body

        Returns:
            ParsedPage object with extracted data

        Raises:
            ExtractionError: The document could not be parsed or is too large to walk
        """
        try:
            soup = BeautifulSoup(html_content, 'lxml')
        except Exception as e:
            raise ExtractionError(f"Could not parse HTML from {base_url}: {e}") from e

        start = time.perf_counter()
        page = self._walk(soup, base_url)
        page.extraction_time = time.perf_counter() - start

        self.logger.debug(f"Parsed {base_url}: {len(page.internal_links)} internal, "
                          f"{len(page.external_links)} external links")
        return page

    def _walk(self, soup: BeautifulSoup, base_url: str) -> ParsedPage:
        """Iterative depth-first traversal in document order."""
        page = ParsedPage()
        title: Optional[str] = None
        description: Optional[str] = None
        headings: List[str] = []

        stack: List[Tag] = [soup]
        visited = 0
        while stack:
            node = stack.pop()
            visited += 1
            if visited > self.max_nodes:
                raise ExtractionError(
                    f"Document at {base_url} exceeds {self.max_nodes} elements"
                )

            name = node.name
            if name == 'a':
                href = node.get('href')
                if href is not None:
                    classified = classify_link(href, base_url)
                    if classified is not None:
                        kind, url = classified
                        if kind == INTERNAL:
                            page.internal_links.append(url)
                        else:
                            page.external_links.append(url)
            elif name == 'title':
                if title is None:
                    title = self._clean_text(node.get_text())
            elif name == 'meta':
                if description is None and node.get('name') == 'description':
                    description = node.get('content', '')
            elif name == 'h1':
                text = self._clean_text(node.get_text())
                if text:
                    headings.append(text)

            children = [child for child in node.contents if isinstance(child, Tag)]
            stack.extend(reversed(children))

        page.title = title or ""
        page.description = description or ""
        page.headings = ", ".join(headings)
        return page

    def _clean_text(self, text: str) -> str:
        """Collapse runs of whitespace."""
        if not text:
            return ""
        return self.whitespace_pattern.sub(' ', text.strip())
