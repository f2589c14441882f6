"""
Persistent entities shared by the crawler, the indexer and the storage layer.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CrawlRecord:
    """One URL and the outcome of its latest crawl."""
    url: str
    id: str = field(default_factory=new_record_id)
    success: bool = False
    response_code: int = 0
    crawl_duration: float = 0.0
    page_title: str = ""
    page_description: str = ""
    headings: str = ""
    last_tested: Optional[datetime] = None
    indexed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_tested(self) -> bool:
        return self.last_tested is not None

    def indexable_text(self) -> str:
        """Text fed to the analyzer at index time, in fixed field order."""
        return " ".join([self.url, self.page_title, self.page_description, self.headings])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            'id': self.id,
            'url': self.url,
            'success': self.success,
            'response_code': self.response_code,
            'crawl_duration': self.crawl_duration,
            'page_title': self.page_title,
            'page_description': self.page_description,
            'headings': self.headings,
            'last_tested': self.last_tested.isoformat() if self.last_tested else None,
            'indexed': self.indexed,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlRecord':
        """Create a CrawlRecord from a dictionary produced by ``to_dict``."""
        def _parse_time(value):
            if value in (None, ''):
                return None
            if isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return cls(
            id=data['id'],
            url=data['url'],
            success=_as_bool(data.get('success', False)),
            response_code=int(data.get('response_code') or 0),
            crawl_duration=float(data.get('crawl_duration') or 0.0),
            page_title=data.get('page_title') or '',
            page_description=data.get('page_description') or '',
            headings=data.get('headings') or '',
            last_tested=_parse_time(data.get('last_tested')),
            indexed=_as_bool(data.get('indexed', False)),
            created_at=_parse_time(data.get('created_at')) or utcnow(),
            updated_at=_parse_time(data.get('updated_at')) or utcnow(),
        )


@dataclass
class SearchSettings:
    """Operator-controlled switches read at the start of every crawl run."""
    amount: int = 100
    search_on: bool = True
    add_new: bool = True
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': self.amount,
            'search_on': self.search_on,
            'add_new': self.add_new,
            'updated_at': self.updated_at.isoformat(),
        }


def _as_bool(value: Any) -> bool:
    # Redis and SQLite hand booleans back as strings or ints
    if isinstance(value, str):
        return value.lower() in ('1', 'true', 'yes', 'on')
    return bool(value)
