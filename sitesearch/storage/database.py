"""
Storage layer for crawl records, settings and the token index.
Supports both SQLite and Redis backends.
"""

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Any, Iterable

import aiosqlite
import redis.asyncio as redis
from redis.exceptions import RedisError

from .models import CrawlRecord, SearchSettings, new_record_id, utcnow
from ..utils.config import DatabaseConfig, SearchConfig


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class StorageBackend:
    """Abstract base class for storage backends."""

    async def initialize(self, defaults: SearchSettings):
        """Create structures and seed the settings row if missing."""
        raise NotImplementedError

    async def get_untested(self, limit: int) -> List[CrawlRecord]:
        """Up to ``limit`` records that have never been crawled, in no particular order."""
        raise NotImplementedError

    async def update_result(self, record: CrawlRecord):
        """Upsert the crawl-result fields of ``record`` by ID."""
        raise NotImplementedError

    async def insert_if_absent(self, url: str) -> bool:
        """Insert a new untested record; False if the URL is already known."""
        raise NotImplementedError

    async def url_exists(self, url: str) -> bool:
        raise NotImplementedError

    async def get_tested_unindexed(self) -> List[CrawlRecord]:
        raise NotImplementedError

    async def set_indexed(self, ids: Iterable[str]):
        raise NotImplementedError

    async def get_settings(self) -> SearchSettings:
        raise NotImplementedError

    async def update_settings(self, settings: SearchSettings):
        raise NotImplementedError

    async def find_or_create_token(self, value: str) -> str:
        """Return the ID of the token entity for ``value``, creating it if needed."""
        raise NotImplementedError

    async def associate_documents(self, token_id: str, record_ids: Iterable[str]):
        """Link records to a token; re-adding an existing link is a no-op."""
        raise NotImplementedError

    async def query_tokens_by_substring(self, term: str) -> List[CrawlRecord]:
        """Records linked to any token whose value contains ``term``."""
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError


_SCHEMA = """
CREATE TABLE IF NOT EXISTS crawled_urls (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    success INTEGER NOT NULL DEFAULT 0,
    response_code INTEGER NOT NULL DEFAULT 0,
    crawl_duration REAL NOT NULL DEFAULT 0,
    page_title TEXT NOT NULL DEFAULT '',
    page_description TEXT NOT NULL DEFAULT '',
    headings TEXT NOT NULL DEFAULT '',
    last_tested TEXT,
    indexed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_crawled_urls_last_tested ON crawled_urls (last_tested);
CREATE INDEX IF NOT EXISTS idx_crawled_urls_indexed ON crawled_urls (indexed);

CREATE TABLE IF NOT EXISTS search_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    amount INTEGER NOT NULL,
    search_on INTEGER NOT NULL,
    add_new INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS search_index (
    id TEXT PRIMARY KEY,
    value TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS token_urls (
    token_id TEXT NOT NULL REFERENCES search_index (id),
    url_id TEXT NOT NULL REFERENCES crawled_urls (id),
    PRIMARY KEY (token_id, url_id)
);
"""


class SQLiteStorageBackend(StorageBackend):
    """SQLite storage backend for single-host deployments and tests."""

    def __init__(self, path: str):
        self.path = path
        self.conn: Optional[aiosqlite.Connection] = None
        self.logger = logging.getLogger(__name__)
        # One write (statement + commit) at a time on the shared connection
        self._write_lock = asyncio.Lock()

    @contextmanager
    def _errors(self, operation: str):
        try:
            yield
        except sqlite3.Error as e:
            raise DatabaseError(f"SQLite {operation} failed: {e}") from e

    async def initialize(self, defaults: SearchSettings):
        """Open the connection, create tables and seed settings."""
        with self._errors("initialize"):
            if self.path != ':memory:':
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)

            self.conn = await aiosqlite.connect(self.path)
            self.conn.row_factory = aiosqlite.Row
            await self.conn.execute("PRAGMA foreign_keys = ON")
            await self.conn.executescript(_SCHEMA)
            await self.conn.execute(
                "INSERT OR IGNORE INTO search_settings (id, amount, search_on, add_new, updated_at) "
                "VALUES (1, ?, ?, ?, ?)",
                (defaults.amount, int(defaults.search_on), int(defaults.add_new),
                 defaults.updated_at.isoformat())
            )
            await self.conn.commit()
            self.logger.info(f"SQLite storage initialized at {self.path}")

    async def _fetch_records(self, sql: str, params: tuple = ()) -> List[CrawlRecord]:
        async with self.conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [CrawlRecord.from_dict(dict(row)) for row in rows]

    async def get_untested(self, limit: int) -> List[CrawlRecord]:
        with self._errors("get_untested"):
            return await self._fetch_records(
                "SELECT * FROM crawled_urls WHERE last_tested IS NULL LIMIT ?", (limit,)
            )

    async def update_result(self, record: CrawlRecord):
        now = utcnow().isoformat()
        with self._errors("update_result"):
            async with self._write_lock:
                await self.conn.execute(
                    """
                    INSERT INTO crawled_urls (
                        id, url, success, response_code, crawl_duration, page_title,
                        page_description, headings, last_tested, indexed, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        success = excluded.success,
                        response_code = excluded.response_code,
                        crawl_duration = excluded.crawl_duration,
                        page_title = excluded.page_title,
                        page_description = excluded.page_description,
                        headings = excluded.headings,
                        last_tested = excluded.last_tested,
                        updated_at = excluded.updated_at
                    """,
                    (
                        record.id,
                        record.url,
                        int(record.success),
                        record.response_code,
                        record.crawl_duration,
                        record.page_title,
                        record.page_description,
                        record.headings,
                        record.last_tested.isoformat() if record.last_tested else None,
                        record.created_at.isoformat(),
                        now,
                    )
                )
                await self.conn.commit()

    async def insert_if_absent(self, url: str) -> bool:
        now = utcnow().isoformat()
        with self._errors("insert_if_absent"):
            async with self._write_lock:
                cursor = await self.conn.execute(
                    "INSERT OR IGNORE INTO crawled_urls (id, url, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (new_record_id(), url, now, now)
                )
                await self.conn.commit()
                return cursor.rowcount == 1

    async def url_exists(self, url: str) -> bool:
        with self._errors("url_exists"):
            async with self.conn.execute(
                "SELECT 1 FROM crawled_urls WHERE url = ?", (url,)
            ) as cursor:
                return await cursor.fetchone() is not None

    async def get_tested_unindexed(self) -> List[CrawlRecord]:
        with self._errors("get_tested_unindexed"):
            return await self._fetch_records(
                "SELECT * FROM crawled_urls WHERE indexed = 0 AND last_tested IS NOT NULL"
            )

    async def set_indexed(self, ids: Iterable[str]):
        now = utcnow().isoformat()
        with self._errors("set_indexed"):
            async with self._write_lock:
                await self.conn.executemany(
                    "UPDATE crawled_urls SET indexed = 1, updated_at = ? WHERE id = ?",
                    [(now, record_id) for record_id in ids]
                )
                await self.conn.commit()

    async def get_settings(self) -> SearchSettings:
        with self._errors("get_settings"):
            async with self.conn.execute(
                "SELECT amount, search_on, add_new, updated_at FROM search_settings WHERE id = 1"
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            raise DatabaseError("Search settings row is missing")

        return SearchSettings(
            amount=row['amount'],
            search_on=bool(row['search_on']),
            add_new=bool(row['add_new']),
            updated_at=datetime.fromisoformat(row['updated_at']),
        )

    async def update_settings(self, settings: SearchSettings):
        with self._errors("update_settings"):
            async with self._write_lock:
                await self.conn.execute(
                    "UPDATE search_settings SET amount = ?, search_on = ?, add_new = ?, updated_at = ? "
                    "WHERE id = 1",
                    (settings.amount, int(settings.search_on), int(settings.add_new),
                     utcnow().isoformat())
                )
                await self.conn.commit()

    async def find_or_create_token(self, value: str) -> str:
        with self._errors("find_or_create_token"):
            async with self._write_lock:
                await self.conn.execute(
                    "INSERT OR IGNORE INTO search_index (id, value, created_at) VALUES (?, ?, ?)",
                    (new_record_id(), value, utcnow().isoformat())
                )
                await self.conn.commit()
            async with self.conn.execute(
                "SELECT id FROM search_index WHERE value = ?", (value,)
            ) as cursor:
                row = await cursor.fetchone()
        return row['id']

    async def associate_documents(self, token_id: str, record_ids: Iterable[str]):
        with self._errors("associate_documents"):
            async with self._write_lock:
                await self.conn.executemany(
                    "INSERT OR IGNORE INTO token_urls (token_id, url_id) VALUES (?, ?)",
                    [(token_id, record_id) for record_id in record_ids]
                )
                await self.conn.commit()

    async def query_tokens_by_substring(self, term: str) -> List[CrawlRecord]:
        with self._errors("query_tokens_by_substring"):
            return await self._fetch_records(
                """
                SELECT c.* FROM search_index s
                JOIN token_urls t ON t.token_id = s.id
                JOIN crawled_urls c ON c.id = t.url_id
                WHERE instr(s.value, ?) > 0
                ORDER BY s.value
                """,
                (term,)
            )

    async def close(self):
        if self.conn:
            await self.conn.close()
            self.conn = None
            self.logger.info("SQLite connection closed")


class RedisStorageBackend(StorageBackend):
    """Redis storage backend; records are hashes, relations are sets."""

    def __init__(self, config: Dict[str, Any], client: Optional[redis.Redis] = None):
        self.config = config
        self.client = client
        self.prefix = config.get('key_prefix', 'sitesearch')
        self.logger = logging.getLogger(__name__)

        self.url_ids_key = f"{self.prefix}:url_ids"
        self.untested_key = f"{self.prefix}:untested"
        self.unindexed_key = f"{self.prefix}:tested_unindexed"
        self.settings_key = f"{self.prefix}:settings"
        self.tokens_key = f"{self.prefix}:tokens"

    def _record_key(self, record_id: str) -> str:
        return f"{self.prefix}:record:{record_id}"

    def _token_docs_key(self, token_id: str) -> str:
        return f"{self.prefix}:token_docs:{token_id}"

    @contextmanager
    def _errors(self, operation: str):
        try:
            yield
        except RedisError as e:
            raise DatabaseError(f"Redis {operation} failed: {e}") from e

    @staticmethod
    def _encode(record: CrawlRecord) -> Dict[str, str]:
        data = record.to_dict()
        encoded = {}
        for key, value in data.items():
            if value is None:
                encoded[key] = ''
            elif isinstance(value, bool):
                encoded[key] = '1' if value else '0'
            else:
                encoded[key] = str(value)
        return encoded

    async def initialize(self, defaults: SearchSettings):
        with self._errors("initialize"):
            if self.client is None:
                self.client = redis.Redis(
                    host=self.config.get('host', 'localhost'),
                    port=self.config.get('port', 6379),
                    db=self.config.get('db', 0),
                    password=self.config.get('password'),
                    decode_responses=True
                )
            await self.client.ping()
            for key, value in (('amount', str(defaults.amount)),
                               ('search_on', '1' if defaults.search_on else '0'),
                               ('add_new', '1' if defaults.add_new else '0'),
                               ('updated_at', defaults.updated_at.isoformat())):
                await self.client.hsetnx(self.settings_key, key, value)
            self.logger.info(f"Redis storage initialized with key prefix: {self.prefix}")

    async def _load_records(self, record_ids: Iterable[str]) -> List[CrawlRecord]:
        record_ids = list(record_ids)
        if not record_ids:
            return []
        async with self.client.pipeline(transaction=False) as pipe:
            for record_id in record_ids:
                pipe.hgetall(self._record_key(record_id))
            rows = await pipe.execute()
        return [CrawlRecord.from_dict(row) for row in rows if row]

    async def get_untested(self, limit: int) -> List[CrawlRecord]:
        if limit <= 0:
            return []
        with self._errors("get_untested"):
            record_ids = await self.client.srandmember(self.untested_key, limit)
            return await self._load_records(record_ids)

    async def update_result(self, record: CrawlRecord):
        encoded = self._encode(record)
        created_at = encoded.pop('created_at')
        encoded.pop('indexed')
        encoded['updated_at'] = utcnow().isoformat()
        key = self._record_key(record.id)

        with self._errors("update_result"):
            stored_id = await self.client.hget(self.url_ids_key, record.url)
            if stored_id is not None and stored_id != record.id:
                raise DatabaseError(
                    f"Redis update_result failed: {record.url} is already stored as {stored_id}"
                )
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=encoded)
                pipe.hsetnx(key, 'created_at', created_at)
                pipe.hsetnx(key, 'indexed', '0')
                pipe.hset(self.url_ids_key, record.url, record.id)
                if record.is_tested:
                    pipe.srem(self.untested_key, record.id)
                else:
                    pipe.sadd(self.untested_key, record.id)
                await pipe.execute()

            if record.is_tested and await self.client.hget(key, 'indexed') != '1':
                await self.client.sadd(self.unindexed_key, record.id)

    async def insert_if_absent(self, url: str) -> bool:
        record = CrawlRecord(url=url)
        with self._errors("insert_if_absent"):
            created = await self.client.hsetnx(self.url_ids_key, url, record.id)
            if not created:
                return False
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._record_key(record.id), mapping=self._encode(record))
                pipe.sadd(self.untested_key, record.id)
                await pipe.execute()
        return True

    async def url_exists(self, url: str) -> bool:
        with self._errors("url_exists"):
            return bool(await self.client.hexists(self.url_ids_key, url))

    async def get_tested_unindexed(self) -> List[CrawlRecord]:
        with self._errors("get_tested_unindexed"):
            record_ids = await self.client.smembers(self.unindexed_key)
            return await self._load_records(sorted(record_ids))

    async def set_indexed(self, ids: Iterable[str]):
        now = utcnow().isoformat()
        with self._errors("set_indexed"):
            async with self.client.pipeline(transaction=True) as pipe:
                for record_id in ids:
                    pipe.hset(self._record_key(record_id), mapping={'indexed': '1', 'updated_at': now})
                    pipe.srem(self.unindexed_key, record_id)
                await pipe.execute()

    async def get_settings(self) -> SearchSettings:
        with self._errors("get_settings"):
            data = await self.client.hgetall(self.settings_key)
        if not data:
            raise DatabaseError("Search settings are missing")
        try:
            return SearchSettings(
                amount=int(data['amount']),
                search_on=data['search_on'] == '1',
                add_new=data['add_new'] == '1',
                updated_at=datetime.fromisoformat(data['updated_at']) if data.get('updated_at') else utcnow(),
            )
        except (KeyError, ValueError) as e:
            raise DatabaseError(f"Search settings are malformed: {e!r}") from e

    async def update_settings(self, settings: SearchSettings):
        with self._errors("update_settings"):
            await self.client.hset(self.settings_key, mapping={
                'amount': str(settings.amount),
                'search_on': '1' if settings.search_on else '0',
                'add_new': '1' if settings.add_new else '0',
                'updated_at': utcnow().isoformat(),
            })

    async def find_or_create_token(self, value: str) -> str:
        with self._errors("find_or_create_token"):
            await self.client.hsetnx(self.tokens_key, value, new_record_id())
            return await self.client.hget(self.tokens_key, value)

    async def associate_documents(self, token_id: str, record_ids: Iterable[str]):
        record_ids = list(record_ids)
        if not record_ids:
            return
        with self._errors("associate_documents"):
            await self.client.sadd(self._token_docs_key(token_id), *record_ids)

    async def query_tokens_by_substring(self, term: str) -> List[CrawlRecord]:
        with self._errors("query_tokens_by_substring"):
            tokens = await self.client.hgetall(self.tokens_key)
            record_ids: List[str] = []
            for value in sorted(tokens):
                if term in value:
                    members = await self.client.smembers(self._token_docs_key(tokens[value]))
                    record_ids.extend(sorted(members))
            return await self._load_records(record_ids)

    async def close(self):
        if self.client:
            await self.client.aclose()
            self.client = None
            self.logger.info("Redis connection closed")


class DatabaseManager:
    """Main database manager that handles different storage backends."""

    def __init__(self, config: DatabaseConfig, search_defaults: Optional[SearchConfig] = None,
                 backend: Optional[StorageBackend] = None):
        self.config = config
        self.search_defaults = search_defaults or SearchConfig()
        self.backend: Optional[StorageBackend] = backend
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Initialize the appropriate storage backend."""
        backend_type = self.config.type.lower()

        if self.backend is None:
            if backend_type == 'sqlite':
                self.backend = SQLiteStorageBackend(self.config.sqlite.get('path', ':memory:'))
            elif backend_type == 'redis':
                self.backend = RedisStorageBackend(self.config.redis)
            else:
                raise DatabaseError(f"Unknown database type: {backend_type}")

        defaults = SearchSettings(
            amount=self.search_defaults.amount,
            search_on=self.search_defaults.search_on,
            add_new=self.search_defaults.add_new,
        )
        await self.backend.initialize(defaults)
        self.logger.info(f"Database manager initialized with {type(self.backend).__name__}")

    def _require_backend(self) -> StorageBackend:
        if not self.backend:
            raise DatabaseError("Database not initialized")
        return self.backend

    async def get_untested(self, limit: int) -> List[CrawlRecord]:
        return await self._require_backend().get_untested(limit)

    async def update_result(self, record: CrawlRecord):
        await self._require_backend().update_result(record)

    async def insert_if_absent(self, url: str) -> bool:
        return await self._require_backend().insert_if_absent(url)

    async def url_exists(self, url: str) -> bool:
        return await self._require_backend().url_exists(url)

    async def get_tested_unindexed(self) -> List[CrawlRecord]:
        return await self._require_backend().get_tested_unindexed()

    async def set_indexed(self, ids: Iterable[str]):
        await self._require_backend().set_indexed(list(ids))

    async def get_settings(self) -> SearchSettings:
        return await self._require_backend().get_settings()

    async def update_settings(self, settings: SearchSettings):
        await self._require_backend().update_settings(settings)

    async def find_or_create_token(self, value: str) -> str:
        return await self._require_backend().find_or_create_token(value)

    async def associate_documents(self, token_id: str, record_ids: Iterable[str]):
        await self._require_backend().associate_documents(token_id, list(record_ids))

    async def query_tokens_by_substring(self, term: str) -> List[CrawlRecord]:
        return await self._require_backend().query_tokens_by_substring(term)

    async def close(self):
        """Close database connections."""
        if self.backend:
            await self.backend.close()
            self.backend = None
            self.logger.info("Database connections closed")
