"""
Storage layer for crawl records and the token index.
"""

from .database import (
    DatabaseManager, DatabaseError, StorageBackend, SQLiteStorageBackend, RedisStorageBackend
)
from .models import CrawlRecord, SearchSettings

__all__ = [
    'DatabaseManager', 'DatabaseError', 'StorageBackend', 'SQLiteStorageBackend',
    'RedisStorageBackend', 'CrawlRecord', 'SearchSettings'
]
