"""Record store implementations."""

from hacklab.config.settings import DatabaseSettings
from hacklab.store.base import RecordStore, RecordType
from hacklab.store.memory import MemoryRecordStore
from hacklab.store.sql import SQLRecordStore


def create_record_store(settings: DatabaseSettings) -> RecordStore:
    """SQL store when a URL is configured, otherwise in-memory."""
    if settings.url:
        return SQLRecordStore(settings.url, echo=settings.echo)
    return MemoryRecordStore()


__all__ = [
    "MemoryRecordStore",
    "RecordStore",
    "RecordType",
    "SQLRecordStore",
    "create_record_store",
]
