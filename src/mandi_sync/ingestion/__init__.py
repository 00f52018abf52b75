"""Mandi price ingestion: client, parser, and storage."""

from mandi_sync.ingestion.client import MandiClient
from mandi_sync.ingestion.parser import RecordParser, RowRejection
from mandi_sync.ingestion.store import SqliteStore, StorageProtocol, create_store

__all__ = [
    "MandiClient",
    "RecordParser",
    "RowRejection",
    "SqliteStore",
    "StorageProtocol",
    "create_store",
]
