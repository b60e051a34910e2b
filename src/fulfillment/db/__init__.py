"""Database module for the fulfillment orchestrator."""

from .pool import Database, get_database
from .store import InMemoryStore, PostgresStore, RecordStore, ensure_tables

__all__ = [
    "Database",
    "get_database",
    "InMemoryStore",
    "PostgresStore",
    "RecordStore",
    "ensure_tables",
]
