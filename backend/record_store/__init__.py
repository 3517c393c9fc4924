from .database import SQLiteRecordDB
from .resource_store import InvalidRecordError, ResourceStore, record_key

__all__ = [
    "SQLiteRecordDB",
    "ResourceStore",
    "InvalidRecordError",
    "record_key",
]
