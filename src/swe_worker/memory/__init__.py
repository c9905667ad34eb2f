from swe_worker.memory.blobs import BlobStore, FileBlobStore, InMemoryBlobStore
from swe_worker.memory.event_sink import AsyncEventSink
from swe_worker.memory.history import HistoryStore, SequenceKeys, SqliteHistoryStore
from swe_worker.memory.metadata import MetadataStore
from swe_worker.memory.sessions import SessionStore, SqliteSessionStore
from swe_worker.memory.store import MemoryStore

__all__ = [
    "AsyncEventSink",
    "BlobStore",
    "FileBlobStore",
    "HistoryStore",
    "InMemoryBlobStore",
    "MemoryStore",
    "MetadataStore",
    "SequenceKeys",
    "SessionStore",
    "SqliteHistoryStore",
    "SqliteSessionStore",
]
