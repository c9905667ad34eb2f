import asyncio
import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from swe_worker.memory import FileBlobStore, MemoryStore, MetadataStore, SqliteHistoryStore, SqliteSessionStore

PROJECT_ROOT = Path(__file__).resolve().parents[2]


class MemoryStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._store = MemoryStore(str(self._tmp_dir / "worker.db"))
        self._blobs = FileBlobStore(str(self._tmp_dir / "blobs"))
        self._sessions = SqliteSessionStore(self._store)
        self._history = SqliteHistoryStore(self._store, self._blobs)
        self._metadata = MetadataStore(self._store)
        asyncio.run(self._sessions.create("s1"))

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)
