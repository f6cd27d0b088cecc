"""
Persistence mirror for batch jobs.
Uses SQLite JSON documents so job state stays visible outside the process.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class DocumentStore(Protocol):
    """Minimal document-database interface the orchestrator mirrors into"""

    def create_document(self, collection: str, doc_id: str, record: Dict[str, Any]) -> None:
        ...

    def update_document(self, collection: str, doc_id: str, partial: Dict[str, Any]) -> None:
        ...


def _dumps(record: Dict[str, Any]) -> str:
    return json.dumps(record, default=str)


class SQLiteDocumentStore:
    """SQLite-backed document store, one JSON blob per (collection, id)."""

    def __init__(self, db_path: str = "slidebatch.db"):
        self.db_path = Path(db_path)
        self._init_database()

    def _init_database(self):
        """Initialize the database with required tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    body TEXT NOT NULL,  -- JSON string
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_updated_at ON documents(collection, updated_at)
            """)

            conn.commit()
            logger.info("Document store initialized at %s", self.db_path)

    def create_document(self, collection: str, doc_id: str, record: Dict[str, Any]) -> None:
        now = datetime.now().isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO documents (collection, doc_id, body, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (collection, doc_id, _dumps(record), now, now))
            conn.commit()
        logger.debug("Created document %s/%s", collection, doc_id)

    def update_document(self, collection: str, doc_id: str, partial: Dict[str, Any]) -> None:
        """Merge partial into the stored document (top-level keys replace)."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row = cursor.fetchone()
            if row is None:
                raise KeyError(f"Document {collection}/{doc_id} not found")

            body = json.loads(row[0])
            body.update(json.loads(_dumps(partial)))
            cursor.execute("""
                UPDATE documents SET body = ?, updated_at = ?
                WHERE collection = ? AND doc_id = ?
            """, (json.dumps(body), datetime.now().isoformat(), collection, doc_id))
            conn.commit()
        logger.debug("Updated document %s/%s", collection, doc_id)

    def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row = cursor.fetchone()
            return json.loads(row[0]) if row else None

    def list_documents(self, collection: str, limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
        query = "SELECT body FROM documents WHERE collection = ? ORDER BY created_at DESC"
        params: Tuple[Any, ...] = (collection,)
        if limit:
            query += " LIMIT ? OFFSET ?"
            params = (collection, limit, offset)
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [json.loads(row[0]) for row in cursor.fetchall()]

    def delete_document(self, collection: str, doc_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            conn.commit()
            return cursor.rowcount > 0


class PersistenceMirror:
    """Best-effort, ordered mirroring of job records to a DocumentStore.

    Writes are queued and applied by a background worker in submission order.
    Failures are logged and dropped; they never reach the orchestrator.
    """

    def __init__(self, store: DocumentStore, collection: str = "enhanced_batch_jobs"):
        self.store = store
        self.collection = collection
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self.failures = 0

    async def start(self):
        if self._worker is None:
            self._worker = asyncio.create_task(self._worker_loop())

    async def stop(self):
        """Flush pending writes, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None

    def create(self, doc_id: str, record: Dict[str, Any]):
        self._queue.put_nowait(("create", doc_id, record))

    def update(self, doc_id: str, partial: Dict[str, Any]):
        self._queue.put_nowait(("update", doc_id, partial))

    async def flush(self):
        await self._queue.join()

    async def _worker_loop(self):
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    break
                op, doc_id, record = item
                try:
                    if op == "create":
                        await asyncio.to_thread(self.store.create_document, self.collection, doc_id, record)
                    else:
                        await asyncio.to_thread(self.store.update_document, self.collection, doc_id, record)
                except Exception as e:
                    self.failures += 1
                    logger.warning("Failed to %s job %s in document store: %s", op, doc_id, e)
            finally:
                self._queue.task_done()
