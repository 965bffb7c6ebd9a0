from __future__ import annotations

import contextlib
import json
from typing import Any, Callable, Dict, Iterator, Optional

from .sqlite_backend import SQLiteBackend
from .store import DocKey, DocumentStore, _now_ms


class SQLiteStore(DocumentStore):
    """Durable document store backed by SQLite.

    Each batch runs inside ``BEGIN IMMEDIATE`` so reads used for transforms and
    preconditions see the same state the writes land on. The server clock is
    persisted, keeping timestamps monotonic across restarts.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        super().__init__(now_func=now_func)
        self._backend = backend
        row = backend.connection.execute("SELECT last_ts_ms FROM server_clock WHERE id=1").fetchone()
        self._last_ts = int(row[0]) if row else 0

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[None]:
        conn = self._backend.connection
        with self._backend.lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = self._backend.connection.execute(
            "SELECT data_json FROM documents WHERE collection=? AND doc_id=?",
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def _read_collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        rows = self._backend.connection.execute(
            "SELECT doc_id, data_json FROM documents WHERE collection=?",
            (collection,),
        ).fetchall()
        return {row[0]: json.loads(row[1]) for row in rows}

    def _persist(self, staged: Dict[DocKey, Optional[Dict[str, Any]]], ts: int) -> None:
        cursor = self._backend.connection.cursor()
        for (collection, doc_id), data in staged.items():
            if data is None:
                cursor.execute(
                    "DELETE FROM documents WHERE collection=? AND doc_id=?",
                    (collection, doc_id),
                )
            else:
                cursor.execute(
                    """
                    INSERT INTO documents (collection, doc_id, data_json) VALUES (?, ?, ?)
                    ON CONFLICT(collection, doc_id) DO UPDATE SET data_json=excluded.data_json
                    """,
                    (collection, doc_id, json.dumps(data, ensure_ascii=False, sort_keys=True)),
                )
        cursor.execute("UPDATE server_clock SET last_ts_ms=? WHERE id=1", (ts,))

    def close(self) -> None:
        self._backend.close()
