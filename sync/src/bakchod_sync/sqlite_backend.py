from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Callable, Dict


_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _schema_v1(conn: sqlite3.Connection) -> None:
    # One JSON row per document; sub-collections are just longer collection paths.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            doc_id TEXT NOT NULL,
            data_json TEXT NOT NULL,
            PRIMARY KEY (collection, doc_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS server_clock (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            last_ts_ms INTEGER NOT NULL
        )
        """
    )
    conn.execute("INSERT OR IGNORE INTO server_clock (id, last_ts_ms) VALUES (1, 0)")


MIGRATIONS: Dict[int, Callable[[sqlite3.Connection], None]] = {1: _schema_v1}
SCHEMA_VERSION = max(MIGRATIONS)


class SQLiteBackend:
    """Shared SQLite connection for the document store, migrated on open."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        for pragma in _PRAGMAS:
            self._conn.execute(pragma)
        self._migrate()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    @property
    def schema_version(self) -> int:
        return int(self._conn.execute("PRAGMA user_version").fetchone()[0])

    def close(self) -> None:
        self._conn.close()

    def _migrate(self) -> None:
        current = self.schema_version
        if current > SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {current}")
        for version in range(current + 1, SCHEMA_VERSION + 1):
            MIGRATIONS[version](self._conn)
            self._conn.execute(f"PRAGMA user_version = {version}")
