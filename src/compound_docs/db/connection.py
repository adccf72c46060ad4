"""Opening the index database: one SQLite file per project, sqlite-vec loaded."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec

from compound_docs.errors import StoreUnavailableError

_PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
)


class Database:
    """Handle on a project's index file.

    The connection is opened in autocommit mode and shared across threads;
    Repository brackets every write in BEGIN IMMEDIATE under its own lock.
    """

    def __init__(self, db_path: Path | str, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open the index file (creating parent dirs) and return a ready connection.

        Raises:
            StoreUnavailableError: The file cannot be created or opened.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(
                f"Cannot open index database: {exc}", path=str(self.db_path), operation="connect"
            ) from exc
        conn.row_factory = sqlite3.Row
        _load_vec(conn)
        for pragma in _PRAGMAS:
            conn.execute(pragma)
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        self.close()


def _load_vec(conn: sqlite3.Connection) -> None:
    conn.enable_load_extension(True)
    try:
        sqlite_vec.load(conn)
    finally:
        conn.enable_load_extension(False)
