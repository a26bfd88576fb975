"""Shared SQLite connection and write-transaction scope."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class Database:
    """
    One SQLite connection shared by the task store and the ledger.

    Writes run inside ``BEGIN IMMEDIATE`` so the database-level writer
    lock serializes read-validate-write sequences across connections
    and processes. A ``transaction()`` opened while another is active on
    this connection joins it, which lets a task transition and its
    ledger effect commit or roll back together.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")

    @property
    def lock(self) -> RLock:
        """Connection lock; hold it for any multi-statement read."""
        return self._lock

    @property
    def connection(self) -> sqlite3.Connection:
        return self._db

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open (or join) a write transaction."""
        with self._lock:
            if self._db.in_transaction:
                yield self._db
                return

            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                self._db.rollback()
                raise
            self._db.commit()

    def executescript(self, script: str) -> None:
        """Run a schema script and commit."""
        with self._lock:
            self._db.executescript(script)
            self._db.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
