from __future__ import annotations

import sqlite3
from typing import Optional, Protocol

from rsm.repositories.sqlite_repo import SqliteRepository


class UnitOfWork(Protocol):
    atomic: bool
    repo: SqliteRepository
    cur: Optional[sqlite3.Cursor]

    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...


class TransactionalUnitOfWork:
    """One SQLite transaction per unit.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so concurrent
    units touching stock are serialized. Everything commits on a clean exit and
    rolls back when the block raises.
    """

    atomic = True

    def __init__(self, repo: SqliteRepository):
        self.repo = repo
        self.cur: Optional[sqlite3.Cursor] = None
        self._conn: Optional[sqlite3.Connection] = None

    def __enter__(self) -> "TransactionalUnitOfWork":
        self._conn = self.repo.connect()
        self._conn.execute("BEGIN IMMEDIATE")
        self.cur = self._conn.cursor()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        conn = self._conn
        self._conn = None
        self.cur = None
        if conn is None:
            return None
        try:
            if exc_type is None:
                conn.commit()
            else:
                conn.rollback()
        finally:
            conn.close()
        return None


class BestEffortUnitOfWork:
    """Autocommit unit for stores without usable transactions.

    Each statement is durable as soon as it runs; callers that need
    all-or-nothing behaviour must compensate themselves.
    """

    atomic = False

    def __init__(self, repo: SqliteRepository):
        self.repo = repo
        self.cur: Optional[sqlite3.Cursor] = None
        self._conn: Optional[sqlite3.Connection] = None

    def __enter__(self) -> "BestEffortUnitOfWork":
        self._conn = self.repo.connect()
        self.cur = self._conn.cursor()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        conn = self._conn
        self._conn = None
        self.cur = None
        if conn is not None:
            conn.close()
        return None
