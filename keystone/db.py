# keystone/db.py
# SQLite connection helpers shared by the API and the migration command

import sqlite3
from contextlib import contextmanager
from pathlib import Path as FsPath
from typing import Generator

from keystone.config import DATABASE_PATH

# Relative DATABASE_PATH values live next to the package; absolute ones are used as-is
DB_PATH = str(FsPath(__file__).resolve().parent / DATABASE_PATH)


def get_db() -> sqlite3.Connection:
    """
    Create and return a SQLite connection with Row factory and foreign keys on.
    Callers own the connection and must close it.
    """
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """Context manager variant of get_db() that always closes the connection."""
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """
    Run a block under BEGIN IMMEDIATE so a count-then-insert cannot race
    with another writer. Commits on success, rolls back on any exception.
    """
    if conn.in_transaction:
        conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
