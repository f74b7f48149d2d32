"""
Database connection and context management utilities.

Every store call opens its own short-lived connection (WAL journal, 30 s busy
timeout, foreign keys on). Reads use :func:`database_connection`; writes use
:func:`database_transaction`, which starts ``BEGIN IMMEDIATE`` so the write
lock is held from the first statement to the commit. That is what makes a
document write and the folder recount that follows it one atomic unit, even
across threads or processes sharing the database file.
"""
import json
import logging
import os
import sqlite3
import stat
import time
from contextlib import contextmanager
from typing import Generator, Optional

from .exceptions import ConstraintError, StorageIOError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30.0


def casefold_contains(haystack: Optional[str], needle: Optional[str]) -> int:
    """SQL function ``contains_ci(haystack, needle)``: Unicode case-insensitive substring test."""
    if haystack is None or needle is None:
        return 0
    return 1 if needle.casefold() in haystack.casefold() else 0


def gather_db_file_metadata(db_path: str) -> dict:
    """Return metadata about the SQLite database file for richer startup logging."""
    info = {
        "path": os.path.abspath(db_path),
        "exists": False,
    }
    try:
        if os.path.exists(db_path):
            st = os.stat(db_path)
            info.update(
                {
                    "exists": True,
                    "size_bytes": st.st_size,
                    "last_modified_iso": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(st.st_mtime)),
                    "permissions_octal": oct(stat.S_IMODE(st.st_mode)),
                }
            )
    except OSError as e:
        info["metadata_error"] = str(e)
    return info


def log_database_init(db_path: str) -> None:
    payload = {
        "event": "database_init",
        "description": "SQLite document store",
        "metadata": gather_db_file_metadata(db_path),
    }
    logger.info(json.dumps(payload))


def translate_error(error: Exception, context: str) -> Exception:
    """Map sqlite3 / OS errors onto the library's taxonomy."""
    if isinstance(error, sqlite3.IntegrityError):
        return ConstraintError(f"{context}: constraint violated", details=str(error))
    return StorageIOError(f"{context}: storage failure", details=str(error))


def open_connection(db_path: str) -> sqlite3.Connection:
    """
    Create a configured SQLite connection.

    The connection runs in autocommit mode (``isolation_level=None``);
    transactions are opened explicitly by :func:`database_transaction`.

    Raises:
        StorageIOError: If the database file cannot be opened
    """
    try:
        conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    except sqlite3.Error as e:
        raise translate_error(e, f"open {db_path}")
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(BUSY_TIMEOUT_SECONDS * 1000)}")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.create_function("contains_ci", 2, casefold_contains, deterministic=True)
    except sqlite3.Error as e:
        conn.close()
        raise translate_error(e, f"open {db_path}")
    return conn


@contextmanager
def database_connection(db_path: str, context: str = "query") -> Generator[sqlite3.Connection, None, None]:
    """
    Provides a managed read connection.

    Yields:
        sqlite3.Connection: The database connection object.

    Raises:
        StorageIOError: On any sqlite failure inside the block
    """
    conn = open_connection(db_path)
    try:
        yield conn
    except sqlite3.Error as e:
        logger.error(f"Database error during {context}: {e}")
        raise translate_error(e, context)
    finally:
        conn.close()


@contextmanager
def database_transaction(db_path: str, context: str = "write") -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for write transactions that ensures proper commit/rollback.

    Yields:
        sqlite3.Connection: Connection inside ``BEGIN IMMEDIATE``

    Raises:
        ConstraintError: On integrity violations (transaction rolled back)
        StorageIOError: On any other sqlite failure (transaction rolled back)
    """
    conn = open_connection(db_path)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise translate_error(e, context)
        try:
            yield conn
        except BaseException as e:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_error:
                logger.error(f"Failed to rollback transaction: {rollback_error}")
            if isinstance(e, sqlite3.Error):
                logger.error(f"Database error during {context}: {e}")
                raise translate_error(e, context)
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            logger.error(f"Commit failed during {context}: {e}")
            raise translate_error(e, context)
    finally:
        try:
            conn.close()
        except sqlite3.Error as close_error:
            logger.error(f"Failed to close database connection: {close_error}")
