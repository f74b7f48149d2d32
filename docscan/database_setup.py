"""
Schema creation and upgrades for the document store.

The schema is composed of three tables:
- `documents`: one row per scanned document (page image paths, optional PDF
  path, optional OCR text, folder back-reference, flags and metadata).
- `folders`: named groupings, optionally nested through `parent_id`, with a
  store-maintained `document_count`.
- `settings`: opaque string key/value pairs.

`create_schema` is idempotent; it is safe on an existing database. The schema
version lives in `PRAGMA user_version` and `upgrade_schema` applies any
missing steps in order.
"""
import logging
import sqlite3
from typing import Callable, Dict

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS folders (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    parent_id TEXT REFERENCES folders (id),
    document_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    image_paths TEXT NOT NULL DEFAULT '[]',   -- JSON array, page order
    pdf_path TEXT,
    extracted_text TEXT,
    folder_id TEXT REFERENCES folders (id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',      -- JSON object
    tags TEXT NOT NULL DEFAULT '[]',          -- JSON array
    is_favorite INTEGER NOT NULL DEFAULT 0,
    is_locked INTEGER NOT NULL DEFAULT 0,
    password TEXT
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_created_at ON documents(created_at);
CREATE INDEX IF NOT EXISTS idx_documents_folder_id ON documents(folder_id);
CREATE INDEX IF NOT EXISTS idx_documents_title ON documents(title);
CREATE INDEX IF NOT EXISTS idx_folders_parent_id ON folders(parent_id);
"""


def _add_updated_at_index(conn: sqlite3.Connection) -> None:
    # Recent-documents listing orders by updated_at.
    conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_updated_at ON documents(updated_at)")


def _recount_all_folders(conn: sqlite3.Connection) -> None:
    # Databases written before counts were maintained transactionally may hold stale values.
    conn.execute(
        "UPDATE folders SET document_count = "
        "(SELECT COUNT(*) FROM documents d WHERE d.folder_id = folders.id)"
    )


def _upgrade_to_v2(conn: sqlite3.Connection) -> None:
    _add_updated_at_index(conn)
    _recount_all_folders(conn)


# version reached -> step that brings the previous version up to it
UPGRADE_STEPS: Dict[int, Callable[[sqlite3.Connection], None]] = {
    2: _upgrade_to_v2,
}


def get_schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def upgrade_schema(conn: sqlite3.Connection) -> int:
    """
    Applies pending upgrade steps. Must run inside a write transaction.

    Returns:
        int: The schema version after upgrading
    """
    current = get_schema_version(conn)
    for version in sorted(UPGRADE_STEPS):
        if version > current:
            logger.info(f"Upgrading document store schema {current} -> {version}")
            UPGRADE_STEPS[version](conn)
            conn.execute(f"PRAGMA user_version = {int(version)}")
            current = version
    return current


def create_schema(conn: sqlite3.Connection) -> int:
    """
    Creates all tables and indexes, then upgrades to :data:`SCHEMA_VERSION`.

    The connection must already be inside a write transaction.

    Returns:
        int: The resulting schema version
    """
    # executescript() would COMMIT the caller's transaction first, so run
    # statements one by one.
    for statement in SCHEMA_SQL.split(";"):
        # Strip trailing SQL comments on each line before checking for content
        lines = [line.split("--", 1)[0] for line in statement.splitlines()]
        sql = "\n".join(lines).strip()
        if sql:
            conn.execute(sql)
    if get_schema_version(conn) == 0:
        conn.execute("PRAGMA user_version = 1")
    return upgrade_schema(conn)
