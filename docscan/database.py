"""
This module serves as the Data Access Layer (DAL) for the library.
It encapsulates all the SQL queries behind the `DocumentStore` class, which
owns the canonical persisted representation of documents, folders and
settings.

The methods are divided into two main categories:
1.  **Data Retrieval (Queries)**: read rows and return model objects. They do
    not modify the state of the database.
2.  **Data Modification (Commands)**: change rows inside a `BEGIN IMMEDIATE`
    transaction. Whenever a command changes which folder a document belongs
    to, the affected folders' `document_count` is recomputed inside that same
    transaction, so the count can never be observed out of step with the
    documents table.

A store is an ordinary object: construct one per database file at startup and
pass it to whoever needs it. Other components learn about writes through
change listeners, which are called after each successful commit.
"""
# Standard library imports
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

# Local imports
from .database_setup import create_schema
from .db_utils import database_connection, database_transaction, log_database_init, open_connection
from .exceptions import NotFoundError, StorageIOError
from .models import Document, Folder, SortType, format_timestamp, parse_timestamp
from .utils.helpers import epoch_millis, utc_now

logger = logging.getLogger(__name__)

DOCUMENT_COLUMNS = (
    "id", "title", "image_paths", "pdf_path", "extracted_text", "folder_id",
    "created_at", "updated_at", "metadata", "tags", "is_favorite", "is_locked", "password",
)
FOLDER_COLUMNS = ("id", "name", "description", "created_at", "updated_at", "parent_id", "document_count")

# Ties fall back to rowid, i.e. the order rows were first inserted.
ORDER_CLAUSES: Dict[SortType, str] = {
    SortType.DATE_DESC: "created_at DESC, rowid ASC",
    SortType.DATE_ASC: "created_at ASC, rowid ASC",
    SortType.TITLE_ASC: "title COLLATE BINARY ASC, rowid ASC",
    SortType.TITLE_DESC: "title COLLATE BINARY DESC, rowid ASC",
    SortType.SIZE_DESC: "json_array_length(image_paths) DESC, rowid ASC",
}

_ONE_MICROSECOND = timedelta(microseconds=1)


@dataclass(frozen=True)
class StoreChange:
    """Event passed to change listeners after a commit.

    entity: 'document', 'folder', 'setting' or 'all'
    action: 'insert', 'update', 'delete' or 'clear'
    key: id or setting key affected (None for 'clear')
    """
    entity: str
    action: str
    key: Optional[str] = None


def _next_updated_at(previous: Optional[str]) -> datetime:
    """Current time, nudged forward so it is strictly later than ``previous``."""
    now = utc_now()
    if previous:
        floor = parse_timestamp(previous) + _ONE_MICROSECOND
        if now < floor:
            return floor
    return now


class DocumentStore:
    """Durable, queryable persistence of documents, folders and settings."""

    def __init__(self, db_path: str, initialize: bool = True):
        self.db_path = db_path
        self._listeners: List[Callable[[StoreChange], None]] = []
        self._listeners_lock = threading.Lock()
        if initialize:
            self.initialize()

    def __repr__(self):
        return f"DocumentStore({self.db_path!r})"

    # --- SETUP ---

    def initialize(self) -> int:
        """
        Creates the database file and schema if needed.

        Returns:
            int: Schema version in effect

        Raises:
            StorageIOError: If the database location is not usable
        """
        db_dir = os.path.dirname(os.path.abspath(self.db_path))
        try:
            os.makedirs(db_dir, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create database directory {db_dir}", details=str(e))
        log_database_init(self.db_path)
        with database_transaction(self.db_path, "initialize schema") as conn:
            version = create_schema(conn)
        logger.info(f"Document store ready at {self.db_path} (schema v{version})")
        return version

    # --- CHANGE LISTENERS ---

    def add_change_listener(self, listener: Callable[[StoreChange], None]) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_change_listener(self, listener: Callable[[StoreChange], None]) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, change: StoreChange) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                # The write is already committed; a failing observer must not undo it.
                logger.exception(f"Store change listener failed for {change}")

    # --- INTERNAL HELPERS ---

    @staticmethod
    def _recount_folder(conn: sqlite3.Connection, folder_id: Optional[str]) -> None:
        if folder_id is None:
            return
        conn.execute(
            "UPDATE folders SET document_count = "
            "(SELECT COUNT(*) FROM documents WHERE folder_id = ?) WHERE id = ?",
            (folder_id, folder_id),
        )

    def _recount_folders(self, conn: sqlite3.Connection, folder_ids: Iterable[Optional[str]]) -> None:
        for folder_id in {f for f in folder_ids if f is not None}:
            self._recount_folder(conn, folder_id)

    @staticmethod
    def _documents(rows) -> List[Document]:
        return [Document.from_row(row) for row in rows]

    # --- DOCUMENT QUERIES ---

    def get_all_documents(self, order_by: SortType = SortType.DATE_DESC) -> List[Document]:
        """
        Retrieves every document.

        Args:
            order_by: Sort order, newest first by default. Ties keep insertion order.

        Returns:
            list: Document objects
        """
        order = ORDER_CLAUSES[SortType(order_by)]
        with database_connection(self.db_path, "get_all_documents") as conn:
            rows = conn.execute(f"SELECT * FROM documents ORDER BY {order}").fetchall()
        return self._documents(rows)

    def get_document(self, document_id: str) -> Optional[Document]:
        """
        Retrieves a single document by its primary key.

        Returns:
            Document, or None if not found
        """
        with database_connection(self.db_path, "get_document") as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return Document.from_row(row) if row else None

    def get_documents_by_folder(self, folder_id: Optional[str]) -> List[Document]:
        """
        Retrieves the documents filed in ``folder_id``, newest first.

        Args:
            folder_id: Folder id, or None for unfiled documents
        """
        # `IS ?` matches NULL when folder_id is None and behaves like `=` otherwise.
        with database_connection(self.db_path, "get_documents_by_folder") as conn:
            rows = conn.execute(
                f"SELECT * FROM documents WHERE folder_id IS ? ORDER BY {ORDER_CLAUSES[SortType.DATE_DESC]}",
                (folder_id,),
            ).fetchall()
        return self._documents(rows)

    def search_documents(self, query: str, include_tags: bool = False) -> List[Document]:
        """
        Finds documents whose title or extracted text contains ``query``.

        Matching is case-insensitive (Unicode casefold), identical to
        `Document.matches_search`. An empty query returns every document.

        Args:
            query: Substring to look for
            include_tags: Also match against tags

        Returns:
            list: Matching documents, newest first
        """
        if not query:
            return self.get_all_documents()
        order = ORDER_CLAUSES[SortType.DATE_DESC]
        with database_connection(self.db_path, "search_documents") as conn:
            if include_tags:
                rows = conn.execute(f"SELECT * FROM documents ORDER BY {order}").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE contains_ci(title, ?) OR contains_ci(extracted_text, ?) "
                    f"ORDER BY {order}",
                    (query, query),
                ).fetchall()
        documents = self._documents(rows)
        if include_tags:
            documents = [d for d in documents if d.matches_search(query, include_tags=True)]
        return documents

    # --- DOCUMENT COMMANDS ---

    def insert_document(self, document: Document) -> Document:
        """
        Inserts a document, replacing any existing row with the same id.

        Folder counts are recomputed for the document's folder and, on
        replace, for the folder the previous row pointed at.

        Raises:
            ConstraintError: If ``folder_id`` names an unknown folder
        """
        row = document.to_row()
        columns = ", ".join(DOCUMENT_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in DOCUMENT_COLUMNS)
        assignments = ", ".join(f"{c} = excluded.{c}" for c in DOCUMENT_COLUMNS if c != "id")
        with database_transaction(self.db_path, "insert_document") as conn:
            previous = conn.execute(
                "SELECT folder_id FROM documents WHERE id = ?", (document.id,)
            ).fetchone()
            conn.execute(
                f"INSERT INTO documents ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {assignments}",
                row,
            )
            self._recount_folders(conn, [document.folder_id, previous["folder_id"] if previous else None])
        logger.debug(f"Stored document {document.id} ({document.page_count} pages)")
        self._notify(StoreChange("document", "update" if previous else "insert", document.id))
        return document

    def update_document(self, document: Document) -> Document:
        """
        Replaces a stored document with ``document``.

        ``updated_at`` is stamped by the store and is always strictly later
        than the stored value. Moving the document between folders recounts
        both folders in the same transaction.

        Returns:
            Document: The record as persisted

        Raises:
            NotFoundError: If no document has this id
            ConstraintError: If ``folder_id`` names an unknown folder
        """
        assignments = ", ".join(f"{c} = :{c}" for c in DOCUMENT_COLUMNS if c != "id")
        with database_transaction(self.db_path, "update_document") as conn:
            current = conn.execute(
                "SELECT folder_id, updated_at FROM documents WHERE id = ?", (document.id,)
            ).fetchone()
            if current is None:
                raise NotFoundError(f"Document {document.id} not found")
            stored = document.copy_with(updated_at=_next_updated_at(current["updated_at"]))
            conn.execute(f"UPDATE documents SET {assignments} WHERE id = :id", stored.to_row())
            self._recount_folders(conn, [current["folder_id"], stored.folder_id])
        self._notify(StoreChange("document", "update", document.id))
        return stored

    def delete_document(self, document_id: str) -> bool:
        """
        Removes a document row. Files are not touched.

        Deleting an unknown id is a no-op.

        Returns:
            bool: True if a row was deleted
        """
        with database_transaction(self.db_path, "delete_document") as conn:
            current = conn.execute(
                "SELECT folder_id FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if current is None:
                return False
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            self._recount_folder(conn, current["folder_id"])
        self._notify(StoreChange("document", "delete", document_id))
        return True

    # --- FOLDER QUERIES ---

    def get_all_folders(self) -> List[Folder]:
        with database_connection(self.db_path, "get_all_folders") as conn:
            rows = conn.execute("SELECT * FROM folders ORDER BY name ASC, rowid ASC").fetchall()
        return [Folder.from_row(r) for r in rows]

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        with database_connection(self.db_path, "get_folder") as conn:
            row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
        return Folder.from_row(row) if row else None

    def get_child_folders(self, parent_id: Optional[str]) -> List[Folder]:
        """Folders directly under ``parent_id`` (None for top-level folders)."""
        with database_connection(self.db_path, "get_child_folders") as conn:
            rows = conn.execute(
                "SELECT * FROM folders WHERE parent_id IS ? ORDER BY name ASC, rowid ASC", (parent_id,)
            ).fetchall()
        return [Folder.from_row(r) for r in rows]

    # --- FOLDER COMMANDS ---

    def insert_folder(self, folder: Folder) -> Folder:
        """
        Inserts a folder, replacing any existing row with the same id.

        The stored ``document_count`` is recomputed from the documents table;
        the value on ``folder`` is ignored.

        Returns:
            Folder: The folder as persisted

        Raises:
            ConstraintError: If ``parent_id`` names an unknown folder
        """
        columns = [c for c in FOLDER_COLUMNS if c != "document_count"]
        assignments = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        with database_transaction(self.db_path, "insert_folder") as conn:
            existed = conn.execute("SELECT 1 FROM folders WHERE id = ?", (folder.id,)).fetchone()
            conn.execute(
                f"INSERT INTO folders ({', '.join(columns)}) VALUES ({', '.join(':' + c for c in columns)}) "
                f"ON CONFLICT(id) DO UPDATE SET {assignments}",
                folder.to_row(),
            )
            self._recount_folder(conn, folder.id)
            row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder.id,)).fetchone()
        self._notify(StoreChange("folder", "update" if existed else "insert", folder.id))
        return Folder.from_row(row)

    def update_folder(self, folder: Folder) -> Folder:
        """
        Replaces a stored folder. ``document_count`` stays store-maintained.

        Raises:
            NotFoundError: If no folder has this id
        """
        with database_transaction(self.db_path, "update_folder") as conn:
            current = conn.execute("SELECT updated_at FROM folders WHERE id = ?", (folder.id,)).fetchone()
            if current is None:
                raise NotFoundError(f"Folder {folder.id} not found")
            row = folder.copy_with(updated_at=_next_updated_at(current["updated_at"])).to_row()
            conn.execute(
                "UPDATE folders SET name = :name, description = :description, created_at = :created_at, "
                "updated_at = :updated_at, parent_id = :parent_id WHERE id = :id",
                row,
            )
            self._recount_folder(conn, folder.id)
            stored = conn.execute("SELECT * FROM folders WHERE id = ?", (folder.id,)).fetchone()
        self._notify(StoreChange("folder", "update", folder.id))
        return Folder.from_row(stored)

    def delete_folder(self, folder_id: str) -> bool:
        """
        Deletes a folder. Its documents and child folders move to the root.

        All three steps run in one transaction: either the folder is gone and
        nothing references it, or nothing changed.

        Returns:
            bool: True if a folder was deleted
        """
        now = format_timestamp(utc_now())
        with database_transaction(self.db_path, "delete_folder") as conn:
            if conn.execute("SELECT 1 FROM folders WHERE id = ?", (folder_id,)).fetchone() is None:
                return False
            moved = conn.execute(
                "UPDATE documents SET folder_id = NULL, updated_at = MAX(updated_at, ?) WHERE folder_id = ?",
                (now, folder_id),
            ).rowcount
            conn.execute(
                "UPDATE folders SET parent_id = NULL, updated_at = MAX(updated_at, ?) WHERE parent_id = ?",
                (now, folder_id),
            )
            conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
        logger.info(f"Deleted folder {folder_id}; moved {moved} document(s) to root")
        self._notify(StoreChange("folder", "delete", folder_id))
        return True

    # --- SETTINGS ---

    def set_setting(self, key: str, value: str) -> None:
        with database_transaction(self.db_path, "set_setting") as conn:
            conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )
        self._notify(StoreChange("setting", "update", key))

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with database_connection(self.db_path, "get_setting") as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def delete_setting(self, key: str) -> bool:
        with database_transaction(self.db_path, "delete_setting") as conn:
            deleted = conn.execute("DELETE FROM settings WHERE key = ?", (key,)).rowcount
        if deleted:
            self._notify(StoreChange("setting", "delete", key))
        return bool(deleted)

    # --- MAINTENANCE ---

    def stats(self) -> Dict[str, int]:
        """Row counts per table."""
        with database_connection(self.db_path, "stats") as conn:
            return {
                "documents": conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0],
                "folders": conn.execute("SELECT COUNT(*) FROM folders").fetchone()[0],
                "settings": conn.execute("SELECT COUNT(*) FROM settings").fetchone()[0],
            }

    def clear_all_data(self) -> None:
        """Deletes every row from every table. Files on disk are left alone."""
        with database_transaction(self.db_path, "clear_all_data") as conn:
            conn.execute("DELETE FROM documents")
            conn.execute("DELETE FROM folders")
            conn.execute("DELETE FROM settings")
        logger.warning(f"Cleared all data in {self.db_path}")
        self._notify(StoreChange("all", "clear"))

    def backup_database(self, dest_dir: Optional[str] = None) -> Optional[str]:
        """
        Writes a consistent online copy of the database.

        Args:
            dest_dir: Directory receiving ``backup_<ms>.db``; defaults to a
                ``backups`` directory beside the database file

        Returns:
            str: Path of the backup, or None if the backup failed
        """
        if dest_dir is None:
            dest_dir = os.path.join(os.path.dirname(os.path.abspath(self.db_path)), "backups")
        backup_path = os.path.join(dest_dir, f"backup_{epoch_millis()}.db")
        try:
            os.makedirs(dest_dir, exist_ok=True)
            source = open_connection(self.db_path)
            try:
                target = sqlite3.connect(backup_path)
                try:
                    source.backup(target)
                finally:
                    target.close()
            finally:
                source.close()
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Database backup to {dest_dir} failed: {e}")
            return None
        logger.info(f"✅ Database backed up to {backup_path}")
        return backup_path
