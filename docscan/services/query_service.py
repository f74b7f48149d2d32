"""
Document Query Service

Holds a point-in-time copy of every document and presents a filtered, sorted
view of it:
- Folder filter (exact match, or unfiled when the filter is root)
- Case-insensitive search over title and extracted text
- Five sort orders, all stable over creation order
- Subscriber notifications after every recomputation, newest view last

The view is rebuilt from scratch on every trigger. The engine is never
authoritative; it reloads from the store whenever the store reports a
document or folder change.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..database import DocumentStore, StoreChange
from ..models import Document, SortType
from ..utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Sentinel for "no folder filter"; None itself means "unfiled documents only".
ALL_FOLDERS = object()

Subscriber = Callable[[List[Document]], None]


def sort_documents(documents: List[Document], sort_type: SortType) -> List[Document]:
    """
    Sorts documents without disturbing the relative order of ties.

    Args:
        documents: Documents in creation order
        sort_type: One of the five sort orders

    Returns:
        list: New sorted list
    """
    sort_type = SortType(sort_type)
    if sort_type == SortType.DATE_DESC:
        return sorted(documents, key=lambda d: d.created_at, reverse=True)
    if sort_type == SortType.DATE_ASC:
        return sorted(documents, key=lambda d: d.created_at)
    if sort_type == SortType.TITLE_ASC:
        return sorted(documents, key=lambda d: d.title)
    if sort_type == SortType.TITLE_DESC:
        return sorted(documents, key=lambda d: d.title, reverse=True)
    return sorted(documents, key=lambda d: d.page_count, reverse=True)


class DocumentQueryEngine:
    """Live filtered and sorted view over the documents in a store."""

    def __init__(self, store: DocumentStore, auto_refresh: bool = True):
        self.store = store
        self._lock = threading.RLock()
        self._subscribers: List[Subscriber] = []
        self._all_documents: List[Document] = []
        self._filtered: List[Document] = []
        self._search_query = ""
        self._sort_type = SortType.DATE_DESC
        self._folder_filter = ALL_FOLDERS
        self._loading = False
        self._generation = 0
        self._publish_lock = threading.RLock()
        self._published_generation = 0
        self._auto_refresh = auto_refresh
        if auto_refresh:
            store.add_change_listener(self._on_store_change)
        self.refresh()

    def close(self) -> None:
        """Stops following store changes."""
        if self._auto_refresh:
            self.store.remove_change_listener(self._on_store_change)
            self._auto_refresh = False

    # --- STATE ---

    @property
    def documents(self) -> List[Document]:
        """The current filtered view."""
        with self._lock:
            return list(self._filtered)

    @property
    def all_documents(self) -> List[Document]:
        with self._lock:
            return list(self._all_documents)

    @property
    def search_query(self) -> str:
        return self._search_query

    @property
    def sort_type(self) -> SortType:
        return self._sort_type

    @property
    def folder_filter(self):
        return self._folder_filter

    @property
    def loading(self) -> bool:
        return self._loading

    # --- SUBSCRIPTIONS ---

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Registers ``callback`` to receive the new view after every recomputation.

        Returns:
            Callable that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, view: List[Document], generation: int) -> None:
        # Views computed concurrently may reach here out of order; drop any
        # view older than one already delivered.
        with self._publish_lock:
            if generation <= self._published_generation:
                return
            self._published_generation = generation
            with self._lock:
                subscribers = list(self._subscribers)
            for callback in subscribers:
                if generation < self._published_generation:
                    break
                try:
                    callback(list(view))
                except Exception:
                    logger.exception("Query view subscriber failed")

    # --- TRIGGERS ---

    def refresh(self) -> List[Document]:
        """Reloads every document from the store and recomputes the view."""
        with self._lock:
            self._loading = True
            try:
                # Creation order is the tie-breaker for every sort.
                self._all_documents = self.store.get_all_documents(SortType.DATE_ASC)
            finally:
                self._loading = False
            view = self._recompute()
            generation = self._generation
        logger.debug(f"Query engine refreshed: {len(self._all_documents)} documents, {len(view)} visible")
        self._publish(view, generation)
        return view

    def set_search_query(self, query: Optional[str]) -> List[Document]:
        with self._lock:
            self._search_query = query or ""
            view = self._recompute()
            generation = self._generation
        self._publish(view, generation)
        return view

    def set_sort_type(self, sort_type: SortType) -> List[Document]:
        with self._lock:
            self._sort_type = SortType(sort_type)
            view = self._recompute()
            generation = self._generation
        self._publish(view, generation)
        return view

    def set_folder_filter(self, folder_id=ALL_FOLDERS) -> List[Document]:
        """
        Restricts the view to one folder.

        Args:
            folder_id: Folder id, None for unfiled documents, or
                ``ALL_FOLDERS`` (the default) to clear the filter
        """
        with self._lock:
            self._folder_filter = folder_id
            view = self._recompute()
            generation = self._generation
        self._publish(view, generation)
        return view

    def clear_filters(self) -> List[Document]:
        with self._lock:
            self._search_query = ""
            self._folder_filter = ALL_FOLDERS
            view = self._recompute()
            generation = self._generation
        self._publish(view, generation)
        return view

    def _recompute(self) -> List[Document]:
        # Caller holds self._lock.
        candidates = self._all_documents
        if self._folder_filter is not ALL_FOLDERS:
            candidates = [d for d in candidates if d.folder_id == self._folder_filter]
        if self._search_query:
            candidates = [d for d in candidates if d.matches_search(self._search_query)]
        self._filtered = sort_documents(candidates, self._sort_type)
        self._generation += 1
        return list(self._filtered)

    def _on_store_change(self, change: StoreChange) -> None:
        if change.entity in ("document", "folder", "all"):
            self.refresh()

    # --- DERIVED QUERIES ---

    def get_documents_by_folder(self, folder_id: Optional[str]) -> List[Document]:
        """All loaded documents in ``folder_id`` (None for unfiled), ignoring the active filters."""
        with self._lock:
            matches = [d for d in self._all_documents if d.folder_id == folder_id]
            return sort_documents(matches, self._sort_type)

    def get_recent_documents(self, limit: int = 5) -> List[Document]:
        """Most recently modified documents first."""
        with self._lock:
            recent = sorted(self._all_documents, key=lambda d: d.updated_at, reverse=True)
        return recent[:max(limit, 0)]

    def get_document_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Counts over all loaded documents.

        Returns:
            dict: ``total``, ``with_ocr``, ``with_pdf`` and ``this_month``
                (created in the current UTC calendar month)
        """
        now = now or utc_now()
        with self._lock:
            documents = list(self._all_documents)
        return {
            "total": len(documents),
            "with_ocr": sum(1 for d in documents if d.has_ocr_text),
            "with_pdf": sum(1 for d in documents if d.has_pdf),
            "this_month": sum(
                1 for d in documents
                if d.created_at.year == now.year and d.created_at.month == now.month
            ),
        }
