"""
Document Service Layer

This service coordinates every multi-step operation that touches both the
document store and an external collaborator:
- Document creation, editing, folder moves, favourites, tags and locking
- OCR over all pages (best-effort per page, all-or-nothing at persist)
- PDF export and single-page filter / rotation
- Deletion of documents together with their files on disk

Mutating operations on one document never overlap: each holds that
document's lock for its whole duration, including the slow collaborator
call. Results are always applied to a freshly read record just before the
write, so fields changed directly through the store in the meantime (for
example a folder deletion moving the document to root) are not lost.

Collaborator failures never escape this layer. A failed OCR page becomes
empty text; a failed export, filter or rotation leaves the record unchanged.
Store errors propagate unmodified.
"""

import logging
import threading
import weakref
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..config_manager import AppConfig
from ..database import DocumentStore
from ..exceptions import (
    CollaboratorError,
    DocumentLockedError,
    NotFoundError,
    OperationCancelled,
    PageIndexError,
    ValidationError,
)
from ..models import Document, Folder, ImageFilter, join_pages
from ..security import hash_password, verify_password as check_password
from ..utils.helpers import epoch_millis, remove_file_quietly, utc_now

logger = logging.getLogger(__name__)

LANGUAGE_SETTING_KEY = "selected_language"
ROTATION_ANGLES = (0, 90, 180, 270)


class OperationHandle:
    """A background OCR or export run that can be cancelled."""

    def __init__(self, document_id: str, future: Future, cancel_event: threading.Event):
        self.document_id = document_id
        self.future = future
        self._cancel_event = cancel_event

    def cancel(self) -> None:
        """Requests cancellation. Nothing is persisted once this returns before the persist step."""
        self._cancel_event.set()
        self.future.cancel()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Document:
        return self.future.result(timeout)


class _DocumentLocks:
    """Registry of one lock per document id.

    Entries live only while some caller holds a reference to the lock, so
    ids of deleted documents do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def get(self, document_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = self._locks[document_id] = threading.Lock()
            return lock


class DocumentService:
    """Lifecycle coordinator for documents, their artifacts and folders."""

    def __init__(self, store: DocumentStore, ocr_service=None, pdf_service=None, filter_service=None,
                 config: Optional[AppConfig] = None, executor: Optional[ThreadPoolExecutor] = None):
        self.store = store
        self.config = config or AppConfig()
        if ocr_service is None:
            from .ocr_service import OCRService
            ocr_service = OCRService(self.config)
        if pdf_service is None:
            from .pdf_service import PDFService
            pdf_service = PDFService(self.config)
        if filter_service is None:
            from .image_service import ImageFilterService
            filter_service = ImageFilterService(self.config)
        self.ocr_service = ocr_service
        self.pdf_service = pdf_service
        self.filter_service = filter_service
        self._executor = executor
        self._owns_executor = executor is None
        self._executor_lock = threading.Lock()
        self._locks = _DocumentLocks()
        self._id_lock = threading.Lock()
        self._last_id = 0

    # --- INTERNAL HELPERS ---

    def _next_id(self) -> str:
        """Millisecond timestamp ids, bumped so they never repeat within a process."""
        with self._id_lock:
            candidate = max(epoch_millis(), self._last_id + 1)
            self._last_id = candidate
            return str(candidate)

    def _require_document(self, document_id: str) -> Document:
        document = self.store.get_document(document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        return document

    def _require_folder(self, folder_id: str) -> Folder:
        folder = self.store.get_folder(folder_id)
        if folder is None:
            raise NotFoundError(f"Folder {folder_id} not found")
        return folder

    @staticmethod
    def _raise_if_cancelled(cancel_event: Optional[threading.Event], document_id: str, stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"{stage} for document {document_id} cancelled; nothing persisted")
            raise OperationCancelled(f"{stage} cancelled for document {document_id}")

    @staticmethod
    def _call_collaborator(description: str, call: Callable[[], Any], default: Any = None) -> Any:
        """Runs a collaborator call, degrading any failure to ``default``."""
        try:
            return call()
        except Exception as e:
            failure = CollaboratorError(f"{description} failed", details=str(e))
            logger.warning(f"{failure.message}: {failure.details}")
            return default

    @staticmethod
    def _discard_file(path: Optional[str]) -> bool:
        try:
            return remove_file_quietly(path)
        except OSError as e:
            logger.warning(f"Could not delete file {path}: {e}")
            return False

    def _discard_replaced(self, old_path: Optional[str], document: Document) -> None:
        """Deletes an artifact that ``document`` no longer references, when policy allows."""
        if not old_path or not self.config.DELETE_REPLACED_ARTIFACTS:
            return
        if old_path == document.pdf_path or old_path in document.image_paths:
            return
        if self._discard_file(old_path):
            logger.debug(f"Removed replaced artifact {old_path}")

    def _mutate(self, document_id: str, **changes: Any) -> Document:
        with self._locks.get(document_id):
            current = self._require_document(document_id)
            return self.store.update_document(current.copy_with(**changes))

    def get_default_language(self) -> str:
        return self.store.get_setting(LANGUAGE_SETTING_KEY) or self.config.OCR_DEFAULT_LANGUAGE

    def set_default_language(self, language_code: str) -> None:
        self.store.set_setting(LANGUAGE_SETTING_KEY, language_code)

    # --- DOCUMENT CRUD ---

    def create_document(self, title: str, image_paths: Sequence[str], folder_id: Optional[str] = None,
                        metadata: Optional[Dict[str, Any]] = None, tags: Optional[Iterable[str]] = None) -> Document:
        """
        Creates and persists a new document.

        Args:
            title: Display title
            image_paths: Page images in page order (at least one)
            folder_id: Optional folder to file it in
            metadata: Optional free-form metadata
            tags: Optional tags

        Returns:
            Document: The persisted record

        Raises:
            ValidationError: If ``image_paths`` is empty
            ConstraintError: If ``folder_id`` does not name a folder
        """
        if not image_paths:
            raise ValidationError("A document needs at least one page image")
        now = utc_now()
        document = Document(
            id=self._next_id(),
            title=title,
            image_paths=tuple(image_paths),
            created_at=now,
            updated_at=now,
            folder_id=folder_id,
            metadata=dict(metadata or {}),
            tags=tuple(tags or ()),
        )
        self.store.insert_document(document)
        logger.info(f"📄 Created document {document.id} '{title}' with {document.page_count} page(s)")
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.store.get_document(document_id)

    def update_document(self, document: Document) -> Document:
        """Full replace of a document record; see `DocumentStore.update_document`."""
        with self._locks.get(document.id):
            return self.store.update_document(document)

    def rename_document(self, document_id: str, title: str) -> Document:
        return self._mutate(document_id, title=title)

    def move_document(self, document_id: str, folder_id: Optional[str]) -> Document:
        """
        Files a document in ``folder_id`` (None moves it to root).

        Raises:
            NotFoundError: If the document or the target folder does not exist
        """
        if folder_id is not None:
            self._require_folder(folder_id)
        return self._mutate(document_id, folder_id=folder_id)

    def toggle_favorite(self, document_id: str) -> Document:
        with self._locks.get(document_id):
            current = self._require_document(document_id)
            return self.store.update_document(current.copy_with(is_favorite=not current.is_favorite))

    def set_tags(self, document_id: str, tags: Iterable[str]) -> Document:
        cleaned: List[str] = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in cleaned:
                cleaned.append(tag)
        return self._mutate(document_id, tags=tuple(cleaned))

    def delete_document(self, document_id: str) -> bool:
        """
        Deletes a document's page images and PDF, then its record.

        Files go first: a crash part-way leaves a record pointing at missing
        files, never a file that no record owns. Missing files are ignored.

        Returns:
            bool: False if the document did not exist
        """
        with self._locks.get(document_id):
            document = self.store.get_document(document_id)
            if document is None:
                return False
            removed = 0
            for path in (*document.image_paths, document.pdf_path):
                if self._discard_file(path):
                    removed += 1
            deleted = self.store.delete_document(document_id)
        logger.info(f"🗑️ Deleted document {document_id} ({removed} file(s) removed)")
        return deleted

    # --- LOCKING ---

    def lock_document(self, document_id: str, password: str) -> Document:
        if not password:
            raise ValidationError("A password is required to lock a document")
        encoded = hash_password(password, iterations=self.config.PASSWORD_HASH_ITERATIONS)
        return self._mutate(document_id, is_locked=True, password=encoded)

    def verify_password(self, document_id: str, password: str) -> bool:
        document = self._require_document(document_id)
        return document.is_locked and check_password(password, document.password)

    def unlock_document(self, document_id: str, password: str) -> Document:
        """
        Removes the lock from a document.

        Raises:
            DocumentLockedError: If the password does not match
        """
        with self._locks.get(document_id):
            current = self._require_document(document_id)
            if not current.is_locked:
                return current
            if not check_password(password, current.password):
                logger.warning(f"Wrong password for document {document_id}")
                raise DocumentLockedError(f"Incorrect password for document {document_id}")
            return self.store.update_document(current.copy_with(is_locked=False, password=None))

    # --- COLLABORATOR OPERATIONS ---

    def run_ocr(self, document_id: str, language_code: Optional[str] = None,
                cancel_event: Optional[threading.Event] = None) -> Document:
        """
        Recognises text on every page and stores the combined result.

        Pages are processed in order. A page whose OCR fails contributes an
        empty string; the rest still run. The per-page results are joined
        with the page-break marker exactly as returned.

        Args:
            document_id: Target document
            language_code: ISO language code; the saved default when omitted
            cancel_event: Checked before each page and before persisting

        Returns:
            Document: The updated record

        Raises:
            NotFoundError: If the document does not exist
            OperationCancelled: If ``cancel_event`` was set; nothing is persisted
        """
        with self._locks.get(document_id):
            document = self._require_document(document_id)
            language = language_code or self.get_default_language()
            page_texts: List[str] = []
            for index, image_path in enumerate(document.image_paths):
                self._raise_if_cancelled(cancel_event, document_id, "OCR")
                text = self._call_collaborator(
                    f"OCR on page {index + 1} of document {document_id}",
                    lambda: self.ocr_service.extract_text(image_path, language),
                    default="",
                )
                page_texts.append(text or "")
            self._raise_if_cancelled(cancel_event, document_id, "OCR")

            current = self._require_document(document_id)
            metadata = dict(current.metadata)
            metadata["ocrLanguage"] = language
            stored = self.store.update_document(
                current.copy_with(extracted_text=join_pages(page_texts), metadata=metadata)
            )
        recognised = sum(1 for t in page_texts if t.strip())
        logger.info(f"🔍 OCR finished for document {document_id}: {recognised}/{len(page_texts)} page(s) with text")
        return stored

    def generate_export(self, document_id: str, cancel_event: Optional[threading.Event] = None) -> Document:
        """
        Renders the document to PDF and records the new path.

        When the PDF collaborator fails the record is returned unchanged.
        A previously exported PDF at a different path is deleted after the
        new path is committed, if ``DELETE_REPLACED_ARTIFACTS`` is set.

        Raises:
            NotFoundError: If the document does not exist
            OperationCancelled: If ``cancel_event`` was set; any freshly
                written PDF is removed and nothing is persisted
        """
        with self._locks.get(document_id):
            document = self._require_document(document_id)
            self._raise_if_cancelled(cancel_event, document_id, "Export")
            pdf_path = self._call_collaborator(
                f"PDF export of document {document_id}",
                lambda: self.pdf_service.generate(document.title, list(document.image_paths), document.extracted_text),
            )
            if not pdf_path:
                logger.warning(f"PDF export produced nothing for document {document_id}; record unchanged")
                return document

            try:
                self._raise_if_cancelled(cancel_event, document_id, "Export")
                current = self._require_document(document_id)
                previous = current.pdf_path
                stored = self.store.update_document(current.copy_with(pdf_path=pdf_path))
            except BaseException:
                if pdf_path != document.pdf_path:
                    self._discard_file(pdf_path)
                raise
            self._discard_replaced(previous, stored)
        logger.info(f"📑 Exported document {document_id} to {pdf_path}")
        return stored

    def _replace_page(self, document_id: str, page_index: int, produce, action: str) -> Document:
        with self._locks.get(document_id):
            document = self._require_document(document_id)
            if not 0 <= page_index < document.page_count:
                raise PageIndexError(document_id, page_index, document.page_count)
            source = document.image_paths[page_index]
            new_path = self._call_collaborator(
                f"{action} on page {page_index + 1} of document {document_id}", lambda: produce(source)
            )
            if not new_path:
                return document

            try:
                current = self._require_document(document_id)
                if not 0 <= page_index < current.page_count:
                    raise PageIndexError(document_id, page_index, current.page_count)
                pages = list(current.image_paths)
                previous = pages[page_index]
                pages[page_index] = new_path
                stored = self.store.update_document(current.copy_with(image_paths=tuple(pages)))
            except BaseException:
                if new_path != source:
                    self._discard_file(new_path)
                raise
            self._discard_replaced(previous, stored)
        logger.info(f"{action} applied to page {page_index + 1} of document {document_id}")
        return stored

    def apply_filter(self, document_id: str, page_index: int, filter_kind: ImageFilter) -> Document:
        """
        Filters one page image and swaps it into the document.

        Only ``image_paths[page_index]`` changes. If the filter collaborator
        fails, the record is returned unchanged.

        Raises:
            PageIndexError: If ``page_index`` is outside ``0..page_count-1``
            ValidationError: If ``filter_kind`` is not a known filter
            NotFoundError: If the document does not exist
        """
        try:
            kind = ImageFilter(filter_kind)
        except ValueError:
            raise ValidationError(f"Unknown image filter: {filter_kind}")
        return self._replace_page(
            document_id, page_index, lambda path: self.filter_service.apply(path, kind), f"Filter {kind.value}"
        )

    def rotate_page(self, document_id: str, page_index: int, angle: int) -> Document:
        """Rotates one page clockwise by 0, 90, 180 or 270 degrees."""
        angle = angle % 360 if isinstance(angle, int) else angle
        if angle not in ROTATION_ANGLES:
            raise ValidationError(f"Unsupported rotation angle: {angle}")
        if angle == 0:
            document = self._require_document(document_id)
            if not 0 <= page_index < document.page_count:
                raise PageIndexError(document_id, page_index, document.page_count)
            return document
        return self._replace_page(
            document_id, page_index, lambda path: self.filter_service.rotate_image(path, angle), f"Rotation {angle}°"
        )

    # --- BACKGROUND EXECUTION ---

    @property
    def executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.WORKER_THREADS, thread_name_prefix="docscan-worker"
                )
            return self._executor

    def submit_ocr(self, document_id: str, language_code: Optional[str] = None) -> OperationHandle:
        """Runs `run_ocr` on the worker pool."""
        cancel_event = threading.Event()
        future = self.executor.submit(self.run_ocr, document_id, language_code, cancel_event)
        return OperationHandle(document_id, future, cancel_event)

    def submit_export(self, document_id: str) -> OperationHandle:
        """Runs `generate_export` on the worker pool."""
        cancel_event = threading.Event()
        future = self.executor.submit(self.generate_export, document_id, cancel_event)
        return OperationHandle(document_id, future, cancel_event)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            if self._executor is not None and self._owns_executor:
                self._executor.shutdown(wait=wait)
                self._executor = None

    # --- FOLDERS ---

    def create_folder(self, name: str, description: Optional[str] = None, parent_id: Optional[str] = None) -> Folder:
        """
        Creates a folder.

        Raises:
            ValidationError: If ``name`` is blank
            NotFoundError: If ``parent_id`` does not name a folder
        """
        if not name or not name.strip():
            raise ValidationError("Folder name must not be empty")
        if parent_id is not None:
            self._require_folder(parent_id)
        now = utc_now()
        folder = Folder(id=self._next_id(), name=name.strip(), description=description,
                        created_at=now, updated_at=now, parent_id=parent_id)
        stored = self.store.insert_folder(folder)
        logger.info(f"📁 Created folder {stored.id} '{stored.name}'")
        return stored

    def rename_folder(self, folder_id: str, name: str) -> Folder:
        if not name or not name.strip():
            raise ValidationError("Folder name must not be empty")
        folder = self._require_folder(folder_id)
        return self.store.update_folder(folder.copy_with(name=name.strip()))

    def delete_folder(self, folder_id: str) -> bool:
        """Deletes a folder; its documents and sub-folders move to root."""
        return self.store.delete_folder(folder_id)

    # --- MAINTENANCE ---

    def clear_all_data(self, delete_files: bool = True) -> int:
        """
        Removes every document, folder and setting.

        Args:
            delete_files: Also delete each document's images and PDF

        Returns:
            int: Number of documents that existed
        """
        documents = self.store.get_all_documents()
        if delete_files:
            for document in documents:
                for path in (*document.image_paths, document.pdf_path):
                    self._discard_file(path)
        self.store.clear_all_data()
        return len(documents)
