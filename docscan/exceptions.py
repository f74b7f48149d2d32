"""
Custom exceptions for the document scanning library.
Provides specific exception types for the store, the query layer and the
lifecycle coordinator.
"""
from typing import Optional

class DocScanError(Exception):
    """Base exception class for docscan errors."""
    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

class ConfigurationError(DocScanError):
    """Raised when there is an error in configuration."""
    pass

class ValidationError(DocScanError):
    """Raised when input validation fails."""
    pass

class PageIndexError(ValidationError, IndexError):
    """Raised when a page index is outside a document's page range."""
    def __init__(self, document_id: str, page_index: int, page_count: int):
        self.document_id = document_id
        self.page_index = page_index
        self.page_count = page_count
        super().__init__(
            f"Page index {page_index} out of range for document {document_id}",
            details=f"page_count={page_count}",
        )

class NotFoundError(DocScanError):
    """Raised when an operation targets an unknown document or folder id."""
    pass

class ConstraintError(DocScanError):
    """Raised on uniqueness or foreign-key violations in the store."""
    pass

class StorageIOError(DocScanError, OSError):
    """Raised when the underlying database or file system is inaccessible."""
    pass

class CollaboratorError(DocScanError):
    """Raised by an external OCR/PDF/filter collaborator. Never escapes the coordinator."""
    pass

class OperationCancelled(DocScanError):
    """Raised when a cancelled operation stops before persisting its result."""
    pass

class DocumentLockedError(DocScanError):
    """Raised when a locked document is accessed with a missing or wrong password."""
    pass
