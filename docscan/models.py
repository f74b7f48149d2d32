"""
Domain records for scanned documents and folders.

``Document`` and ``Folder`` are immutable dataclasses. Callers never patch a
stored record in place: they read it, derive a changed copy with
``copy_with(...)`` and hand the copy back to the store, which replaces the
whole row.

Row codecs (``to_row`` / ``from_row``) define the on-disk encoding used by
``database.DocumentStore``:

- ``image_paths`` and ``tags`` are JSON arrays (paths may contain commas)
- ``metadata`` is a JSON object
- timestamps are fixed-width ISO-8601 UTC strings with microseconds, so
  lexical order equals chronological order inside SQL
- booleans are stored as 0/1 integers
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from .utils.helpers import format_file_size
from .utils.path_utils import file_size

logger = logging.getLogger(__name__)

PAGE_BREAK = "\n\n--- Page Break ---\n\n"


class SortType(str, Enum):
    DATE_DESC = "dateDesc"
    DATE_ASC = "dateAsc"
    TITLE_ASC = "titleAsc"
    TITLE_DESC = "titleDesc"
    SIZE_DESC = "sizeDesc"


class ImageFilter(str, Enum):
    NONE = "none"
    BLACK_WHITE = "blackWhite"
    GRAYSCALE = "grayscale"
    MAGIC_COLOR = "magicColor"
    LIGHTEN = "lighten"
    DARKEN = "darken"
    CONTRAST = "contrast"
    BRIGHTNESS = "brightness"


class DocumentType(str, Enum):
    ID_CARD = "idCard"
    RECEIPT = "receipt"
    CONTRACT = "contract"
    REPORT = "report"
    NOTE = "note"
    OTHER = "other"


# Title keywords checked in order; first hit wins. A keyword must start a word,
# so "id" matches "ID card" or "identity" but not "holiday".
_TYPE_KEYWORDS: Tuple[Tuple[DocumentType, Tuple[str, ...]], ...] = (
    (DocumentType.ID_CARD, ("id", "card", "license")),
    (DocumentType.RECEIPT, ("receipt", "bill")),
    (DocumentType.CONTRACT, ("contract", "agreement")),
    (DocumentType.REPORT, ("report", "document")),
    (DocumentType.NOTE, ("note", "memo")),
)


# --- TIMESTAMP CODEC ---

def to_utc(value: datetime) -> datetime:
    """Normalise a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return to_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return to_utc(datetime.fromisoformat(value))


def _load_json(raw: Optional[str], default: Any, column: str) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Unreadable JSON in column {column}: {e}")
        return default


@dataclass(frozen=True)
class Document:
    """A scanned, possibly multi-page document.

    Invariants: ``page_count == len(image_paths)``; ``has_ocr_text`` is true
    only for non-empty ``extracted_text``; ``has_pdf`` iff ``pdf_path`` is set.
    ``extracted_text`` and ``pdf_path`` are independent: either may be stale
    relative to the other.
    """
    id: str
    title: str
    image_paths: Tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    pdf_path: Optional[str] = None
    extracted_text: Optional[str] = None
    folder_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()
    is_favorite: bool = False
    is_locked: bool = False
    password: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "image_paths", tuple(self.image_paths))
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "metadata", dict(self.metadata or {}))
        object.__setattr__(self, "created_at", to_utc(self.created_at))
        object.__setattr__(self, "updated_at", to_utc(self.updated_at))

    def __hash__(self):
        return hash(self.id)

    @property
    def page_count(self) -> int:
        return len(self.image_paths)

    @property
    def has_ocr_text(self) -> bool:
        return bool(self.extracted_text)

    @property
    def has_pdf(self) -> bool:
        return self.pdf_path is not None

    @property
    def document_type(self) -> DocumentType:
        """Best-guess document kind derived from keywords in the title."""
        title = self.title.lower()
        for doc_type, keywords in _TYPE_KEYWORDS:
            if any(re.search(r"\b" + re.escape(k), title) for k in keywords):
                return doc_type
        return DocumentType.OTHER

    def copy_with(self, **changes: Any) -> 'Document':
        """Return a copy with ``changes`` applied (fields not named keep their value)."""
        return replace(self, **changes)

    def matches_search(self, query: str, include_tags: bool = False) -> bool:
        """Case-insensitive substring match on title or extracted text.

        An empty query matches every document.
        """
        if not query:
            return True
        needle = query.casefold()
        if needle in self.title.casefold():
            return True
        if self.extracted_text and needle in self.extracted_text.casefold():
            return True
        if include_tags:
            return any(needle in tag.casefold() for tag in self.tags)
        return False

    def get_file_size(self) -> int:
        """Total bytes of the page images and the PDF that still exist on disk."""
        total = sum(file_size(p) for p in self.image_paths)
        return total + file_size(self.pdf_path)

    def get_formatted_file_size(self) -> str:
        return format_file_size(self.get_file_size())

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "image_paths": json.dumps(list(self.image_paths)),
            "pdf_path": self.pdf_path,
            "extracted_text": self.extracted_text,
            "folder_id": self.folder_id,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "metadata": json.dumps(self.metadata),
            "tags": json.dumps(list(self.tags)),
            "is_favorite": 1 if self.is_favorite else 0,
            "is_locked": 1 if self.is_locked else 0,
            "password": self.password,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Document':
        return cls(
            id=row["id"],
            title=row["title"],
            image_paths=tuple(_load_json(row["image_paths"], [], "image_paths")),
            pdf_path=row["pdf_path"],
            extracted_text=row["extracted_text"],
            folder_id=row["folder_id"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            metadata=_load_json(row["metadata"], {}, "metadata"),
            tags=tuple(_load_json(row["tags"], [], "tags")),
            is_favorite=bool(row["is_favorite"]),
            is_locked=bool(row["is_locked"]),
            password=row["password"],
        )

    def __repr__(self):
        return (f"Document(id={self.id!r}, title={self.title!r}, page_count={self.page_count}, "
                f"has_ocr={self.has_ocr_text}, has_pdf={self.has_pdf})")


@dataclass(frozen=True)
class Folder:
    """A named, optionally nested grouping of documents.

    ``document_count`` is owned by the store: it is recomputed inside every
    write that changes folder membership and ignored on input.
    """
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    parent_id: Optional[str] = None
    document_count: int = 0

    def __post_init__(self):
        object.__setattr__(self, "created_at", to_utc(self.created_at))
        object.__setattr__(self, "updated_at", to_utc(self.updated_at))

    def copy_with(self, **changes: Any) -> 'Folder':
        return replace(self, **changes)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "parent_id": self.parent_id,
            "document_count": self.document_count,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Folder':
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            parent_id=row["parent_id"],
            document_count=row["document_count"] or 0,
        )


def join_pages(page_texts: Sequence[str]) -> str:
    """Concatenate per-page OCR output with the page-break marker."""
    return PAGE_BREAK.join(page_texts)
