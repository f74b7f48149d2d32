from datetime import datetime, timedelta, timezone

import pytest

from docscan.models import (
    PAGE_BREAK,
    Document,
    DocumentType,
    Folder,
    format_timestamp,
    join_pages,
    parse_timestamp,
)
from docscan.security import hash_password, is_password_hash, sanitize_filename, verify_password
from docscan.tests.test_utils import write_valid_jpeg
from docscan.utils.helpers import format_file_size, title_slug, validate_file_type
from docscan.utils.path_utils import file_size


def test_derived_properties(make_document):
    doc = make_document(pages=3)
    assert doc.page_count == 3
    assert doc.has_ocr_text is False
    assert doc.has_pdf is False
    assert doc.copy_with(extracted_text="").has_ocr_text is False
    assert doc.copy_with(extracted_text="x").has_ocr_text is True
    assert doc.copy_with(pdf_path="/a.pdf").has_pdf is True


def test_empty_image_list_is_legal_at_model_level(make_document):
    assert make_document(image_paths=()).page_count == 0


def test_documents_are_immutable(make_document):
    doc = make_document()
    with pytest.raises(AttributeError):
        doc.title = "changed"


def test_copy_with_leaves_original_untouched(make_document):
    doc = make_document(title="before", tags=("a",))
    changed = doc.copy_with(title="after", tags=["b", "c"])
    assert doc.title == "before"
    assert changed.tags == ("b", "c")
    assert changed.id == doc.id


def test_naive_timestamps_are_treated_as_utc(make_document):
    naive = datetime(2024, 1, 2, 3, 4, 5)
    doc = make_document().copy_with(created_at=naive)
    assert doc.created_at.tzinfo is timezone.utc


def test_timestamp_codec_preserves_microseconds_and_order():
    a = datetime(2024, 1, 1, 0, 0, 0, 1, tzinfo=timezone.utc)
    b = a + timedelta(microseconds=1)
    assert parse_timestamp(format_timestamp(a)) == a
    assert format_timestamp(a) < format_timestamp(b)
    offset = datetime(2024, 1, 1, 5, 30, tzinfo=timezone(timedelta(hours=5, minutes=30)))
    assert format_timestamp(offset) == "2024-01-01T00:00:00.000000+00:00"


def test_row_round_trip(make_document):
    doc = make_document(pages=2, metadata={"a": 1}, tags=("t",), is_locked=True, password="hash")
    assert Document.from_row(doc.to_row()) == doc


def test_from_row_tolerates_bad_json(make_document):
    row = make_document().to_row()
    row["metadata"] = "{not json"
    row["tags"] = None
    doc = Document.from_row(row)
    assert doc.metadata == {}
    assert doc.tags == ()


def test_folder_row_round_trip():
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    folder = Folder(id="f", name="Bills", created_at=now, updated_at=now, description="d",
                    parent_id="root", document_count=3)
    assert Folder.from_row(folder.to_row()) == folder


@pytest.mark.parametrize("query, expected", [
    ("", True),
    ("INVOICE", True),
    ("due", True),
    ("tax", False),
    ("nothing", False),
])
def test_matches_search(make_document, query, expected):
    doc = make_document(title="Invoice", extracted_text="Amount DUE", tags=("tax",))
    assert doc.matches_search(query) is expected


def test_matches_search_with_tags(make_document):
    doc = make_document(title="Scan", tags=("Tax",))
    assert doc.matches_search("tax", include_tags=True) is True


@pytest.mark.parametrize("title, expected", [
    ("Driving License", DocumentType.ID_CARD),
    ("Grocery bill", DocumentType.RECEIPT),
    ("Rental Agreement", DocumentType.CONTRACT),
    ("Quarterly Report", DocumentType.REPORT),
    ("Meeting memo", DocumentType.NOTE),
    ("Holiday", DocumentType.OTHER),
])
def test_document_type_from_title(make_document, title, expected):
    assert make_document(title=title).document_type is expected


def test_file_size_counts_existing_files(make_document, tmp_path):
    page = write_valid_jpeg(tmp_path / "p.jpg")
    doc = make_document(image_paths=(str(page), str(tmp_path / "gone.jpg")), pdf_path=None)
    assert doc.get_file_size() == page.stat().st_size
    assert doc.get_formatted_file_size().endswith("B")
    with_missing_pdf = doc.copy_with(pdf_path=str(tmp_path / "gone.pdf"))
    assert with_missing_pdf.get_file_size() == page.stat().st_size


def test_file_size_helper(tmp_path):
    page = write_valid_jpeg(tmp_path / "p.jpg")
    assert file_size(str(page)) == page.stat().st_size
    assert file_size(None) == 0
    assert file_size("") == 0
    assert file_size(str(tmp_path / "missing.jpg")) == 0


def test_join_pages():
    assert join_pages(["Hello", ""]) == "Hello" + PAGE_BREAK
    assert join_pages(["only"]) == "only"
    assert join_pages([]) == ""


@pytest.mark.parametrize("size, expected", [
    (0, "0 B"), (1023, "1023 B"), (1024, "1.0 KB"), (1536, "1.5 KB"), (5 * 1024 * 1024, "5.0 MB"),
])
def test_format_file_size(size, expected):
    assert format_file_size(size) == expected


def test_helpers():
    assert validate_file_type("scan.JPG") is True
    assert validate_file_type("scan.gif") is False
    assert title_slug("  Tax: Return 2024! ") == "Tax_Return_2024"
    assert title_slug("!!!") == "document"


def test_password_hashing():
    encoded = hash_password("s3cret", iterations=1000)
    assert is_password_hash(encoded)
    assert verify_password("s3cret", encoded) is True
    assert verify_password("nope", encoded) is False
    assert verify_password("s3cret", "s3cret") is False
    assert verify_password("s3cret", None) is False
    assert hash_password("s3cret", iterations=1000) != encoded


def test_sanitize_filename():
    assert sanitize_filename("../etc/pass wd.pdf") == "pass_wd.pdf"
    long_name = "a" * 300 + ".pdf"
    assert len(sanitize_filename(long_name)) == 255
