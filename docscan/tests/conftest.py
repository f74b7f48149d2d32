import os
import shutil
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure project root is on path
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docscan.config_manager import AppConfig
from docscan.database import DocumentStore
from docscan.models import Document, Folder
from docscan.services.document_service import DocumentService
from docscan.services.query_service import DocumentQueryEngine
from docscan.tests.test_utils import write_valid_jpeg

BASE_TIME = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeOCR:
    """OCR stand-in keyed by image basename. Exception values are raised."""

    def __init__(self, texts=None):
        self.texts = dict(texts or {})
        self.calls = []
        self.before_call = None

    def extract_text(self, image_path, language_code):
        self.calls.append((os.path.basename(image_path), language_code))
        if self.before_call is not None:
            self.before_call(image_path)
        value = self.texts.get(os.path.basename(image_path), "")
        if isinstance(value, Exception):
            raise value
        return value


class FakePDF:
    """Writes a placeholder file per call unless told to fail."""

    def __init__(self, output_dir: Path):
        self.output_dir = output_dir
        self.fail_with = None
        self.return_none = False
        self.calls = []

    def generate(self, title, image_paths, extracted_text=None):
        self.calls.append((title, list(image_paths), extracted_text))
        if self.fail_with is not None:
            raise self.fail_with
        if self.return_none:
            return None
        path = self.output_dir / f"{title}_{len(self.calls)}.pdf"
        path.write_bytes(b"%PDF-1.4 placeholder")
        return str(path)


class FakeFilter:
    """Copies the source image to a new name per call."""

    def __init__(self, output_dir: Path):
        self.output_dir = output_dir
        self.return_none = False
        self.calls = []

    def _copy(self, image_path, suffix):
        self.calls.append((os.path.basename(image_path), suffix))
        if self.return_none:
            return None
        stem = Path(image_path).stem
        target = self.output_dir / f"{stem}_{suffix}_{len(self.calls)}.jpg"
        shutil.copyfile(image_path, target)
        return str(target)

    def apply(self, image_path, filter_kind):
        return self._copy(image_path, getattr(filter_kind, "value", filter_kind))

    def rotate_image(self, image_path, angle):
        return self._copy(image_path, f"rot{angle}")


@pytest.fixture()
def config(tmp_path):
    data = tmp_path / "data"
    return AppConfig(
        DATABASE_PATH=str(tmp_path / "docscan.db"),
        DATA_DIR=str(data),
        PDF_DIR=str(data / "pdfs"),
        PROCESSED_DIR=str(data / "processed"),
        BACKUP_DIR=str(data / "backups"),
        LOG_FILE_PATH=str(tmp_path / "logs" / "docscan.log"),
        PASSWORD_HASH_ITERATIONS=1000,
    )


@pytest.fixture()
def store(config):
    return DocumentStore(config.DATABASE_PATH)


@pytest.fixture()
def artifacts_dir(tmp_path):
    path = tmp_path / "artifacts"
    path.mkdir()
    return path


@pytest.fixture()
def fake_ocr():
    return FakeOCR()


@pytest.fixture()
def fake_pdf(artifacts_dir):
    return FakePDF(artifacts_dir)


@pytest.fixture()
def fake_filter(artifacts_dir):
    return FakeFilter(artifacts_dir)


@pytest.fixture()
def service(store, config, fake_ocr, fake_pdf, fake_filter):
    svc = DocumentService(store, ocr_service=fake_ocr, pdf_service=fake_pdf,
                          filter_service=fake_filter, config=config)
    yield svc
    svc.shutdown(wait=True)


@pytest.fixture()
def engine(store):
    eng = DocumentQueryEngine(store)
    yield eng
    eng.close()


@pytest.fixture()
def page_images(tmp_path):
    """Two real JPEG page images, p1.jpg and p2.jpg."""
    scans = tmp_path / "scans"
    scans.mkdir()
    return [str(write_valid_jpeg(scans / "p1.jpg")), str(write_valid_jpeg(scans / "p2.jpg"))]


@pytest.fixture()
def make_document():
    """Factory for Document records with predictable timestamps."""
    counter = {"n": 0}

    def _make(doc_id=None, title="Doc", pages=1, minutes=None, **fields):
        counter["n"] += 1
        n = counter["n"]
        created = BASE_TIME + timedelta(minutes=n if minutes is None else minutes)
        return Document(
            id=doc_id or f"doc{n}",
            title=title,
            image_paths=fields.pop("image_paths", tuple(f"/scans/{n}_{i}.jpg" for i in range(pages))),
            created_at=created,
            updated_at=created,
            **fields,
        )

    return _make


@pytest.fixture()
def make_folder():
    def _make(folder_id, name=None, **fields):
        return Folder(id=folder_id, name=name or folder_id, created_at=BASE_TIME, updated_at=BASE_TIME, **fields)

    return _make


@pytest.fixture()
def gate():
    """A pair of events for holding a collaborator call open from another thread."""
    return threading.Event(), threading.Event()
