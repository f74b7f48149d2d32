"""
PDF Service

Default PDF collaborator. Builds an A4 export of a document with PyMuPDF:

1. A cover page (title, generation time, extracted text) when the document
   has OCR text.
2. One page per existing page image, scaled to fit, labelled "Page N" when a
   cover page is present. Each page also carries that page's OCR text as an
   invisible layer so the PDF is searchable.

Images are normalised through Pillow first so palette, RGBA and CMYK inputs
embed the same way as plain RGB scans.

``generate`` returns the new file path, or None on failure. It never raises.
"""

import io
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import fitz  # PyMuPDF
from PIL import Image

from ..config_manager import AppConfig
from ..models import PAGE_BREAK
from ..security import sanitize_filename
from ..utils.helpers import epoch_millis, title_slug
from ..utils.path_utils import resolve_output_dir

logger = logging.getLogger(__name__)

A4_WIDTH, A4_HEIGHT = fitz.paper_size("a4")
MARGIN = 36
HEADER_HEIGHT = 28


def _image_stream(image_path: str, max_size: Tuple[int, int]) -> bytes:
    """Re-encode an image as PNG bytes for embedding, downscaled to ``max_size`` pixels."""
    with Image.open(image_path) as img:
        img.thumbnail(max_size)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()


class PDFService:
    """Renders documents to PDF files in the configured output directory."""

    def __init__(self, config: Optional[AppConfig] = None, output_dir: Optional[str] = None):
        self.config = config or AppConfig()
        self.output_dir = output_dir

    def _max_pixels(self, rect: Any) -> Tuple[int, int]:
        # Points are 1/72 inch
        dpi = self.config.PDF_IMAGE_DPI
        return int(rect.width * dpi / 72), int(rect.height * dpi / 72)

    def _target_path(self, title: str) -> str:
        directory = resolve_output_dir(self.output_dir, self.config, 'PDF_DIR', 'pdfs')
        millis = epoch_millis()
        while True:
            candidate = os.path.join(directory, sanitize_filename(f"{title_slug(title)}_{millis}.pdf"))
            if not os.path.exists(candidate):
                return candidate
            millis += 1

    def generate(self, title: str, image_paths: Sequence[str], extracted_text: Optional[str] = None) -> Optional[str]:
        """
        Generates a PDF for a document.

        Args:
            title: Document title, used on the cover page and in the file name
            image_paths: Page images in page order; missing files are skipped
            extracted_text: OCR text joined with the page-break marker

        Returns:
            str: Path of the written PDF, or None if nothing could be written
        """
        has_text = bool(extracted_text)
        page_texts: List[str] = extracted_text.split(PAGE_BREAK) if has_text else []
        # Only overlay per-page text when it lines up with the images.
        if len(page_texts) != len(image_paths):
            page_texts = []

        try:
            with fitz.open() as doc:
                if has_text:
                    self._add_cover_page(doc, title, extracted_text)

                for index, img_path in enumerate(image_paths):
                    if not os.path.exists(img_path):
                        logger.warning(f"Image not found for PDF export: {img_path}")
                        continue
                    page = doc.new_page(width=A4_WIDTH, height=A4_HEIGHT)
                    top = MARGIN
                    if has_text:
                        page.insert_text((MARGIN, MARGIN + 14), f"Page {index + 1}", fontsize=14)
                        top += HEADER_HEIGHT
                    rect = fitz.Rect(MARGIN, top, A4_WIDTH - MARGIN, A4_HEIGHT - MARGIN)
                    page.insert_image(rect, stream=_image_stream(img_path, self._max_pixels(rect)), keep_proportion=True)
                    if page_texts and page_texts[index].strip():
                        # Invisible text layer (render_mode=3) keeps the page searchable.
                        page.insert_text((MARGIN, top + 10), page_texts[index], fontsize=8, render_mode=3)

                if doc.page_count == 0:
                    logger.warning(f"Nothing to export for '{title}': no images and no text")
                    return None

                doc.set_metadata({"title": title, "creator": "docscan"})
                pdf_path = self._target_path(title)
                doc.save(pdf_path, garbage=4, deflate=True)
        except Exception as e:
            logger.error(f"Error generating PDF for '{title}': {e}")
            return None

        logger.info(f"✅ PDF generated: {pdf_path}")
        return pdf_path

    @staticmethod
    def _add_cover_page(doc: Any, title: str, extracted_text: str) -> None:
        page = doc.new_page(width=A4_WIDTH, height=A4_HEIGHT)
        page.insert_text((MARGIN, MARGIN + 24), title, fontsize=24)
        generated = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        page.insert_text((MARGIN, MARGIN + 54), f"Generated on: {generated}", fontsize=12, color=(0.45, 0.45, 0.45))
        page.insert_text((MARGIN, MARGIN + 90), "Extracted Text:", fontsize=16)
        body = fitz.Rect(MARGIN, MARGIN + 104, A4_WIDTH - MARGIN, A4_HEIGHT - MARGIN)
        # Text that does not fit on the cover is clipped; the full text is on the page layers.
        page.insert_textbox(body, extracted_text, fontsize=10)

    @staticmethod
    def get_pdf_info(pdf_path: str) -> Optional[Dict[str, Any]]:
        """
        Basic facts about a generated PDF.

        Returns:
            dict with ``page_count``, ``file_size`` and ``title``, or None if
            the file is missing or unreadable
        """
        if not pdf_path or not os.path.exists(pdf_path):
            return None
        try:
            with fitz.open(pdf_path) as doc:
                return {
                    "page_count": doc.page_count,
                    "file_size": os.path.getsize(pdf_path),
                    "title": (doc.metadata or {}).get("title") or "",
                }
        except Exception as e:
            logger.warning(f"Could not read PDF {pdf_path}: {e}")
            return None
