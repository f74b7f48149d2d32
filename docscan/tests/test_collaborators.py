import os
import time

import fitz
import pytest
from PIL import Image

from docscan.models import PAGE_BREAK, ImageFilter
from docscan.services import ocr_service as ocr_module
from docscan.services.image_service import ImageFilterService
from docscan.services.ocr_service import OCRService, tesseract_language
from docscan.services.pdf_service import PDFService
from docscan.tests.test_utils import write_gradient_png, write_rgba_png, write_valid_jpeg, write_valid_png


# --- OCR ---

@pytest.fixture()
def fake_tesseract(monkeypatch):
    calls = []

    def image_to_string(img, lang=None):
        calls.append((img.size, lang))
        return "recognised text"

    monkeypatch.setattr(ocr_module.pytesseract, "image_to_string", image_to_string)
    return calls


def test_extract_text_maps_language(config, tmp_path, fake_tesseract):
    page = write_valid_png(tmp_path / "page.png")
    assert OCRService(config).extract_text(str(page), "hi") == "recognised text"
    assert fake_tesseract == [((40, 30), "hin")]


def test_extract_text_uses_configured_default_language(config, tmp_path, fake_tesseract):
    config.OCR_DEFAULT_LANGUAGE = "de"
    page = write_valid_png(tmp_path / "page.png")
    OCRService(config).extract_text(str(page))
    assert fake_tesseract[0][1] == "deu"


def test_extract_text_never_raises(config, tmp_path, monkeypatch):
    def explode(img, lang=None):
        raise RuntimeError("tesseract missing")

    monkeypatch.setattr(ocr_module.pytesseract, "image_to_string", explode)
    page = write_valid_png(tmp_path / "page.png")
    service = OCRService(config)
    assert service.extract_text(str(page), "en") == ""
    assert service.extract_text(str(tmp_path / "missing.png"), "en") == ""


def test_debug_skip_ocr(config, tmp_path, fake_tesseract):
    config.DEBUG_SKIP_OCR = True
    page = write_valid_png(tmp_path / "page.png")
    assert OCRService(config).extract_text(str(page), "en") == ""
    assert fake_tesseract == []


def test_text_confidence_averages_positive_scores(config, tmp_path, monkeypatch):
    monkeypatch.setattr(
        ocr_module.pytesseract, "image_to_data",
        lambda img, lang=None, output_type=None: {"conf": ["-1", "90", "70", "bad", 0]},
    )
    page = write_valid_png(tmp_path / "page.png")
    assert OCRService(config).get_text_confidence(str(page), "en") == pytest.approx(80.0)


@pytest.mark.parametrize("code, expected", [
    ("en", "eng"), ("EN", "eng"), ("zh", "chi_sim"), ("eng", "eng"), ("xx", "eng"), (None, "eng"),
])
def test_tesseract_language(code, expected):
    assert tesseract_language(code) == expected


def test_supported_languages(config):
    codes = [lang.code for lang in OCRService(config).get_supported_languages()]
    assert codes[0] == "en"
    assert {"hi", "mr", "ta", "ja", "ar"} <= set(codes)


def test_validate_image_for_ocr(config, tmp_path):
    service = OCRService(config)
    big = tmp_path / "big.png"
    Image.effect_noise((200, 200), 64).convert("RGB").save(big)
    assert service.validate_image_for_ocr(str(big)) is True

    tiny = write_valid_png(tmp_path / "tiny.png", size=(2, 2))
    assert service.validate_image_for_ocr(str(tiny)) is False

    wrong_ext = tmp_path / "scan.gif"
    Image.effect_noise((200, 200), 64).save(wrong_ext, format="GIF")
    assert service.validate_image_for_ocr(str(wrong_ext)) is False

    corrupt = tmp_path / "corrupt.jpg"
    corrupt.write_bytes(b"\xff\xd8" + b"\x00" * 4096)
    assert service.validate_image_for_ocr(str(corrupt)) is False

    assert service.validate_image_for_ocr(str(tmp_path / "missing.png")) is False


def test_extract_specific_info():
    text = (
        "Contact billing@example.com or +91 9876543210.\n"
        "Portal: https://example.com/pay?id=7 Due 12/04/2024 or 5 March 2024."
    )
    info = OCRService.extract_specific_info(text)
    assert info["emails"] == ["billing@example.com"]
    assert info["phone_numbers"] == ["+91 9876543210"]
    assert info["urls"] == ["https://example.com/pay?id=7"]
    assert info["dates"] == ["12/04/2024", "5 March 2024"]
    assert OCRService.extract_specific_info("") == {"emails": [], "phone_numbers": [], "urls": [], "dates": []}


# --- PDF ---

def test_pdf_without_text_has_one_page_per_image(config, tmp_path):
    pages = [str(write_valid_jpeg(tmp_path / "a.jpg")), str(write_rgba_png(tmp_path / "b.png"))]
    pdf_path = PDFService(config).generate("My Scan", pages)
    assert pdf_path is not None
    assert os.path.dirname(pdf_path) == os.path.abspath(config.PDF_DIR)
    assert os.path.basename(pdf_path).startswith("My_Scan_")
    with fitz.open(pdf_path) as doc:
        assert doc.page_count == 2
        assert doc.metadata["title"] == "My Scan"


def test_pdf_with_text_adds_cover_and_searchable_layer(config, tmp_path):
    pages = [str(write_valid_jpeg(tmp_path / "a.jpg")), str(write_valid_jpeg(tmp_path / "b.jpg"))]
    text = "first page words" + PAGE_BREAK + "second page words"
    pdf_path = PDFService(config).generate("Report", pages, text)
    with fitz.open(pdf_path) as doc:
        assert doc.page_count == 3
        cover = doc[0].get_text()
        assert "Report" in cover
        assert "Extracted Text:" in cover
        assert "Page 1" in doc[1].get_text()
        assert "second page words" in doc[2].get_text()


def test_pdf_skips_missing_images(config, tmp_path):
    pages = [str(write_valid_jpeg(tmp_path / "a.jpg")), str(tmp_path / "gone.jpg")]
    pdf_path = PDFService(config).generate("Partial", pages)
    with fitz.open(pdf_path) as doc:
        assert doc.page_count == 1


def test_pdf_with_nothing_to_render_returns_none(config, tmp_path):
    assert PDFService(config).generate("Empty", [str(tmp_path / "gone.jpg")]) is None


def test_pdf_names_are_unique_and_sanitised(config, tmp_path):
    page = str(write_valid_jpeg(tmp_path / "a.jpg"))
    service = PDFService(config)
    first = service.generate("Tax/Return: 2024!", [page])
    second = service.generate("Tax/Return: 2024!", [page])
    assert first != second
    assert os.path.basename(first).startswith("TaxReturn_2024_")


def test_get_pdf_info(config, tmp_path):
    page = str(write_valid_jpeg(tmp_path / "a.jpg"))
    service = PDFService(config)
    info = service.get_pdf_info(service.generate("Info", [page]))
    assert info["page_count"] == 1
    assert info["file_size"] > 0
    assert info["title"] == "Info"
    assert service.get_pdf_info(str(tmp_path / "missing.pdf")) is None


def test_pdf_output_dir_override(config, tmp_path):
    out = tmp_path / "exports"
    page = str(write_valid_jpeg(tmp_path / "a.jpg"))
    pdf_path = PDFService(config, output_dir=str(out)).generate("Override", [page])
    assert os.path.dirname(pdf_path) == str(out)


# --- image filters ---

@pytest.mark.parametrize("kind", list(ImageFilter))
def test_every_filter_writes_a_new_jpeg(config, tmp_path, kind):
    source = write_valid_png(tmp_path / "page.png")
    result = ImageFilterService(config).apply(str(source), kind)
    assert result is not None
    assert result != str(source)
    assert os.path.basename(result).startswith(f"page_{kind.value}_")
    assert result.endswith(".jpg")
    with Image.open(result) as img:
        assert img.format == "JPEG"
        assert img.size == (40, 30)
    assert source.exists()


def test_black_white_is_thresholded(config, tmp_path):
    source = write_gradient_png(tmp_path / "gradient.png")
    result = ImageFilterService(config).apply(str(source), ImageFilter.BLACK_WHITE)
    with Image.open(result) as img:
        assert img.mode == "L"
        low, high = img.getextrema()
    # JPEG ringing keeps values near, not exactly at, the extremes.
    assert low < 20 and high > 235


def test_grayscale_output_is_single_channel(config, tmp_path):
    source = write_valid_png(tmp_path / "page.png")
    result = ImageFilterService(config).apply(str(source), "grayscale")
    with Image.open(result) as img:
        assert img.mode == "L"


def test_lighten_and_darken_shift_brightness(config, tmp_path):
    source = write_valid_jpeg(tmp_path / "page.jpg", color=(120, 120, 120))
    service = ImageFilterService(config)

    def mean(path):
        with Image.open(path) as img:
            return sum(img.convert("L").getdata()) / (img.width * img.height)

    assert mean(service.apply(str(source), ImageFilter.LIGHTEN)) > mean(str(source))
    assert mean(service.apply(str(source), ImageFilter.DARKEN)) < mean(str(source))


def test_filter_failures_return_none(config, tmp_path):
    service = ImageFilterService(config)
    assert service.apply(str(tmp_path / "missing.png"), ImageFilter.GRAYSCALE) is None
    assert service.apply(str(write_valid_png(tmp_path / "p.png")), "sepia") is None
    corrupt = tmp_path / "corrupt.png"
    corrupt.write_bytes(b"not an image")
    assert service.apply(str(corrupt), ImageFilter.GRAYSCALE) is None


def test_rotate_image_is_clockwise(config, tmp_path):
    source = write_valid_png(tmp_path / "page.png", size=(40, 30))
    rotated = ImageFilterService(config).rotate_image(str(source), 90)
    assert "_rotated_" in os.path.basename(rotated)
    with Image.open(rotated) as img:
        assert img.size == (30, 40)
    assert ImageFilterService(config).rotate_image(str(tmp_path / "missing.png"), 90) is None


def test_cleanup_processed_images(config, tmp_path):
    service = ImageFilterService(config)
    source = write_valid_png(tmp_path / "page.png")
    old = service.apply(str(source), ImageFilter.NONE)
    fresh = service.apply(str(source), ImageFilter.GRAYSCALE)
    ten_days_ago = time.time() - 10 * 86400
    os.utime(old, (ten_days_ago, ten_days_ago))
    assert service.cleanup_processed_images(days_old=7) == 1
    assert not os.path.exists(old)
    assert os.path.exists(fresh)
    assert service.cleanup_processed_images() == 0
