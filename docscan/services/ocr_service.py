"""
OCR Service

Default OCR collaborator backed by Tesseract (pytesseract). The contract the
document service relies on is ``extract_text(image_path, language_code)``,
which returns the recognised text or an empty string. It never raises: a
failed page is logged and degrades to ``""``.

Also provides:
- ISO 639-1 language codes mapped onto Tesseract traineddata names
- Pre-flight validation of an image before OCR
- Extraction of e-mail addresses, phone numbers, URLs and dates from text
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

import pytesseract
from PIL import Image

from ..config_manager import AppConfig
from ..utils.helpers import validate_file_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OCRLanguage:
    code: str
    name: str
    tesseract_code: str


SUPPORTED_LANGUAGES: List[OCRLanguage] = [
    OCRLanguage("en", "English", "eng"),
    OCRLanguage("hi", "Hindi", "hin"),
    OCRLanguage("mr", "Marathi", "mar"),
    OCRLanguage("ta", "Tamil", "tam"),
    OCRLanguage("te", "Telugu", "tel"),
    OCRLanguage("bn", "Bengali", "ben"),
    OCRLanguage("gu", "Gujarati", "guj"),
    OCRLanguage("kn", "Kannada", "kan"),
    OCRLanguage("ml", "Malayalam", "mal"),
    OCRLanguage("or", "Odia", "ori"),
    OCRLanguage("pa", "Punjabi", "pan"),
    OCRLanguage("ur", "Urdu", "urd"),
    OCRLanguage("zh", "Chinese", "chi_sim"),
    OCRLanguage("ja", "Japanese", "jpn"),
    OCRLanguage("ko", "Korean", "kor"),
    OCRLanguage("es", "Spanish", "spa"),
    OCRLanguage("fr", "French", "fra"),
    OCRLanguage("de", "German", "deu"),
    OCRLanguage("it", "Italian", "ita"),
    OCRLanguage("pt", "Portuguese", "por"),
    OCRLanguage("ru", "Russian", "rus"),
    OCRLanguage("ar", "Arabic", "ara"),
]

_TESSERACT_CODES: Dict[str, str] = {lang.code: lang.tesseract_code for lang in SUPPORTED_LANGUAGES}
DEFAULT_TESSERACT_LANGUAGE = "eng"

EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
# Indian mobile numbers, optionally prefixed with the country code
PHONE_PATTERN = re.compile(r'(?:\+91|91)?[-.\s]?[6-9]\d{9}')
URL_PATTERN = re.compile(r'https?://[^\s]+')
DATE_PATTERN = re.compile(
    r'\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b'
    r'|\b\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{2,4}\b'
)


def tesseract_language(language_code: Optional[str]) -> str:
    """Maps an ISO code (``en``) to a Tesseract language (``eng``); unknown codes fall back to English."""
    if not language_code:
        return DEFAULT_TESSERACT_LANGUAGE
    code = language_code.strip().lower()
    if code in _TESSERACT_CODES:
        return _TESSERACT_CODES[code]
    # Already a Tesseract name such as "eng" or "chi_sim"
    if code in _TESSERACT_CODES.values():
        return code
    logger.warning(f"Unsupported OCR language '{language_code}', using {DEFAULT_TESSERACT_LANGUAGE}")
    return DEFAULT_TESSERACT_LANGUAGE


class OCRService:
    """Tesseract-backed text extraction for page images."""

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or AppConfig()
        if self.config.TESSERACT_CMD:
            pytesseract.pytesseract.tesseract_cmd = self.config.TESSERACT_CMD

    def extract_text(self, image_path: str, language_code: Optional[str] = None) -> str:
        """
        Runs OCR on one page image.

        Args:
            image_path: Path of the page image
            language_code: ISO language code; the configured default when omitted

        Returns:
            str: Recognised text, or "" if recognition failed
        """
        lang = tesseract_language(language_code or self.config.OCR_DEFAULT_LANGUAGE)
        if self.config.DEBUG_SKIP_OCR:
            logger.info(f"DEBUG_SKIP_OCR set - skipping OCR for {os.path.basename(image_path)}")
            return ""
        try:
            with Image.open(image_path) as img:
                img.load()
                return pytesseract.image_to_string(img, lang=lang)
        except Exception as e:
            logger.warning(f"OCR failed for {image_path} ({lang}): {e}")
            return ""

    def get_text_confidence(self, image_path: str, language_code: Optional[str] = None) -> float:
        """
        Mean word confidence reported by Tesseract, 0-100.

        Returns 0.0 when nothing was recognised or OCR failed.
        """
        if self.config.DEBUG_SKIP_OCR:
            return 0.0
        lang = tesseract_language(language_code or self.config.OCR_DEFAULT_LANGUAGE)
        try:
            with Image.open(image_path) as img:
                img.load()
                ocr_data = pytesseract.image_to_data(img, lang=lang, output_type=pytesseract.Output.DICT)
        except Exception as e:
            logger.warning(f"OCR confidence failed for {image_path}: {e}")
            return 0.0
        confidences: List[float] = []
        for conf_val in ocr_data.get('conf', []):
            try:
                conf = float(conf_val)
            except (ValueError, TypeError):
                continue
            if conf > 0:
                confidences.append(conf)
        return sum(confidences) / len(confidences) if confidences else 0.0

    def get_supported_languages(self) -> List[OCRLanguage]:
        return list(SUPPORTED_LANGUAGES)

    def validate_image_for_ocr(self, image_path: str) -> bool:
        """
        Checks that an image exists, has a supported extension, a plausible
        size, and can be decoded.
        """
        if not os.path.isfile(image_path):
            return False
        if not validate_file_type(image_path):
            return False
        size = os.path.getsize(image_path)
        if size < self.config.OCR_MIN_IMAGE_BYTES or size > self.config.OCR_MAX_IMAGE_BYTES:
            logger.debug(f"Image {image_path} rejected for OCR: {size} bytes")
            return False
        try:
            with Image.open(image_path) as img:
                img.verify()
        except Exception as e:
            logger.debug(f"Image {image_path} is not decodable: {e}")
            return False
        return True

    @staticmethod
    def extract_specific_info(text: str) -> Dict[str, List[str]]:
        """
        Pulls structured snippets out of OCR text.

        Returns:
            dict: ``emails``, ``phone_numbers``, ``urls`` and ``dates``, each a
                list of matches in order of appearance
        """
        text = text or ""
        return {
            "emails": EMAIL_PATTERN.findall(text),
            "phone_numbers": [m.group(0) for m in PHONE_PATTERN.finditer(text)],
            "urls": URL_PATTERN.findall(text),
            "dates": [m.group(0) for m in DATE_PATTERN.finditer(text)],
        }
