"""
Image Filter Service

Default image-filter collaborator. Every operation reads a page image,
writes the result as a new JPEG in the processed directory and returns the
new path; the source file is never modified. Failures are logged and
reported as None.
"""

import logging
import os
import time
from typing import Callable, Dict, Optional

from PIL import Image, ImageEnhance, ImageOps
from PIL import ImageFilter as PILImageFilter

from ..config_manager import AppConfig
from ..models import ImageFilter
from ..utils.helpers import epoch_millis
from ..utils.path_utils import resolve_output_dir

logger = logging.getLogger(__name__)

BLACK_WHITE_THRESHOLD = 128
SHARPEN_KERNEL = PILImageFilter.Kernel((3, 3), [0, -1, 0, -1, 5, -1, 0, -1, 0], scale=1)


def _black_white(img: Image.Image) -> Image.Image:
    gray = ImageOps.grayscale(img)
    return gray.point(lambda p: 255 if p > BLACK_WHITE_THRESHOLD else 0)


def _magic_color(img: Image.Image) -> Image.Image:
    enhanced = ImageEnhance.Contrast(img).enhance(1.2)
    enhanced = ImageEnhance.Color(enhanced).enhance(1.1)
    enhanced = ImageEnhance.Brightness(enhanced).enhance(1.05)
    return enhanced.filter(SHARPEN_KERNEL)


def _brightness(factor: float) -> Callable[[Image.Image], Image.Image]:
    return lambda img: ImageEnhance.Brightness(img).enhance(factor)


FILTERS: Dict[ImageFilter, Callable[[Image.Image], Image.Image]] = {
    ImageFilter.NONE: lambda img: img.copy(),
    ImageFilter.BLACK_WHITE: _black_white,
    ImageFilter.GRAYSCALE: ImageOps.grayscale,
    ImageFilter.MAGIC_COLOR: _magic_color,
    ImageFilter.LIGHTEN: _brightness(1.3),
    ImageFilter.DARKEN: _brightness(0.7),
    ImageFilter.CONTRAST: lambda img: ImageEnhance.Contrast(img).enhance(1.5),
    ImageFilter.BRIGHTNESS: _brightness(1.2),
}


class ImageFilterService:
    """Applies the fixed set of page filters and rotations with Pillow."""

    def __init__(self, config: Optional[AppConfig] = None, output_dir: Optional[str] = None):
        self.config = config or AppConfig()
        self.output_dir = output_dir

    @property
    def processed_dir(self) -> str:
        return resolve_output_dir(self.output_dir, self.config, 'PROCESSED_DIR', 'processed')

    def _save(self, img: Image.Image, source_path: str, suffix: str) -> str:
        name = os.path.splitext(os.path.basename(source_path))[0]
        target = os.path.join(self.processed_dir, f"{name}_{suffix}_{epoch_millis()}.jpg")
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.save(target, format="JPEG", quality=self.config.FILTER_JPEG_QUALITY)
        return target

    def apply(self, image_path: str, filter_kind: ImageFilter) -> Optional[str]:
        """
        Applies one filter to a page image.

        Args:
            image_path: Source page image
            filter_kind: An `ImageFilter` member or its string value

        Returns:
            str: Path of the filtered copy, or None on failure
        """
        try:
            kind = ImageFilter(filter_kind)
        except ValueError:
            logger.warning(f"Unknown image filter: {filter_kind}")
            return None
        if not os.path.exists(image_path):
            logger.warning(f"Cannot filter missing image: {image_path}")
            return None
        try:
            with Image.open(image_path) as img:
                # Filters operate on RGB or L; palette/alpha images are flattened first.
                source = img if img.mode in ("RGB", "L") else img.convert("RGB")
                result = FILTERS[kind](source)
                new_path = self._save(result, image_path, kind.value)
        except Exception as e:
            logger.warning(f"Filter {kind.value} failed for {image_path}: {e}")
            return None
        logger.debug(f"Applied {kind.value} to {image_path} -> {new_path}")
        return new_path

    def rotate_image(self, image_path: str, angle: int) -> Optional[str]:
        """
        Rotates a page image clockwise by ``angle`` degrees.

        Returns:
            str: Path of the rotated copy, or None on failure
        """
        if not os.path.exists(image_path):
            logger.warning(f"Cannot rotate missing image: {image_path}")
            return None
        try:
            with Image.open(image_path) as img:
                # PIL rotates counter-clockwise
                rotated = img.rotate(-angle, expand=True)
                new_path = self._save(rotated, image_path, "rotated")
        except Exception as e:
            logger.warning(f"Rotation by {angle} failed for {image_path}: {e}")
            return None
        return new_path

    def cleanup_processed_images(self, days_old: Optional[int] = None) -> int:
        """
        Deletes processed images older than ``days_old`` days.

        Only files whose modification time is past the cutoff are removed;
        files still referenced by a document should be newer than the
        retention window.

        Returns:
            int: Number of files removed
        """
        if days_old is None:
            days_old = self.config.PROCESSED_RETENTION_DAYS
        cutoff = time.time() - days_old * 86400
        removed = 0
        directory = self.processed_dir
        for entry in os.scandir(directory):
            if not entry.is_file():
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    os.remove(entry.path)
                    removed += 1
            except OSError as e:
                logger.warning(f"Could not remove processed image {entry.path}: {e}")
        if removed:
            logger.info(f"🧹 Removed {removed} processed image(s) older than {days_old} days from {directory}")
        return removed
