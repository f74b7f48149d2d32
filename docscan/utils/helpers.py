"""
Small helpers shared by the models and the collaborator services.
"""

import os
import re
import time
from datetime import datetime, timezone
from typing import List, Optional

SUPPORTED_IMAGE_EXTENSIONS = ['.png', '.jpg', '.jpeg']


def format_file_size(size_bytes: int) -> str:
    """
    Format file size in human readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string like "1.5 MB"
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"

    size: float = float(size_bytes)
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0

    return f"{size:.1f} TB"


def validate_file_type(filename: str, allowed_types: Optional[List[str]] = None) -> bool:
    """
    Validate if a file has an allowed extension.

    Args:
        filename: Name of file to check
        allowed_types: List of allowed extensions (with dots)

    Returns:
        True if file type is allowed
    """
    if allowed_types is None:
        allowed_types = SUPPORTED_IMAGE_EXTENSIONS

    file_ext = os.path.splitext(filename)[1].lower()
    return file_ext in allowed_types


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def epoch_millis() -> int:
    return time.time_ns() // 1_000_000


def remove_file_quietly(path: Optional[str]) -> bool:
    """Delete ``path`` if it exists.

    A missing file is not an error. Other OS errors propagate so callers can
    decide whether to log and continue.

    Returns:
        True if a file was removed
    """
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


def title_slug(title: str, fallback: str = "document") -> str:
    """Reduce a document title to word characters, spaces and dashes for file names."""
    slug = re.sub(r'[^\w\s-]', '', title).strip()
    slug = re.sub(r'\s+', '_', slug)
    return slug or fallback
