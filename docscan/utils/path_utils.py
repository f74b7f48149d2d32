"""Path utilities for artifact directories and test-friendly temp locations.

Output directories for generated PDFs and filtered images are resolved with
this precedence:

  1. the explicit directory handed to the service
  2. the matching ``AppConfig`` field
  3. TEST_TMPDIR
  4. TMPDIR
  5. tempfile.gettempdir()

so tests can point everything at a tmp path while production keeps the
configured locations.
"""
from __future__ import annotations

import os
import tempfile
from typing import Optional


def select_tmp_dir() -> str:
    """Select a temporary directory with test-friendly precedence.

    Precedence: TEST_TMPDIR -> TMPDIR -> system tempfile.gettempdir()
    """
    return os.getenv('TEST_TMPDIR') or os.getenv('TMPDIR') or tempfile.gettempdir()


def ensure_dir(path: str) -> str:
    """Ensure directory exists. Returns absolute path."""
    abspath = os.path.abspath(path)
    os.makedirs(abspath, exist_ok=True)
    return abspath


def resolve_output_dir(explicit: Optional[str], config=None, field: str = '', subdir: str = '') -> str:
    """Resolve and create an output directory for generated artifacts.

    Args:
        explicit: Directory given directly to a service, wins when set
        config: Optional AppConfig to read ``field`` from
        field: Name of the AppConfig attribute (e.g. ``PDF_DIR``)
        subdir: Sub-directory appended to the temp fallback

    Returns:
        Absolute path of an existing directory
    """
    base = explicit
    if not base and config is not None and field:
        base = getattr(config, field, None)
    if not base:
        base = os.path.join(select_tmp_dir(), 'docscan', subdir) if subdir else os.path.join(select_tmp_dir(), 'docscan')
    return ensure_dir(base)



def file_size(path: Optional[str]) -> int:
    """Size of ``path`` in bytes, 0 when unset or missing."""
    if not path:
        return 0
    try:
        return os.path.getsize(path)
    except OSError:
        return 0
