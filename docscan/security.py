"""
Security utilities: password hashing for locked documents and filename
sanitisation for generated artifacts.
"""
import hashlib
import hmac
import os
import re
from typing import Optional

HASH_SCHEME = "pbkdf2_sha256"
DEFAULT_ITERATIONS = 200_000
SALT_BYTES = 16


def hash_password(password: str, iterations: int = DEFAULT_ITERATIONS, salt: Optional[bytes] = None) -> str:
    """
    Hashes a document password with a random salt.

    Args:
        password: Clear-text password chosen by the user
        iterations: PBKDF2 work factor
        salt: Explicit salt (tests only); random when omitted

    Returns:
        str: Encoded hash ``pbkdf2_sha256$<iterations>$<salt hex>$<hash hex>``
    """
    if salt is None:
        salt = os.urandom(SALT_BYTES)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"{HASH_SCHEME}${iterations}${salt.hex()}${digest.hex()}"


def is_password_hash(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(HASH_SCHEME + "$") and value.count("$") == 3


def verify_password(password: str, encoded: Optional[str]) -> bool:
    """
    Checks a clear-text password against an encoded hash.

    Args:
        password: Candidate password
        encoded: Value produced by :func:`hash_password`

    Returns:
        bool: True on match, False on mismatch or malformed hash
    """
    if not is_password_hash(encoded):
        return False
    _, iterations, salt_hex, digest_hex = encoded.split("$")
    try:
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
        rounds = int(iterations)
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(candidate, expected)


def sanitize_filename(filename: str) -> str:
    """
    Sanitizes a filename to be safe for filesystem operations.

    Args:
        filename: Original filename

    Returns:
        str: Sanitized filename
    """
    # Remove any directory components
    filename = filename.rsplit('/', 1)[-1].rsplit('\\', 1)[-1]

    # Anything but alphanumerics, dots, dashes and underscores becomes an underscore
    filename = re.sub(r'[^a-zA-Z0-9._-]', '_', filename)

    MAX_LENGTH = 255
    name, ext = filename.rsplit('.', 1) if '.' in filename else (filename, '')
    if len(name) + len(ext) + 1 > MAX_LENGTH:
        name = name[:(MAX_LENGTH - len(ext) - 1)]

    return f"{name}.{ext}" if ext else name
