"""
Configuration management for the document scanning library.
Provides a centralized, type-safe configuration with validation.

Values come from the process environment, optionally seeded from a ``.env``
file. Nothing touches the file system at import time; directories are created
by :meth:`AppConfig.ensure_directories` when the library is wired up.
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .exceptions import ConfigurationError

_TRUE_VALUES = ("true", "1", "t")


@dataclass
class AppConfig:
    """Application configuration with validation and type safety."""
    # --- Storage ---
    DATABASE_PATH: str = "docscan.db"
    DATA_DIR: str = "data"
    PDF_DIR: str = os.path.join("data", "pdfs")
    PROCESSED_DIR: str = os.path.join("data", "processed")
    BACKUP_DIR: str = os.path.join("data", "backups")

    # --- Logging Configuration ---
    LOG_FILE_PATH: str = os.path.join("logs", "docscan.log")
    LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT: int = 5
    LOG_LEVEL: str = "INFO"

    # --- OCR ---
    OCR_DEFAULT_LANGUAGE: str = "en"
    TESSERACT_CMD: Optional[str] = None
    OCR_MIN_IMAGE_BYTES: int = 1024
    OCR_MAX_IMAGE_BYTES: int = 50 * 1024 * 1024
    DEBUG_SKIP_OCR: bool = False

    # --- Rendering ---
    PDF_IMAGE_DPI: int = 150
    FILTER_JPEG_QUALITY: int = 90
    PROCESSED_RETENTION_DAYS: int = 7

    # --- Lifecycle policy ---
    # When true, a PDF or page image that is replaced by a newer artifact is
    # removed from disk once the new reference has been committed.
    DELETE_REPLACED_ARTIFACTS: bool = True
    WORKER_THREADS: int = 2
    PASSWORD_HASH_ITERATIONS: int = 200_000

    @classmethod
    def load_from_env(cls, env_file: Optional[str] = None) -> 'AppConfig':
        """
        Creates a configuration instance from environment variables.

        Args:
            env_file: Optional explicit ``.env`` path. When omitted a ``.env``
                is searched for from the current working directory upwards.

        Returns:
            AppConfig: Validated configuration instance

        Raises:
            ConfigurationError: If a value cannot be parsed or is out of range
        """
        if env_file:
            load_dotenv(dotenv_path=env_file)
        else:
            load_dotenv(find_dotenv(usecwd=True))

        def get_env(key: str, default: str) -> str:
            """Get environment variable with a required default value."""
            value = os.getenv(key)
            if value is not None:
                value = value.strip('"').strip("'")
            return value if value is not None else default

        def get_optional_env(key: str) -> Optional[str]:
            """Get environment variable that can be None."""
            value = os.getenv(key)
            if value is not None:
                value = value.strip('"').strip("'")
            return value or None

        def get_int(key: str, default: int, minimum: int = 0) -> int:
            raw = get_env(key, str(default))
            try:
                value = int(raw)
            except ValueError:
                raise ConfigurationError(f"{key} must be an integer", details=raw)
            if value < minimum:
                raise ConfigurationError(f"{key} must be >= {minimum}", details=raw)
            return value

        def get_bool(key: str, default: bool) -> bool:
            return get_env(key, str(default)).lower() in _TRUE_VALUES

        data_dir = get_env("DATA_DIR", cls.DATA_DIR)
        try:
            config = cls(
                DATABASE_PATH=get_env("DATABASE_PATH", cls.DATABASE_PATH),
                DATA_DIR=data_dir,
                PDF_DIR=get_env("PDF_DIR", os.path.join(data_dir, "pdfs")),
                PROCESSED_DIR=get_env("PROCESSED_DIR", os.path.join(data_dir, "processed")),
                BACKUP_DIR=get_env("BACKUP_DIR", os.path.join(data_dir, "backups")),

                LOG_FILE_PATH=get_env("LOG_FILE_PATH", cls.LOG_FILE_PATH),
                LOG_MAX_BYTES=get_int("LOG_MAX_BYTES", cls.LOG_MAX_BYTES, minimum=1),
                LOG_BACKUP_COUNT=get_int("LOG_BACKUP_COUNT", cls.LOG_BACKUP_COUNT),
                LOG_LEVEL=get_env("LOG_LEVEL", cls.LOG_LEVEL).upper(),

                OCR_DEFAULT_LANGUAGE=get_env("OCR_DEFAULT_LANGUAGE", cls.OCR_DEFAULT_LANGUAGE),
                TESSERACT_CMD=get_optional_env("TESSERACT_CMD"),
                OCR_MIN_IMAGE_BYTES=get_int("OCR_MIN_IMAGE_BYTES", cls.OCR_MIN_IMAGE_BYTES),
                OCR_MAX_IMAGE_BYTES=get_int("OCR_MAX_IMAGE_BYTES", cls.OCR_MAX_IMAGE_BYTES, minimum=1),
                DEBUG_SKIP_OCR=get_bool("DEBUG_SKIP_OCR", cls.DEBUG_SKIP_OCR),

                PDF_IMAGE_DPI=get_int("PDF_IMAGE_DPI", cls.PDF_IMAGE_DPI, minimum=1),
                FILTER_JPEG_QUALITY=get_int("FILTER_JPEG_QUALITY", cls.FILTER_JPEG_QUALITY, minimum=1),
                PROCESSED_RETENTION_DAYS=get_int("PROCESSED_RETENTION_DAYS", cls.PROCESSED_RETENTION_DAYS),

                DELETE_REPLACED_ARTIFACTS=get_bool("DELETE_REPLACED_ARTIFACTS", cls.DELETE_REPLACED_ARTIFACTS),
                WORKER_THREADS=get_int("WORKER_THREADS", cls.WORKER_THREADS, minimum=1),
                PASSWORD_HASH_ITERATIONS=get_int("PASSWORD_HASH_ITERATIONS", cls.PASSWORD_HASH_ITERATIONS, minimum=1),
            )
        except ConfigurationError as e:
            logging.error(f"Configuration error: {e.message} ({e.details})")
            raise

        if config.FILTER_JPEG_QUALITY > 100:
            raise ConfigurationError("FILTER_JPEG_QUALITY must be between 1 and 100",
                                     details=str(config.FILTER_JPEG_QUALITY))
        return config

    def ensure_directories(self) -> None:
        """Create every directory the library writes to.

        Raises:
            ConfigurationError: If a directory cannot be created or is not writable
        """
        db_dir = os.path.dirname(os.path.abspath(self.DATABASE_PATH))
        for key, path in (
            ("DATA_DIR", self.DATA_DIR),
            ("PDF_DIR", self.PDF_DIR),
            ("PROCESSED_DIR", self.PROCESSED_DIR),
            ("BACKUP_DIR", self.BACKUP_DIR),
            ("DATABASE_PATH", db_dir),
        ):
            try:
                path = os.path.abspath(path)
                os.makedirs(path, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Invalid {key} directory {path}", details=str(e))
            if not os.access(path, os.R_OK | os.W_OK):
                raise ConfigurationError(f"Insufficient permissions for {key} directory: {path}")
