"""
Document Scanning Library - application wiring

There is no global store or service instance. `create_app()` builds one of
each from an `AppConfig` and hands them back in a `DocScanApp` container:

- store: `DocumentStore` over ``DATABASE_PATH``
- documents: `DocumentService`, the lifecycle coordinator
- query: `DocumentQueryEngine`, the live filtered view
- ocr / pdf / filters: the default collaborators

A UI layer constructs one container at startup and passes the pieces it
needs to its own components. Tests build their own from temporary paths.
"""

import logging
import os
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from .config_manager import AppConfig
from .database import DocumentStore
from .services.document_service import DocumentService
from .services.image_service import ImageFilterService
from .services.ocr_service import OCRService
from .services.pdf_service import PDFService
from .services.query_service import DocumentQueryEngine

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Handlers installed by setup_logging, so repeated calls replace rather than duplicate
_installed_handlers: List[logging.Handler] = []


def setup_logging(config: AppConfig, force: bool = False) -> logging.Logger:
    """Configure logging with rotation based on app config."""
    if _installed_handlers and not force:
        return logging.getLogger(__name__)

    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    log_dir = os.path.dirname(os.path.abspath(config.LOG_FILE_PATH))
    os.makedirs(log_dir, exist_ok=True)

    file_handler = RotatingFileHandler(
        config.LOG_FILE_PATH,
        maxBytes=config.LOG_MAX_BYTES,
        backupCount=config.LOG_BACKUP_COUNT
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    log_level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    for handler in (file_handler, console_handler):
        root_logger.addHandler(handler)
        _installed_handlers.append(handler)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured - file: {config.LOG_FILE_PATH}, level: {config.LOG_LEVEL}")
    return logger


@dataclass
class DocScanApp:
    config: AppConfig
    store: DocumentStore
    documents: DocumentService
    query: DocumentQueryEngine
    ocr: OCRService
    pdf: PDFService
    filters: ImageFilterService

    def backup(self) -> Optional[str]:
        """Copies the database into ``BACKUP_DIR``; None if the backup failed."""
        return self.store.backup_database(self.config.BACKUP_DIR)

    def close(self) -> None:
        """Stops background workers and detaches the query engine from the store."""
        self.documents.shutdown(wait=True)
        self.query.close()


def create_app(config: Optional[AppConfig] = None, configure_logging: bool = True) -> DocScanApp:
    """
    Builds the store, collaborators, coordinator and query engine.

    Args:
        config: Configuration to use; loaded from the environment when omitted
        configure_logging: Install the rotating file and console handlers

    Returns:
        DocScanApp: The wired components

    Raises:
        ConfigurationError: If a configured directory cannot be created
        StorageIOError: If the database cannot be opened
    """
    config = config or AppConfig.load_from_env()
    if configure_logging:
        setup_logging(config)
    config.ensure_directories()

    store = DocumentStore(config.DATABASE_PATH)
    ocr = OCRService(config)
    pdf = PDFService(config)
    filters = ImageFilterService(config)
    documents = DocumentService(store, ocr_service=ocr, pdf_service=pdf, filter_service=filters, config=config)
    query = DocumentQueryEngine(store)

    logging.getLogger(__name__).info(f"🚀 docscan ready: {len(query.all_documents)} document(s) in {config.DATABASE_PATH}")
    return DocScanApp(config=config, store=store, documents=documents, query=query,
                      ocr=ocr, pdf=pdf, filters=filters)
