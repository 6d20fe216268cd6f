# src/core/documents/__init__.py
"""Документы водителей: версионирование, OCR, проверка, верификация."""

from src.core.documents.models import (
    DocumentHistory,
    DocumentType,
    DriverDocument,
    DriverVerificationStatus,
    OCRJob,
    OCRResult,
)
from src.core.documents.repository import DocumentRepository, PostgresDocumentRepository
from src.core.documents.service import DocumentService, create_document_service
from src.core.documents.verification import derive_verification_status

__all__ = [
    "DocumentHistory",
    "DocumentType",
    "DriverDocument",
    "DriverVerificationStatus",
    "OCRJob",
    "OCRResult",
    "DocumentRepository",
    "PostgresDocumentRepository",
    "DocumentService",
    "create_document_service",
    "derive_verification_status",
]
