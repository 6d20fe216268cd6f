# src/core/documents/verification.py
"""
Агрегатор статуса верификации водителя.

Чистая функция: на вход обязательные типы документов, актуальные
(не superseded) документы водителя и активная блокировка, на выход снимок.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable, Optional

from src.common.constants import (
    SUBMITTED_DOCUMENT_STATUSES,
    DocumentStatus,
    VerificationState,
)
from src.core.documents.models import (
    DocumentType,
    DriverDocument,
    DriverSuspension,
    DriverVerificationStatus,
)


def _latest_by_type(documents: Iterable[DriverDocument]) -> dict[str, DriverDocument]:
    """Последняя не superseded версия документа каждого типа."""
    latest: dict[str, DriverDocument] = {}
    for doc in documents:
        if doc.status == DocumentStatus.SUPERSEDED:
            continue
        current = latest.get(doc.document_type_id)
        if current is None or doc.version > current.version:
            latest[doc.document_type_id] = doc
    return latest


def derive_verification_status(
    driver_id: str,
    required_types: Iterable[DocumentType],
    documents: Iterable[DriverDocument],
    today: date,
    suspension: Optional[DriverSuspension] = None,
) -> DriverVerificationStatus:
    """
    Вычисляет снимок верификации водителя.

    Порядок классификации:
        suspended -> rejected -> approved -> incomplete -> pending_review.

    Одобренный документ с expiry_date < today считается истёкшим ещё до того,
    как его статус зафиксирует свип, и не засчитывается как одобренный.
    """
    required = [t for t in required_types if t.is_required and t.is_active]
    latest = _latest_by_type(documents)

    submitted_count = 0
    approved_count = 0
    missing: list[str] = []
    rejected: list[str] = []

    for doc_type in required:
        doc = latest.get(doc_type.id)
        if doc is None:
            missing.append(doc_type.code)
            continue

        status = doc.effective_status(today)
        if status in SUBMITTED_DOCUMENT_STATUSES:
            submitted_count += 1
            if status == DocumentStatus.APPROVED:
                approved_count += 1
        elif status == DocumentStatus.REJECTED:
            rejected.append(doc_type.code)
        else:
            # истёкший документ нужно подать заново
            missing.append(doc_type.code)

    # Ближайшая дата истечения среди действующих одобренных документов
    expiries = [
        doc.expiry_date
        for doc in latest.values()
        if doc.expiry_date is not None and doc.effective_status(today) == DocumentStatus.APPROVED
    ]
    next_expiry = min(expiries) if expiries else None

    required_count = len(required)

    if suspension is not None:
        state = VerificationState.SUSPENDED
    elif rejected:
        state = VerificationState.REJECTED
    elif approved_count == required_count:
        state = VerificationState.APPROVED
    elif submitted_count < required_count:
        state = VerificationState.INCOMPLETE
    else:
        state = VerificationState.PENDING_REVIEW

    return DriverVerificationStatus(
        driver_id=driver_id,
        verification_status=state,
        required_documents_count=required_count,
        submitted_documents_count=submitted_count,
        approved_documents_count=approved_count,
        next_document_expiry=next_expiry,
        missing_document_types=missing,
        rejected_document_types=rejected,
        suspension_reason=suspension.reason if suspension else None,
    )
