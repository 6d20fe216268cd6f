# src/core/documents/models.py
"""
Модели данных документов водителей.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.common.constants import (
    DocumentStatus,
    HistoryAction,
    OCRJobStatus,
    ReviewAction,
    VerificationState,
)


class DocumentType(BaseModel):
    """Тип документа из каталога (управляется администратором)."""

    id: str
    code: str = Field(..., description="Уникальный код типа (например, drivers_license)")
    name: str
    description: Optional[str] = None
    is_required: bool = False
    requires_expiry: bool = False
    requires_front_back: bool = False
    requires_manual_review: bool = True
    auto_ocr_enabled: bool = False
    default_validity_months: Optional[int] = None
    renewal_reminder_days: int = 30
    display_order: int = 0
    is_active: bool = True

    class Config:
        from_attributes = True


class DriverDocument(BaseModel):
    """Версия документа водителя."""

    id: str
    driver_id: str
    document_type_id: str
    document_type_code: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING

    # Основной файл
    file_url: str
    file_key: str
    file_name: Optional[str] = None
    file_size_bytes: Optional[int] = None
    file_mime_type: Optional[str] = None

    # Обратная сторона
    back_file_url: Optional[str] = None
    back_file_key: Optional[str] = None

    # Реквизиты документа
    document_number: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    issuing_authority: Optional[str] = None

    # Результат OCR
    ocr_data: dict[str, Any] = Field(default_factory=dict)
    ocr_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    ocr_processed_at: Optional[datetime] = None

    # Проверка
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None

    # Версионирование
    version: int = Field(1, ge=1)
    previous_document_id: Optional[str] = None

    submitted_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def effective_status(self, today: date) -> DocumentStatus:
        """Статус с учётом истёкшего срока (до того, как его зафиксирует свип)."""
        if (
            self.status == DocumentStatus.APPROVED
            and self.expiry_date is not None
            and self.expiry_date < today
        ):
            return DocumentStatus.EXPIRED
        return self.status


class DocumentHistory(BaseModel):
    """Запись журнала верификации документа (только добавление)."""

    id: str
    document_id: str
    action: HistoryAction
    previous_status: Optional[DocumentStatus] = None
    new_status: Optional[DocumentStatus] = None
    performed_by: Optional[str] = None
    is_system_action: bool = False
    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    class Config:
        from_attributes = True


class OCRJob(BaseModel):
    """Задача в очереди OCR."""

    id: str
    document_id: str
    status: OCRJobStatus = OCRJobStatus.PENDING
    priority: int = 0
    provider: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    raw_response: dict[str, Any] = Field(default_factory=dict)
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    confidence_score: Optional[float] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OCRResult(BaseModel):
    """Результат распознавания документа."""

    raw_text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    document_number: Optional[str] = None
    full_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    issuing_authority: Optional[str] = None
    address: Optional[str] = None
    vehicle_plate: Optional[str] = None
    vehicle_vin: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Ответ провайдера как есть (сохраняется в очереди, не в документе)
    raw_response: dict[str, Any] = Field(default_factory=dict)

    def to_details(self) -> "DocumentDetails":
        return DocumentDetails(
            document_number=self.document_number or None,
            issue_date=self.issue_date,
            expiry_date=self.expiry_date,
            issuing_authority=self.issuing_authority or None,
        )

    def to_ocr_data(self) -> dict[str, Any]:
        """Payload для сохранения в документе (пустые поля опускаются)."""
        data: dict[str, Any] = {
            "raw_text": self.raw_text,
            "confidence": self.confidence,
            "metadata": self.metadata,
        }
        optional = {
            "document_number": self.document_number,
            "full_name": self.full_name,
            "date_of_birth": self.date_of_birth,
            "issue_date": self.issue_date,
            "expiry_date": self.expiry_date,
            "issuing_authority": self.issuing_authority,
            "address": self.address,
            "vehicle_plate": self.vehicle_plate,
            "vehicle_vin": self.vehicle_vin,
        }
        for key, value in optional.items():
            if value in (None, ""):
                continue
            data[key] = value.isoformat() if isinstance(value, date) else value
        return data


class DocumentDetails(BaseModel):
    """Реквизиты, которые OCR может дописать в документ (только пустые поля)."""

    document_number: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    issuing_authority: Optional[str] = None


class DriverSuspension(BaseModel):
    """Ручная блокировка водителя."""

    driver_id: str
    reason: str
    suspended_by: Optional[str] = None
    suspended_at: datetime
    ends_at: Optional[datetime] = None


class DriverVerificationStatus(BaseModel):
    """Снимок статуса верификации водителя (вычисляемый)."""

    driver_id: str
    verification_status: VerificationState
    required_documents_count: int = 0
    submitted_documents_count: int = 0
    approved_documents_count: int = 0
    next_document_expiry: Optional[date] = None
    missing_document_types: list[str] = Field(default_factory=list)
    rejected_document_types: list[str] = Field(default_factory=list)
    suspension_reason: Optional[str] = None


class PendingReviewDocument(BaseModel):
    """Документ в очереди на проверку (для админки)."""

    document: DriverDocument
    document_type_name: str
    hours_pending: float


class ExpiringDocument(BaseModel):
    """Документ с истекающим сроком действия."""

    document: DriverDocument
    document_type_name: str
    days_until_expiry: int
    urgency: str


# =============================================================================
# ВХОДНЫЕ ДАННЫЕ / РЕЗУЛЬТАТЫ СЕРВИСА
# =============================================================================

class UploadMetadata(BaseModel):
    """Реквизиты, переданные водителем вместе с файлом."""

    document_number: Optional[str] = None
    issuing_authority: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None


class PresignedUpload(BaseModel):
    """Ссылка для прямой загрузки файла в хранилище."""

    upload_url: str
    method: str
    headers: dict[str, str] = Field(default_factory=dict)
    expires_at: datetime
    file_key: str


class ReviewDecision(BaseModel):
    """Решение администратора по документу."""

    action: ReviewAction
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
