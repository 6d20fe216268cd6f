# src/services/documents/schemas.py
"""
Тела запросов Documents Service.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from src.core.documents.models import UploadMetadata


class PresignedUploadRequest(BaseModel):
    document_type_code: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    content_type: str = Field(..., min_length=1)
    is_front: bool = True


class UploadCompleteRequest(BaseModel):
    """Регистрация файла, загруженного по подписанной ссылке."""

    file_key: str = Field(..., min_length=1)
    document_type_code: str = Field(..., min_length=1)
    is_front: bool = True
    document_number: Optional[str] = None
    issuing_authority: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None

    def to_metadata(self) -> UploadMetadata:
        return UploadMetadata(
            document_number=self.document_number,
            issuing_authority=self.issuing_authority,
            issue_date=self.issue_date,
            expiry_date=self.expiry_date,
        )
