# src/services/documents/routes.py
"""
Маршруты водителя: типы документов, загрузка, статус верификации.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import JSONResponse

from src.common.errors import InvalidInputError, NotFoundError, UnauthenticatedError
from src.core.documents import DocumentService
from src.core.documents.models import UploadMetadata
from src.core.drivers import DriverDirectory
from src.services.documents.dependencies import get_document_service, get_driver_directory
from src.services.documents.schemas import PresignedUploadRequest, UploadCompleteRequest
from src.shared.auth import Caller, require_driver
from src.shared.http import parse_id, success


router = APIRouter(prefix="/documents", tags=["Documents"])


async def current_driver_id(
    caller: Caller = Depends(require_driver),
    drivers: DriverDirectory = Depends(get_driver_directory),
) -> str:
    """ID водителя вызывающего пользователя."""
    try:
        return await drivers.get_driver_id(caller.user_id)
    except NotFoundError as e:
        raise UnauthenticatedError("not a registered driver") from e


def _parse_form_date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise InvalidInputError(f"invalid {field} format, expected YYYY-MM-DD") from e


async def _read_upload(file: UploadFile, service: DocumentService) -> bytes:
    # Читаем на байт больше лимита: сервис отклонит слишком большой файл
    return await file.read(service.max_upload_bytes + 1)


# =============================================================================
# СПРАВОЧНИК И СТАТУС
# =============================================================================

@router.get("/types")
async def list_document_types(
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    """Активные типы документов (публичный справочник)."""
    types = await service.list_document_types()
    return success({"document_types": types})


@router.get("")
async def list_my_documents(
    driver_id: str = Depends(current_driver_id),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    documents = await service.list_driver_documents(driver_id)
    return success({"documents": documents})


@router.get("/verification-status")
async def get_my_verification_status(
    driver_id: str = Depends(current_driver_id),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    verification = await service.get_verification_status(driver_id)
    return success(verification)


# =============================================================================
# ЗАГРУЗКА
# =============================================================================

@router.post("/upload")
async def upload_document(
    file: UploadFile = File(...),
    document_type_code: str = Form(...),
    document_number: Optional[str] = Form(None),
    issuing_authority: Optional[str] = Form(None),
    issue_date: Optional[str] = Form(None),
    expiry_date: Optional[str] = Form(None),
    driver_id: str = Depends(current_driver_id),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    """Загрузка документа через сервис (multipart)."""
    metadata = UploadMetadata(
        document_number=document_number or None,
        issuing_authority=issuing_authority or None,
        issue_date=_parse_form_date(issue_date, "issue_date"),
        expiry_date=_parse_form_date(expiry_date, "expiry_date"),
    )
    data = await _read_upload(file, service)
    document = await service.upload_document(
        driver_id,
        document_type_code,
        data,
        file.content_type or "",
        filename=file.filename,
        metadata=metadata,
    )
    return success(document, status_code=status.HTTP_201_CREATED)


@router.post("/presigned-upload")
async def get_presigned_upload(
    request: PresignedUploadRequest,
    driver_id: str = Depends(current_driver_id),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    presigned = await service.get_presigned_upload_url(
        driver_id,
        request.document_type_code,
        request.filename,
        request.content_type,
        is_front=request.is_front,
    )
    return success(presigned)


@router.post("/upload-complete")
async def complete_upload(
    request: UploadCompleteRequest,
    driver_id: str = Depends(current_driver_id),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    document = await service.complete_direct_upload(
        driver_id,
        request.file_key,
        request.document_type_code,
        is_front=request.is_front,
        metadata=request.to_metadata(),
    )
    return success(document)


# =============================================================================
# ДОКУМЕНТ
# =============================================================================

@router.get("/{document_id}")
async def get_document(
    document_id: str,
    caller: Caller = Depends(require_driver),
    drivers: DriverDirectory = Depends(get_driver_directory),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    """Документ: владельцу или администратору."""
    document_id = parse_id(document_id, "document")
    if caller.is_admin:
        return success(await service.get_document(document_id))

    try:
        driver_id = await drivers.get_driver_id(caller.user_id)
    except NotFoundError as e:
        raise UnauthenticatedError("not a registered driver") from e
    return success(await service.get_document(document_id, driver_id=driver_id))


@router.post("/{document_id}/back")
async def upload_back_side(
    document_id: str,
    file: UploadFile = File(...),
    driver_id: str = Depends(current_driver_id),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    """Обратная сторона документа (только владелец)."""
    document_id = parse_id(document_id, "document")
    data = await _read_upload(file, service)
    document = await service.upload_back_side(
        document_id,
        driver_id,
        data,
        file.content_type or "",
        filename=file.filename,
    )
    return success(document)
