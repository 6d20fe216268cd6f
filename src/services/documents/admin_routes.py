# src/services/documents/admin_routes.py
"""
Маршруты администратора: очередь проверки, решения, истекающие документы.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from src.core.documents import DocumentService
from src.core.documents.models import ReviewDecision
from src.services.documents.dependencies import get_document_service
from src.shared.auth import Caller, require_admin
from src.shared.http import pagination_params, parse_id, success
from src.shared.models.common import PaginationParams


router = APIRouter(prefix="/admin", tags=["Admin: Documents"], dependencies=[Depends(require_admin)])


@router.get("/documents/pending")
async def get_pending_reviews(
    pagination: PaginationParams = Depends(pagination_params),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    """Очередь на проверку, старые документы первыми."""
    items, total = await service.get_pending_reviews(pagination.limit, pagination.offset)
    return success({"documents": items}, meta=pagination.meta(total))


@router.get("/documents/expiring")
async def get_expiring_documents(
    days: int = Query(30, ge=0, le=365),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    expiring = await service.get_expiring_documents(days)
    return success({"documents": expiring})


@router.post("/documents/{document_id}/start-review")
async def start_review(
    document_id: str,
    caller: Caller = Depends(require_admin),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    document = await service.start_review(parse_id(document_id, "document"), caller.user_id)
    return success(document)


@router.post("/documents/{document_id}/review")
async def review_document(
    document_id: str,
    decision: ReviewDecision,
    caller: Caller = Depends(require_admin),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    """Решение по документу: approve, reject или request_resubmit."""
    document = await service.review(parse_id(document_id, "document"), caller.user_id, decision)
    return success(document)


@router.get("/documents/{document_id}/history")
async def get_document_history(
    document_id: str,
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    history = await service.get_document_history(parse_id(document_id, "document"))
    return success({"history": history})


@router.get("/drivers/{driver_id}/documents")
async def get_driver_documents(
    driver_id: str,
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    documents = await service.list_driver_documents(parse_id(driver_id, "driver"))
    return success({"documents": documents})


@router.get("/drivers/{driver_id}/verification-status")
async def get_driver_verification_status(
    driver_id: str,
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    verification = await service.get_verification_status(parse_id(driver_id, "driver"))
    return success(verification)
