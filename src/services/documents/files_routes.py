# src/services/documents/files_routes.py
"""
Приёмная сторона подписанных ссылок LocalStorage.

Клиент загружает файл PUT-запросом по ссылке из /documents/presigned-upload,
затем регистрирует его через /documents/upload-complete.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response

from src.common.errors import ForbiddenError, InvalidInputError, NotFoundError, StorageFailureError
from src.common.logger import log_error, log_warning
from src.core.documents import DocumentService
from src.infra.storage import LocalStorage, ObjectNotFoundError, StorageError, guess_content_type
from src.services.documents.dependencies import get_document_service, get_storage
from src.shared.http import success


router = APIRouter(prefix="/files", tags=["Files"])


async def _check_signature(storage: LocalStorage, method: str, key: str, expires: int, signature: str) -> None:
    if not storage.verify_signature(method, key, expires, signature):
        await log_warning(f"Отклонена ссылка {method} для {key}: подпись неверна или истекла")
        raise ForbiddenError("invalid or expired signature")


def _too_large(limit: int) -> InvalidInputError:
    return InvalidInputError(f"file too large, max {limit // (1024 * 1024)}MB")


async def _read_body(request: Request, limit: int) -> bytes:
    """Читает тело запроса, прерываясь сразу после превышения лимита."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise _too_large(limit)

    data = bytearray()
    async for chunk in request.stream():
        data.extend(chunk)
        if len(data) > limit:
            raise _too_large(limit)
    return bytes(data)


@router.put("/{key:path}")
async def put_object(
    key: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: LocalStorage = Depends(get_storage),
    service: DocumentService = Depends(get_document_service),
) -> JSONResponse:
    await _check_signature(storage, "PUT", key, expires, signature)

    data = await _read_body(request, service.max_upload_bytes)
    if not data:
        raise InvalidInputError("file is empty")

    content_type = request.headers.get("content-type", "application/octet-stream")
    try:
        stored = await storage.upload(key, data, content_type)
    except StorageError as e:
        await log_error(f"Не удалось сохранить {key}: {e}")
        raise StorageFailureError("failed to store file", cause=e) from e
    return success({"file_key": stored.key, "size": stored.size})


@router.get("/{key:path}")
async def get_object(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: LocalStorage = Depends(get_storage),
) -> Response:
    await _check_signature(storage, "GET", key, expires, signature)
    try:
        data = await storage.download(key)
    except ObjectNotFoundError as e:
        raise NotFoundError("file not found") from e
    except StorageError as e:
        await log_error(f"Не удалось прочитать {key}: {e}")
        raise StorageFailureError("failed to read file", cause=e) from e

    media_type = guess_content_type(key)
    return Response(content=data, media_type=media_type)
