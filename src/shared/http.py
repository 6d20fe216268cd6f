# src/shared/http.py
"""
HTTP утилиты: конверт ответа и обработчики ошибок FastAPI.

Все ответы сервисов имеют вид {success, data?, error?, meta?}.
Исходная причина ServiceError пишется в лог и никогда не уходит клиенту.
"""

from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from fastapi import FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.common.errors import ErrorKind, InvalidInputError, ServiceError
from src.common.logger import log_debug, log_error, log_warning
from src.shared.models.common import ApiResponse, ErrorBody, Meta, PaginationParams


_KIND_BY_HTTP_STATUS: dict[int, ErrorKind] = {
    400: ErrorKind.INVALID_INPUT,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    405: ErrorKind.INVALID_INPUT,
    409: ErrorKind.CONFLICT,
    413: ErrorKind.INVALID_INPUT,
}


def success(data: Any = None, status_code: int = status.HTTP_200_OK, meta: Optional[Meta] = None) -> JSONResponse:
    """Успешный ответ в конверте."""
    envelope: ApiResponse[Any] = ApiResponse(success=True, data=data, meta=meta)
    return JSONResponse(status_code=status_code, content=envelope.to_content())


def failure(status_code: int, code: str, message: str) -> JSONResponse:
    """Ответ с ошибкой в конверте."""
    envelope: ApiResponse[Any] = ApiResponse(success=False, error=ErrorBody(code=code, message=message))
    return JSONResponse(status_code=status_code, content=envelope.to_content())


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "header"))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = exc.http_status
    extra = {"path": request.url.path, "kind": exc.kind.value}

    if status_code >= 500:
        await log_error(
            f"Ошибка сервиса {request.method} {request.url.path}: {exc.message}",
            extra=extra,
            exc_info=exc.cause or exc,
        )
    elif exc.kind in (ErrorKind.UNAUTHENTICATED, ErrorKind.FORBIDDEN):
        await log_warning(f"Отказ в доступе: {exc.message}", extra=extra)
    else:
        await log_debug(f"Запрос отклонён: {exc.message}", extra=extra)

    return failure(status_code, exc.kind.value, exc.message)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _validation_message(exc)
    await log_debug(f"Ошибка валидации {request.url.path}: {message}")
    return failure(status.HTTP_400_BAD_REQUEST, ErrorKind.INVALID_INPUT.value, message)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind = _KIND_BY_HTTP_STATUS.get(exc.status_code, ErrorKind.INTERNAL)
    message = exc.detail if isinstance(exc.detail, str) else kind.value
    return failure(exc.status_code, kind.value, message)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    await log_error(
        f"Необработанная ошибка {request.method} {request.url.path}: {exc}",
        extra={"path": request.url.path},
        exc_info=exc,
    )
    return failure(status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorKind.INTERNAL.value, "internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    """Подключает обработчики, рендерящие ошибки в конверт."""
    app.add_exception_handler(ServiceError, service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)


def parse_id(value: str, label: str) -> str:
    """Проверяет, что path-параметр является UUID, и нормализует его."""
    try:
        return str(UUID(value))
    except ValueError as e:
        raise InvalidInputError(f"invalid {label} ID") from e


async def pagination_params(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> PaginationParams:
    """Зависимость FastAPI: параметры пагинации limit/offset."""
    return PaginationParams(limit=limit, offset=offset)
