"""
Типизированные ошибки сервисов.

Каждая ошибка несёт вид (kind) из общей таксономии, безопасное для
пользователя сообщение и, опционально, исходную причину (только для логов).
HTTP-адаптеры переводят вид ошибки в статус через http_status_for().
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Виды ошибок сервисного слоя."""
    INVALID_INPUT = "invalid_input"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    PAYMENT_FAILED = "payment_failed"
    STORAGE_FAILURE = "storage_failure"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    INTERNAL = "internal"


_HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
}


def http_status_for(kind: ErrorKind) -> int:
    """Возвращает HTTP статус для вида ошибки (по умолчанию 500)."""
    return _HTTP_STATUS_BY_KIND.get(kind, 500)


class ServiceError(Exception):
    """
    Базовая ошибка сервисного слоя.

    Attributes:
        kind: Вид ошибки
        message: Сообщение, которое можно показать пользователю
        cause: Исходное исключение (логируется, клиенту не отдаётся)
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_message: str = "internal error"

    def __init__(self, message: str | None = None, cause: BaseException | None = None) -> None:
        self.message = message or self.default_message
        self.cause = cause
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return http_status_for(self.kind)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class InvalidInputError(ServiceError):
    kind = ErrorKind.INVALID_INPUT
    default_message = "invalid input"


class UnauthenticatedError(ServiceError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "unauthorized"


class ForbiddenError(ServiceError):
    kind = ErrorKind.FORBIDDEN
    default_message = "forbidden"


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    default_message = "not found"


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT
    default_message = "conflict"


class InvalidStateError(ServiceError):
    kind = ErrorKind.INVALID_STATE
    default_message = "operation not allowed in current state"


class PaymentFailedError(ServiceError):
    kind = ErrorKind.PAYMENT_FAILED
    default_message = "payment processing failed"


class StorageFailureError(ServiceError):
    kind = ErrorKind.STORAGE_FAILURE
    default_message = "file storage failure"


class DependencyUnavailableError(ServiceError):
    kind = ErrorKind.DEPENDENCY_UNAVAILABLE
    default_message = "service temporarily unavailable"


class InternalError(ServiceError):
    kind = ErrorKind.INTERNAL
    default_message = "internal error"
