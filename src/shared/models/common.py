# src/shared/models/common.py
"""
Общие модели для всех сервисов.
"""

from __future__ import annotations

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class ErrorBody(BaseModel):
    """Описание ошибки в конверте ответа."""

    code: str
    message: str


class Meta(BaseModel):
    """Метаданные пагинации."""

    limit: int
    offset: int
    total: int


class ApiResponse(BaseModel, Generic[T]):
    """
    Конверт всех JSON ответов: {success, data?, error?, meta?}.

    Незаданные поля в ответ не попадают (см. to_content()).
    """

    success: bool = True
    data: Optional[T] = None
    error: Optional[ErrorBody] = None
    meta: Optional[Meta] = None

    def to_content(self) -> dict[str, Any]:
        """Сериализует конверт, опуская незаданные поля верхнего уровня."""
        content: dict[str, Any] = {"success": self.success}
        dumped = self.model_dump(mode="json")
        for key in ("data", "error", "meta"):
            if getattr(self, key) is not None:
                content[key] = dumped[key]
        return content


class PaginationParams(BaseModel):
    """Параметры пагинации limit/offset."""

    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    def meta(self, total: int) -> Meta:
        return Meta(limit=self.limit, offset=self.offset, total=total)


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
