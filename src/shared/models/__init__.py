# src/shared/models/__init__.py
"""
Общие Pydantic-модели HTTP слоя.
"""

from src.shared.models.common import (
    ApiResponse,
    ErrorBody,
    HealthStatus,
    Meta,
    PaginationParams,
)

__all__ = [
    "ApiResponse",
    "ErrorBody",
    "HealthStatus",
    "Meta",
    "PaginationParams",
]
