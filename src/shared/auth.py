# src/shared/auth.py
"""
Идентификация вызывающего.

Аутентификацию выполняет шлюз перед сервисами и пробрасывает
заголовки X-User-ID и X-User-Role.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from src.common.constants import UserRole
from src.common.errors import ForbiddenError, UnauthenticatedError


@dataclass(frozen=True)
class Caller:
    """Аутентифицированный пользователь запроса."""

    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


async def require_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Caller:
    """Зависимость FastAPI: вызывающий обязан быть аутентифицирован."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError("authentication required")
    role = (x_user_role or UserRole.RIDER.value).strip().lower()
    return Caller(user_id=x_user_id.strip(), role=role)


async def require_admin(caller: Caller = Depends(require_user)) -> Caller:
    """Зависимость FastAPI: только администраторы."""
    if not caller.is_admin:
        raise ForbiddenError("admin access required")
    return caller


async def require_driver(caller: Caller = Depends(require_user)) -> Caller:
    """Зависимость FastAPI: водители (и администраторы)."""
    if caller.role not in (UserRole.DRIVER.value, UserRole.ADMIN.value):
        raise ForbiddenError("driver access required")
    return caller
