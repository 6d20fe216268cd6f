# src/core/drivers/repository.py
"""
Порт справочника водителей.
Документы принадлежат водителю, а HTTP-слой знает только пользователя,
поэтому идентификатор водителя разрешается через этот порт.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.common.errors import NotFoundError
from src.infra.database import DatabaseManager, db_errors


class DriverDirectory(ABC):
    """Разрешение user_id -> driver_id."""

    @abstractmethod
    async def get_driver_id(self, user_id: str) -> str:
        """
        Возвращает ID водителя пользователя.

        Raises:
            NotFoundError: пользователь не зарегистрирован как водитель
        """
        ...


class PostgresDriverDirectory(DriverDirectory):
    """Реализация поверх таблицы drivers."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_driver_id(self, user_id: str) -> str:
        async with db_errors("get_driver_id"):
            driver_id = await self._db.fetchval(
                "SELECT id FROM drivers WHERE user_id = $1",
                user_id,
            )
        if driver_id is None:
            raise NotFoundError("not a registered driver")
        return str(driver_id)
