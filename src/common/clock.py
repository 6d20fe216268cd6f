"""
Источники времени и идентификаторов.
Сервисы получают их через конструктор, чтобы тесты могли "заморозить" время.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Protocol
from uuid import uuid4


class Clock(Protocol):
    """Источник текущего времени (всегда UTC)."""

    def now(self) -> datetime: ...


class SystemClock:
    """Системные часы."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


IdGenerator = Callable[[], str]


def new_id() -> str:
    """Генерирует UUID4 строкой."""
    return str(uuid4())
