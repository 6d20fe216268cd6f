# src/services/subscriptions/dependencies.py
"""
Зависимости для Subscriptions Service.
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.core.subscriptions import PostgresSubscriptionRepository, SubscriptionService, create_subscription_service
from src.infra.database import DatabaseManager, close_db, get_db as get_db_manager, init_db
from src.infra.payments import HttpPaymentProcessor, create_payment_processor


_db: Optional[DatabaseManager] = None
_owns_db: bool = False
_payments: Optional[HttpPaymentProcessor] = None

_subscription_service: Optional[SubscriptionService] = None


async def init_dependencies() -> None:
    """Инициализация всех зависимостей сервиса."""
    global _db, _owns_db, _payments, _subscription_service

    _db = get_db_manager()
    _owns_db = not _db.is_connected
    if _owns_db:
        await init_db()

    _payments = create_payment_processor()
    _subscription_service = create_subscription_service(PostgresSubscriptionRepository(_db), _payments)

    await log_info("Subscriptions Service инициализирован", type_msg=TypeMsg.INFO)


async def cleanup_dependencies() -> None:
    """Закрытие всех ресурсов."""
    global _db, _owns_db, _payments, _subscription_service

    if _payments is not None:
        await _payments.close()
    if _db is not None and _owns_db:
        await close_db()

    _db = None
    _owns_db = False
    _payments = None
    _subscription_service = None


async def get_db() -> DatabaseManager:
    """Получение экземпляра DatabaseManager."""
    if _db is None:
        raise RuntimeError("DatabaseManager не инициализирован")
    return _db


async def get_subscription_service() -> SubscriptionService:
    """Получение экземпляра SubscriptionService."""
    if _subscription_service is None:
        raise RuntimeError("SubscriptionService не инициализирован")
    return _subscription_service
