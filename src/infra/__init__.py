# src/infra/__init__.py
"""
Инфраструктурный слой.
Работа с внешними системами: PostgreSQL, файловое хранилище, платёжный сервис.
"""

from src.infra.database import DatabaseManager, get_db
from src.infra.payments import HttpPaymentProcessor, PaymentGatewayError, PaymentProcessor
from src.infra.storage import LocalStorage, Storage, StorageError

__all__ = [
    "DatabaseManager",
    "get_db",
    "HttpPaymentProcessor",
    "PaymentGatewayError",
    "PaymentProcessor",
    "LocalStorage",
    "Storage",
    "StorageError",
]
