# src/services/documents/dependencies.py
"""
Зависимости для Documents Service.
Инициализация и управление ресурсами.
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.core.documents import DocumentService, PostgresDocumentRepository, create_document_service
from src.core.drivers import DriverDirectory, PostgresDriverDirectory
from src.infra.database import DatabaseManager, close_db, get_db as get_db_manager, init_db
from src.infra.storage import LocalStorage, create_storage


# Глобальные экземпляры ресурсов
_db: Optional[DatabaseManager] = None
_owns_db: bool = False
_storage: Optional[LocalStorage] = None

# Сервисы
_document_service: Optional[DocumentService] = None
_driver_directory: Optional[DriverDirectory] = None


async def init_dependencies() -> None:
    """Инициализация всех зависимостей сервиса."""
    global _db, _owns_db, _storage, _document_service, _driver_directory

    # В режиме "all" пул уже поднят main.py: тогда закрывать его не нам
    _db = get_db_manager()
    _owns_db = not _db.is_connected
    if _owns_db:
        await init_db()

    _storage = create_storage()
    _document_service = create_document_service(PostgresDocumentRepository(_db), _storage)
    _driver_directory = PostgresDriverDirectory(_db)

    await log_info("Documents Service инициализирован", type_msg=TypeMsg.INFO)


async def cleanup_dependencies() -> None:
    """Закрытие всех ресурсов."""
    global _db, _owns_db, _storage, _document_service, _driver_directory

    if _db is not None and _owns_db:
        await close_db()

    _db = None
    _owns_db = False
    _storage = None
    _document_service = None
    _driver_directory = None


async def get_db() -> DatabaseManager:
    """Получение экземпляра DatabaseManager."""
    if _db is None:
        raise RuntimeError("DatabaseManager не инициализирован")
    return _db


async def get_storage() -> LocalStorage:
    """Получение файлового хранилища."""
    if _storage is None:
        raise RuntimeError("Storage не инициализирован")
    return _storage


async def get_document_service() -> DocumentService:
    """Получение экземпляра DocumentService."""
    if _document_service is None:
        raise RuntimeError("DocumentService не инициализирован")
    return _document_service


async def get_driver_directory() -> DriverDirectory:
    """Получение справочника водителей."""
    if _driver_directory is None:
        raise RuntimeError("DriverDirectory не инициализирован")
    return _driver_directory
