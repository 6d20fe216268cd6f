# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник настроек: config/config.json.
Секретные данные переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации (можно переопределить через CONFIG_PATH)."""
    override = os.getenv("CONFIG_PATH")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "ride_hailing"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"


class DeploymentSettings(BaseModel):
    """Настройки развертывания компонентов."""
    DOCUMENTS_SERVICE_HOST: str = "documents_service"
    DOCUMENTS_SERVICE_PORT: int = 8092
    SUBSCRIPTIONS_SERVICE_HOST: str = "subscriptions_service"
    SUBSCRIPTIONS_SERVICE_PORT: int = 8093
    PAYMENTS_SERVICE_HOST: str = "payments_service"
    PAYMENTS_SERVICE_PORT: int = 8087

    @property
    def payments_base_url(self) -> str:
        """Базовый URL сервиса платежей."""
        return f"http://{self.PAYMENTS_SERVICE_HOST}:{self.PAYMENTS_SERVICE_PORT}"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_FORMAT: str = "colored"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_MAX_BYTES: int = 10485760
    LOG_BACKUP_COUNT: int = 5


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "ride_hailing"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class StorageSettings(BaseModel):
    """Настройки файлового хранилища документов."""
    STORAGE_BASE_DIR: str = "data/storage"
    STORAGE_PUBLIC_URL: str = "http://localhost:8092/files"
    STORAGE_SIGNING_SECRET: str = ""
    PRESIGNED_URL_EXPIRY_MINUTES: int = 15

    @field_validator("STORAGE_SIGNING_SECRET", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает секрет подписи из переменных окружения."""
        if not v:
            return os.getenv("STORAGE_SIGNING_SECRET", "")
        return v


class DocumentSettings(BaseModel):
    """Настройки загрузки и проверки документов."""
    MAX_UPLOAD_SIZE_MB: int = 10
    ALLOWED_MIME_TYPES: list[str] = Field(default_factory=lambda: [
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/heic",
        "application/pdf",
    ])
    DOWNLOAD_TIMEOUT: float = 60.0
    EXPIRY_SWEEP_INTERVAL: int = 3600
    EXPIRING_DEFAULT_DAYS: int = 30

    @property
    def max_upload_bytes(self) -> int:
        return self.MAX_UPLOAD_SIZE_MB * 1024 * 1024


class OCRSettings(BaseModel):
    """Настройки OCR воркера и провайдеров."""
    OCR_PROVIDER: str = "mock"
    OCR_BATCH_SIZE: int = 10
    OCR_POLL_INTERVAL: float = 30.0
    OCR_MAX_RETRIES: int = 3
    OCR_MIN_CONFIDENCE: float = 0.7
    OCR_PROCESSOR_TIMEOUT: float = 60.0
    OCR_STUCK_JOB_MINUTES: int = 15
    GOOGLE_VISION_API_KEY: str = ""
    GOOGLE_PROJECT_ID: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""

    @field_validator("GOOGLE_VISION_API_KEY", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", mode="before")
    @classmethod
    def get_from_env(cls, v: str, info) -> str:
        """Получает ключи провайдеров из переменных окружения, если не заданы."""
        if not v:
            return os.getenv(info.field_name, "")
        return v


class SubscriptionSettings(BaseModel):
    """Настройки подписок и продления."""
    RENEWAL_INTERVAL: float = 300.0
    RENEWAL_BATCH_SIZE: int = 100
    MAX_FAILED_PAYMENTS: int = 3
    PAYMENT_TIMEOUT: float = 30.0
    ASSUMED_RIDES_PER_MONTH: int = 20
    SPEND_WINDOW_DAYS: int = 90
    DEFAULT_CURRENCY: str = "EUR"


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    documents: DocumentSettings = Field(default_factory=DocumentSettings)
    ocr: OCRSettings = Field(default_factory=OCRSettings)
    subscriptions: SubscriptionSettings = Field(default_factory=SubscriptionSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        return cls.from_dict(load_config_json())

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """Создаёт Settings из плоского словаря (формат config.json)."""
        # Фильтруем комментарии (ключи, начинающиеся с _comment_)
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "ride_hailing"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "all")),
            ),
            deployment=DeploymentSettings(
                DOCUMENTS_SERVICE_HOST=os.getenv("DOCUMENTS_SERVICE_HOST", data.get("DOCUMENTS_SERVICE_HOST", "documents_service")),
                DOCUMENTS_SERVICE_PORT=data.get("DOCUMENTS_SERVICE_PORT", 8092),
                SUBSCRIPTIONS_SERVICE_HOST=os.getenv("SUBSCRIPTIONS_SERVICE_HOST", data.get("SUBSCRIPTIONS_SERVICE_HOST", "subscriptions_service")),
                SUBSCRIPTIONS_SERVICE_PORT=data.get("SUBSCRIPTIONS_SERVICE_PORT", 8093),
                PAYMENTS_SERVICE_HOST=os.getenv("PAYMENTS_SERVICE_HOST", data.get("PAYMENTS_SERVICE_HOST", "payments_service")),
                PAYMENTS_SERVICE_PORT=int(os.getenv("PAYMENTS_SERVICE_PORT", data.get("PAYMENTS_SERVICE_PORT", 8087))),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=os.getenv("LOG_LEVEL", data.get("LOG_LEVEL", "DEBUG")),
                LOG_FORMAT=data.get("LOG_FORMAT", "colored"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
                LOG_BACKUP_COUNT=data.get("LOG_BACKUP_COUNT", 5),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "ride_hailing")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=data.get("DB_RETRY_DELAY", 1.0),
            ),
            storage=StorageSettings(
                STORAGE_BASE_DIR=os.getenv("STORAGE_BASE_DIR", data.get("STORAGE_BASE_DIR", "data/storage")),
                STORAGE_PUBLIC_URL=data.get("STORAGE_PUBLIC_URL", "http://localhost:8092/files"),
                STORAGE_SIGNING_SECRET=os.getenv("STORAGE_SIGNING_SECRET", data.get("STORAGE_SIGNING_SECRET", "")),
                PRESIGNED_URL_EXPIRY_MINUTES=data.get("PRESIGNED_URL_EXPIRY_MINUTES", 15),
            ),
            documents=DocumentSettings(
                MAX_UPLOAD_SIZE_MB=data.get("MAX_UPLOAD_SIZE_MB", 10),
                ALLOWED_MIME_TYPES=data.get("ALLOWED_MIME_TYPES", DocumentSettings().ALLOWED_MIME_TYPES),
                DOWNLOAD_TIMEOUT=data.get("DOWNLOAD_TIMEOUT", 60.0),
                EXPIRY_SWEEP_INTERVAL=data.get("EXPIRY_SWEEP_INTERVAL", 3600),
                EXPIRING_DEFAULT_DAYS=data.get("EXPIRING_DEFAULT_DAYS", 30),
            ),
            ocr=OCRSettings(
                OCR_PROVIDER=os.getenv("OCR_PROVIDER", data.get("OCR_PROVIDER", "mock")),
                OCR_BATCH_SIZE=data.get("OCR_BATCH_SIZE", 10),
                OCR_POLL_INTERVAL=data.get("OCR_POLL_INTERVAL", 30.0),
                OCR_MAX_RETRIES=data.get("OCR_MAX_RETRIES", 3),
                OCR_MIN_CONFIDENCE=data.get("OCR_MIN_CONFIDENCE", 0.7),
                OCR_PROCESSOR_TIMEOUT=data.get("OCR_PROCESSOR_TIMEOUT", 60.0),
                OCR_STUCK_JOB_MINUTES=data.get("OCR_STUCK_JOB_MINUTES", 15),
                GOOGLE_VISION_API_KEY=os.getenv("GOOGLE_VISION_API_KEY", data.get("GOOGLE_VISION_API_KEY", "")),
                GOOGLE_PROJECT_ID=data.get("GOOGLE_PROJECT_ID", ""),
                AWS_REGION=os.getenv("AWS_REGION", data.get("AWS_REGION", "us-east-1")),
                AWS_ACCESS_KEY_ID=os.getenv("AWS_ACCESS_KEY_ID", data.get("AWS_ACCESS_KEY_ID", "")),
                AWS_SECRET_ACCESS_KEY=os.getenv("AWS_SECRET_ACCESS_KEY", data.get("AWS_SECRET_ACCESS_KEY", "")),
            ),
            subscriptions=SubscriptionSettings(
                RENEWAL_INTERVAL=data.get("RENEWAL_INTERVAL", 300.0),
                RENEWAL_BATCH_SIZE=data.get("RENEWAL_BATCH_SIZE", 100),
                MAX_FAILED_PAYMENTS=data.get("MAX_FAILED_PAYMENTS", 3),
                PAYMENT_TIMEOUT=data.get("PAYMENT_TIMEOUT", 30.0),
                ASSUMED_RIDES_PER_MONTH=data.get("ASSUMED_RIDES_PER_MONTH", 20),
                SPEND_WINDOW_DAYS=data.get("SPEND_WINDOW_DAYS", 90),
                DEFAULT_CURRENCY=data.get("DEFAULT_CURRENCY", "EUR"),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    # Загружаем .env файл
    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
