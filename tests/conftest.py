# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("STORAGE_SIGNING_SECRET", "test_signing_secret")
os.environ.setdefault("OCR_PROVIDER", "mock")

from fakes import (  # noqa: E402
    DRIVER_ID,
    FakePaymentProcessor,
    FixedClock,
    InMemoryDocumentRepository,
    InMemoryStorage,
    InMemorySubscriptionRepository,
    SequentialIds,
)
from src.common.constants import BillingPeriod, DocumentStatus, PlanType  # noqa: E402
from src.core.documents.models import DocumentType, DriverDocument  # noqa: E402
from src.core.documents.service import DocumentService  # noqa: E402
from src.core.subscriptions.models import PlanCreate, SubscriptionPlan  # noqa: E402
from src.core.subscriptions.service import SubscriptionService  # noqa: E402


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "ride_hailing_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "COMPONENT_MODE": "worker",
        "DOCUMENTS_SERVICE_PORT": 9092,
        "SUBSCRIPTIONS_SERVICE_PORT": 9093,
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "json",
        "LOG_TO_FILE": False,
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "ride_hailing_test",
        "DB_USER": "postgres",
        "DB_MIN_POOL_SIZE": 1,
        "DB_MAX_POOL_SIZE": 2,
        "STORAGE_BASE_DIR": "/tmp/storage",
        "STORAGE_PUBLIC_URL": "http://files.test/files",
        "PRESIGNED_URL_EXPIRY_MINUTES": 5,
        "MAX_UPLOAD_SIZE_MB": 2,
        "ALLOWED_MIME_TYPES": ["image/png", "application/pdf"],
        "OCR_BATCH_SIZE": 5,
        "OCR_MAX_RETRIES": 4,
        "OCR_MIN_CONFIDENCE": 0.8,
        "RENEWAL_INTERVAL": 60.0,
        "MAX_FAILED_PAYMENTS": 2,
        "DEFAULT_CURRENCY": "USD",
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def ids() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def payments() -> FakePaymentProcessor:
    return FakePaymentProcessor()


# =============================================================================
# ДОКУМЕНТЫ
# =============================================================================

@pytest.fixture
def document_repo() -> InMemoryDocumentRepository:
    """Репозиторий с каталогом: два обязательных типа и один необязательный."""
    repo = InMemoryDocumentRepository()
    repo.add_type(
        code="drivers_license",
        name="Driver's License",
        is_required=True,
        requires_expiry=True,
        requires_front_back=True,
        auto_ocr_enabled=True,
        display_order=1,
    )
    repo.add_type(
        code="vehicle_registration",
        name="Vehicle Registration",
        is_required=True,
        requires_expiry=True,
        auto_ocr_enabled=True,
        requires_manual_review=False,
        display_order=2,
    )
    repo.add_type(
        code="profile_photo",
        name="Profile Photo",
        is_required=False,
        display_order=3,
    )
    repo.add_type(code="legacy_permit", name="Legacy Permit", is_required=True, is_active=False, display_order=9)
    return repo


@pytest.fixture
def document_service(
    document_repo: InMemoryDocumentRepository,
    storage: InMemoryStorage,
    clock: FixedClock,
    ids: SequentialIds,
) -> DocumentService:
    return DocumentService(
        document_repo,
        storage,
        clock=clock,
        id_generator=ids,
        max_upload_bytes=1024,
        ocr_max_retries=3,
    )


@pytest.fixture
def make_document(document_repo: InMemoryDocumentRepository, clock: FixedClock, ids: SequentialIds):
    """Фабрика документов, сохранённых напрямую в репозиторий."""

    def _make(
        type_code: str = "drivers_license",
        status: DocumentStatus = DocumentStatus.PENDING,
        driver_id: str = DRIVER_ID,
        expiry_date: date | None = None,
        hours_ago: float = 0,
        version: int = 1,
    ) -> DriverDocument:
        doc_type: DocumentType = document_repo.types[f"type-{type_code}"]
        document_id = ids()
        return document_repo.add_document(
            DriverDocument(
                id=document_id,
                driver_id=driver_id,
                document_type_id=doc_type.id,
                status=status,
                file_url=f"https://files.test/{document_id}.png",
                file_key=f"documents/{driver_id}/{type_code}/{document_id}.png",
                file_mime_type="image/png",
                expiry_date=expiry_date,
                version=version,
                submitted_at=clock.now() - timedelta(hours=hours_ago),
            )
        )

    return _make


# =============================================================================
# ПОДПИСКИ
# =============================================================================

@pytest.fixture
def subscription_repo() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def subscription_service(
    subscription_repo: InMemorySubscriptionRepository,
    payments: FakePaymentProcessor,
    clock: FixedClock,
    ids: SequentialIds,
) -> SubscriptionService:
    return SubscriptionService(
        subscription_repo,
        payments,
        clock=clock,
        id_generator=ids,
        max_failed_payments=3,
        payment_timeout=1.0,
    )


@pytest.fixture
def plan_payload():
    """Фабрика PlanCreate с разумными значениями по умолчанию."""

    def _make(**overrides: Any) -> PlanCreate:
        data: dict[str, Any] = {
            "name": "Commuter 10",
            "slug": "commuter-10",
            "plan_type": PlanType.PACKAGE,
            "billing_period": BillingPeriod.MONTHLY,
            "price": Decimal("49.99"),
            "currency": "EUR",
            "rides_included": 10,
            "max_ride_value": Decimal("25.00"),
        }
        data.update(overrides)
        return PlanCreate(**data)

    return _make


@pytest.fixture
def make_plan(subscription_repo: InMemorySubscriptionRepository, clock: FixedClock, ids: SequentialIds):
    """Фабрика планов, сохранённых напрямую в репозиторий."""

    def _make(**overrides: Any) -> SubscriptionPlan:
        data: dict[str, Any] = {
            "id": ids(),
            "name": "Save 20",
            "slug": f"save-20-{ids.counter}",
            "plan_type": PlanType.DISCOUNT,
            "billing_period": BillingPeriod.MONTHLY,
            "price": Decimal("9.99"),
            "currency": "EUR",
            "discount_pct": Decimal("20"),
            "created_at": clock.now(),
        }
        data.update(overrides)
        plan = SubscriptionPlan(**data)
        subscription_repo.plans[plan.id] = plan
        return plan

    return _make
