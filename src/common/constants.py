"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли пользователей."""
    RIDER = "rider"
    DRIVER = "driver"
    ADMIN = "admin"


# Маркер исполнителя для действий, выполненных системой (воркеры, свипы)
SYSTEM_ACTOR = "system"


# =============================================================================
# ДОКУМЕНТЫ ВОДИТЕЛЕЙ
# =============================================================================

class DocumentStatus(str, Enum):
    """Статусы документа водителя."""
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"
    RESUBMIT_REQUESTED = "resubmit_requested"


class HistoryAction(str, Enum):
    """Типы событий в истории верификации документа."""
    SUBMITTED = "submitted"
    OCR_PROCESSED = "ocr_processed"
    REVIEW_STARTED = "review_started"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUBMIT_REQUESTED = "resubmit_requested"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


class ReviewAction(str, Enum):
    """Решения администратора при проверке документа."""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_RESUBMIT = "request_resubmit"


class OCRJobStatus(str, Enum):
    """Статусы задачи OCR в очереди."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OCRProvider(str, Enum):
    """Поддерживаемые OCR провайдеры."""
    GOOGLE_VISION = "google_vision"
    AWS_TEXTRACT = "aws_textract"
    MOCK = "mock"


class VerificationState(str, Enum):
    """Итоговый статус верификации водителя."""
    INCOMPLETE = "incomplete"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


# Статусы, которые считаются "поданными" при подсчёте верификации
SUBMITTED_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.PENDING,
    DocumentStatus.UNDER_REVIEW,
    DocumentStatus.RESUBMIT_REQUESTED,
    DocumentStatus.APPROVED,
})

# Статусы, из которых допустимо решение администратора
REVIEWABLE_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.PENDING,
    DocumentStatus.UNDER_REVIEW,
})

# Статусы, в которых можно догрузить обратную сторону
BACK_SIDE_UPLOAD_STATUSES = frozenset({
    DocumentStatus.PENDING,
    DocumentStatus.RESUBMIT_REQUESTED,
})

# Приоритеты OCR задач: обязательные документы обрабатываются раньше
OCR_PRIORITY_REQUIRED = 10
OCR_PRIORITY_OPTIONAL = 0


# =============================================================================
# ПОДПИСКИ
# =============================================================================

class PlanType(str, Enum):
    """Типы тарифных планов подписки."""
    UNLIMITED = "unlimited"
    PACKAGE = "package"
    DISCOUNT = "discount"
    PRIORITY = "priority"


class BillingPeriod(str, Enum):
    """Периоды списания."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanStatus(str, Enum):
    """Статусы тарифного плана."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class SubscriptionStatus(str, Enum):
    """Статусы подписки."""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    EXPIRED = "expired"


class UsageType(str, Enum):
    """Типы использования подписки."""
    RIDE = "ride"
    UPGRADE = "upgrade"
    CANCELLATION = "cancellation"


# Подписки, которые считаются "живыми" (не более одной на пользователя)
LIVE_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAUSED,
    SubscriptionStatus.PAST_DUE,
})

# Подписки, участвующие в продлении
RENEWABLE_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
})
