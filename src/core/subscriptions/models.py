# src/core/subscriptions/models.py
"""
Модели данных подписок.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from src.common.constants import (
    BillingPeriod,
    PlanStatus,
    PlanType,
    SubscriptionStatus,
    UsageType,
)


class SubscriptionPlan(BaseModel):
    """Тарифный план подписки."""

    id: str
    name: str
    slug: str
    description: Optional[str] = None
    plan_type: PlanType
    billing_period: BillingPeriod
    price: Decimal = Field(..., ge=0)
    currency: str
    status: PlanStatus = PlanStatus.ACTIVE

    # Пакет преимуществ
    rides_included: Optional[int] = Field(None, ge=0)
    max_ride_value: Optional[Decimal] = Field(None, ge=0)
    discount_pct: Decimal = Field(Decimal("0"), ge=0, le=100)
    allowed_ride_types: list[str] = Field(default_factory=list)
    allowed_cities: list[str] = Field(default_factory=list)
    max_distance_km: Optional[float] = None
    priority_matching: bool = False
    free_upgrades: int = 0
    free_cancellations: int = 0
    surge_protection: bool = False
    surge_max_cap: Optional[Decimal] = None

    # Витрина
    popular_badge: bool = False
    savings_label: Optional[str] = None
    display_order: int = 0

    # Пробный период
    trial_days: int = Field(0, ge=0)
    trial_rides: int = Field(0, ge=0)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Subscription(BaseModel):
    """Подписка пользователя."""

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus

    current_period_start: datetime
    current_period_end: datetime

    # Счётчики текущего периода
    rides_used: int = 0
    upgrades_used: int = 0
    cancellations_used: int = 0
    failed_payments: int = 0

    total_saved: Decimal = Decimal("0.00")

    payment_method: str
    auto_renew: bool = True
    last_payment_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None

    is_trial_active: bool = False
    trial_ends_at: Optional[datetime] = None

    activated_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def check_period(self) -> "Subscription":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self


class SubscriptionUsageLog(BaseModel):
    """Запись об использовании подписки (только добавление)."""

    id: str
    subscription_id: str
    ride_id: Optional[str] = None
    usage_type: UsageType
    original_fare: Decimal = Decimal("0.00")
    discounted_fare: Decimal = Decimal("0.00")
    savings_amount: Decimal = Decimal("0.00")
    created_at: datetime

    class Config:
        from_attributes = True


# =============================================================================
# ВХОДНЫЕ ДАННЫЕ
# =============================================================================

class PlanCreate(BaseModel):
    """Данные для создания тарифного плана (админ)."""

    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=128, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    description: Optional[str] = None
    plan_type: PlanType
    billing_period: BillingPeriod
    price: Decimal = Field(..., ge=0, decimal_places=2)
    currency: str = Field(..., min_length=3, max_length=3)
    rides_included: Optional[int] = Field(None, ge=0)
    max_ride_value: Optional[Decimal] = Field(None, ge=0)
    discount_pct: Decimal = Field(Decimal("0"), ge=0, le=100)
    allowed_ride_types: list[str] = Field(default_factory=list)
    allowed_cities: list[str] = Field(default_factory=list)
    max_distance_km: Optional[float] = Field(None, gt=0)
    priority_matching: bool = False
    free_upgrades: int = Field(0, ge=0)
    free_cancellations: int = Field(0, ge=0)
    surge_protection: bool = False
    surge_max_cap: Optional[Decimal] = Field(None, ge=1)
    popular_badge: bool = False
    savings_label: Optional[str] = None
    display_order: int = 0
    trial_days: int = Field(0, ge=0)
    trial_rides: int = Field(0, ge=0)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def check_benefits(self) -> "PlanCreate":
        if self.plan_type == PlanType.PACKAGE and self.rides_included is None:
            raise ValueError("package plans must define rides_included")
        if self.plan_type in (PlanType.DISCOUNT, PlanType.PRIORITY) and self.discount_pct <= 0:
            raise ValueError("discount plans must define a positive discount_pct")
        return self


class SubscribeRequest(BaseModel):
    """Запрос на оформление подписки."""

    plan_id: str
    payment_method: str = Field(..., min_length=1, max_length=64)
    auto_renew: bool = True


# =============================================================================
# РЕЗУЛЬТАТЫ
# =============================================================================

class UsageSummary(BaseModel):
    """Использование подписки в текущем периоде."""

    rides_used: int
    rides_remaining: Optional[int] = None
    upgrades_used: int
    upgrades_left: int = 0
    cancellations_used: int
    cancellations_left: int = 0
    utilization_pct: float = 0.0
    days_remaining: int = 0
    total_saved: Decimal


class SubscriptionView(BaseModel):
    """Подписка вместе с планом и сводкой использования."""

    subscription: Subscription
    plan: Optional[SubscriptionPlan] = None
    usage: UsageSummary


class PlanComparison(BaseModel):
    """Персональное сравнение тарифов."""

    plans: list[SubscriptionPlan]
    avg_monthly_spend: Decimal
    best_plan_id: Optional[str] = None
    estimated_savings: dict[str, Decimal] = Field(default_factory=dict)


class RenewalSummary(BaseModel):
    """Итог одного прохода продления."""

    processed: int = 0
    renewed: int = 0
    failed: int = 0
    expired: int = 0
    skipped: int = 0
