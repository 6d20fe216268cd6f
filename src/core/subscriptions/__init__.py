# src/core/subscriptions/__init__.py
"""Подписки: каталог планов, жизненный цикл, скидки, продление."""

from src.core.subscriptions.models import (
    PlanComparison,
    PlanCreate,
    Subscription,
    SubscriptionPlan,
    SubscriptionUsageLog,
    SubscriptionView,
)
from src.core.subscriptions.repository import PostgresSubscriptionRepository, SubscriptionRepository
from src.core.subscriptions.service import SubscriptionService, create_subscription_service

__all__ = [
    "PlanComparison",
    "PlanCreate",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionUsageLog",
    "SubscriptionView",
    "PostgresSubscriptionRepository",
    "SubscriptionRepository",
    "SubscriptionService",
    "create_subscription_service",
]
