# src/core/subscriptions/comparison.py
"""
Сравнение тарифных планов для пользователя.

Оценка экономии строится от средней месячной траты на поездки:
    discount / priority: spend * pct / 100 - price
    package:             (spend / rides_per_month) * rides_included - price
    unlimited:           spend - price
rides_per_month: эвристика (по умолчанию 20 поездок в месяц).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from src.core.subscriptions.benefits import ZERO, benefit_for, quantize_money
from src.core.subscriptions.models import PlanComparison, SubscriptionPlan

DEFAULT_RIDES_PER_MONTH = 20


def estimate_plan_savings(plan: SubscriptionPlan, avg_monthly_spend: Decimal, rides_per_month: int) -> Decimal:
    """Оценка месячной экономии по плану, не меньше нуля."""
    estimate = benefit_for(plan).estimate_savings(avg_monthly_spend, plan.price, rides_per_month)
    return max(quantize_money(estimate), ZERO)


def compare_plans(
    plans: Iterable[SubscriptionPlan],
    avg_monthly_spend: Decimal,
    rides_per_month: int = DEFAULT_RIDES_PER_MONTH,
) -> PlanComparison:
    """
    Считает экономию по каждому плану и выбирает лучший.

    Лучший план имеет максимальную положительную экономию; при равенстве
    выигрывает более дешёвый, затем меньший display_order. Если ни один план
    не экономит, best_plan_id = None.
    """
    plans = list(plans)
    spend = quantize_money(avg_monthly_spend)

    savings: dict[str, Decimal] = {}
    for plan in plans:
        savings[plan.id] = estimate_plan_savings(plan, spend, rides_per_month)

    candidates = [p for p in plans if savings[p.id] > ZERO]
    best = min(
        candidates,
        key=lambda p: (-savings[p.id], p.price, p.display_order),
        default=None,
    )

    return PlanComparison(
        plans=plans,
        avg_monthly_spend=spend,
        best_plan_id=best.id if best else None,
        estimated_savings=savings,
    )
