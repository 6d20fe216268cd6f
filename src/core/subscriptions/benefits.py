# src/core/subscriptions/benefits.py
"""
Преимущества тарифных планов.

Каждый тип плана представлен своим вариантом с собственной логикой скидки и
оценки экономии; benefit_for() сопоставляет план варианту исчерпывающим match.
Все денежные расчёты ведутся в Decimal с округлением до копеек.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from src.common.constants import PlanType
from src.core.subscriptions.models import SubscriptionPlan

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def quantize_money(value: Decimal | int | str) -> Decimal:
    """Округляет сумму до 0.01 (half-up)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _capped(fare: Decimal, max_ride_value: Optional[Decimal]) -> Decimal:
    """Часть тарифа, на которую распространяется скидка."""
    if max_ride_value is None:
        return fare
    return min(fare, max_ride_value)


@dataclass(frozen=True)
class UnlimitedRides:
    """Поездка покрывается полностью (в пределах max_ride_value)."""

    max_ride_value: Optional[Decimal] = None

    def final_fare(self, original_fare: Decimal) -> Decimal:
        return original_fare - _capped(original_fare, self.max_ride_value)

    def estimate_savings(self, avg_monthly_spend: Decimal, price: Decimal, rides_per_month: int) -> Decimal:
        return avg_monthly_spend - price


@dataclass(frozen=True)
class RidePackage:
    """Пакет из rides_included поездок за период, покрываемых полностью."""

    rides_included: Optional[int]
    max_ride_value: Optional[Decimal] = None

    def final_fare(self, original_fare: Decimal) -> Decimal:
        return original_fare - _capped(original_fare, self.max_ride_value)

    def estimate_savings(self, avg_monthly_spend: Decimal, price: Decimal, rides_per_month: int) -> Decimal:
        if self.rides_included is None or rides_per_month <= 0:
            return ZERO
        avg_per_ride = avg_monthly_spend / rides_per_month
        return avg_per_ride * self.rides_included - price


@dataclass(frozen=True)
class PercentDiscount:
    """Процентная скидка на поездку (планы discount и priority)."""

    discount_pct: Decimal
    max_ride_value: Optional[Decimal] = None

    def final_fare(self, original_fare: Decimal) -> Decimal:
        discount = _capped(original_fare, self.max_ride_value) * self.discount_pct / HUNDRED
        return original_fare - discount

    def estimate_savings(self, avg_monthly_spend: Decimal, price: Decimal, rides_per_month: int) -> Decimal:
        return avg_monthly_spend * self.discount_pct / HUNDRED - price


PlanBenefit = Union[UnlimitedRides, RidePackage, PercentDiscount]


def benefit_for(plan: SubscriptionPlan) -> PlanBenefit:
    match plan.plan_type:
        case PlanType.UNLIMITED:
            return UnlimitedRides(max_ride_value=plan.max_ride_value)
        case PlanType.PACKAGE:
            return RidePackage(rides_included=plan.rides_included, max_ride_value=plan.max_ride_value)
        case PlanType.DISCOUNT | PlanType.PRIORITY:
            return PercentDiscount(discount_pct=plan.discount_pct, max_ride_value=plan.max_ride_value)
    raise ValueError(f"Unknown plan type: {plan.plan_type}")


@dataclass(frozen=True)
class DiscountQuote:
    """Итоговая стоимость поездки и экономия."""

    original_fare: Decimal
    final_fare: Decimal
    savings: Decimal


def quote_discount(plan: SubscriptionPlan, original_fare: Decimal) -> DiscountQuote:
    """Считает скидку по плану: final >= 0, savings = original - final."""
    original = quantize_money(original_fare)
    final = quantize_money(benefit_for(plan).final_fare(original))
    if final < ZERO:
        final = ZERO
    return DiscountQuote(original_fare=original, final_fare=final, savings=original - final)
