# src/core/subscriptions/service.py
"""
Сервис подписок.

Каталог планов, жизненный цикл подписки (trial -> active -> paused / past_due /
cancelled), скидка на поездку с атомарным учётом использования, сравнение
планов и продление.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta

from src.common.clock import Clock, IdGenerator, SystemClock, new_id
from src.common.constants import (
    BillingPeriod,
    PlanStatus,
    SubscriptionStatus,
    TypeMsg,
    UsageType,
)
from src.common.errors import (
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    PaymentFailedError,
    ServiceError,
)
from src.common.logger import log_error, log_info, log_warning
from src.core.subscriptions.benefits import ZERO, quantize_money, quote_discount
from src.core.subscriptions.comparison import DEFAULT_RIDES_PER_MONTH, compare_plans
from src.core.subscriptions.models import (
    PlanComparison,
    PlanCreate,
    RenewalSummary,
    Subscription,
    SubscriptionPlan,
    SubscriptionUsageLog,
    SubscriptionView,
    UsageSummary,
)
from src.core.subscriptions.repository import SubscriptionRepository
from src.infra.payments import PaymentGatewayError, PaymentProcessor


def calculate_period_end(start: datetime, period: BillingPeriod) -> datetime:
    """Конец периода списания (календарные месяцы и годы)."""
    match period:
        case BillingPeriod.WEEKLY:
            return start + timedelta(days=7)
        case BillingPeriod.MONTHLY:
            return start + relativedelta(months=1)
        case BillingPeriod.YEARLY:
            return start + relativedelta(years=1)
    return start + relativedelta(months=1)


def build_usage_summary(sub: Subscription, plan: Optional[SubscriptionPlan], now: datetime) -> UsageSummary:
    """Сводка использования подписки за текущий период."""
    rides_remaining = None
    upgrades_left = 0
    cancellations_left = 0
    utilization = 0.0

    if plan is not None:
        if plan.rides_included is not None:
            rides_remaining = max(plan.rides_included - sub.rides_used, 0)
            if plan.rides_included > 0:
                utilization = round(sub.rides_used / plan.rides_included * 100, 1)
        upgrades_left = max(plan.free_upgrades - sub.upgrades_used, 0)
        cancellations_left = max(plan.free_cancellations - sub.cancellations_used, 0)

    days_remaining = max(int((sub.current_period_end - now).total_seconds() // 86400), 0)

    return UsageSummary(
        rides_used=sub.rides_used,
        rides_remaining=rides_remaining,
        upgrades_used=sub.upgrades_used,
        upgrades_left=upgrades_left,
        cancellations_used=sub.cancellations_used,
        cancellations_left=cancellations_left,
        utilization_pct=utilization,
        days_remaining=days_remaining,
        total_saved=sub.total_saved,
    )


class SubscriptionService:
    """
    Сервис подписок.

    Денежные суммы хранятся в Decimal с точностью до копеек; float в расчётах не используется.
    """

    def __init__(
        self,
        repo: SubscriptionRepository,
        payments: PaymentProcessor,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        max_failed_payments: int = 3,
        payment_timeout: float = 30.0,
        rides_per_month: int = DEFAULT_RIDES_PER_MONTH,
        spend_window_days: int = 90,
    ) -> None:
        """
        Args:
            repo: Репозиторий подписок
            payments: Платёжный процессор
            clock: Источник времени
            id_generator: Генератор ID
            max_failed_payments: После скольких неудачных списаний подписка уходит в past_due
            payment_timeout: Таймаут одного списания, сек
            rides_per_month: Эвристика числа поездок в месяц для сравнения планов
            spend_window_days: Окно расчёта средней месячной траты
        """
        self._repo = repo
        self._payments = payments
        self._clock = clock or SystemClock()
        self._new_id = id_generator or new_id
        self.max_failed_payments = max_failed_payments
        self.payment_timeout = payment_timeout
        self.rides_per_month = rides_per_month
        self.spend_window_days = spend_window_days

    # =========================================================================
    # КАТАЛОГ ПЛАНОВ
    # =========================================================================

    async def create_plan(self, payload: PlanCreate) -> SubscriptionPlan:
        if await self._repo.get_plan_by_slug(payload.slug) is not None:
            raise ConflictError("plan slug already exists")

        now = self._clock.now()
        plan = SubscriptionPlan(
            id=self._new_id(),
            status=PlanStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            **payload.model_dump(),
        )
        created = await self._repo.create_plan(plan)
        await log_info(
            f"Создан тарифный план {created.slug}",
            extra={"plan_id": created.id, "plan_type": created.plan_type.value},
        )
        return created

    async def list_active_plans(self) -> list[SubscriptionPlan]:
        return await self._repo.list_plans(only_active=True)

    async def list_all_plans(self) -> list[SubscriptionPlan]:
        return await self._repo.list_plans(only_active=False)

    async def deactivate_plan(self, plan_id: str) -> None:
        """Закрывает план для новых подписчиков; действующие подписки не меняются."""
        await self._repo.update_plan_status(plan_id, PlanStatus.INACTIVE, self._clock.now())
        await log_info(f"Тарифный план {plan_id} деактивирован")

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ ПОДПИСКИ
    # =========================================================================

    async def _charge(self, user_id: str, plan: SubscriptionPlan, payment_method: str) -> None:
        """Списание с таймаутом; ошибки приводятся к PaymentGatewayError."""
        try:
            await asyncio.wait_for(
                self._payments.charge_subscription(user_id, plan.price, plan.currency, payment_method),
                timeout=self.payment_timeout,
            )
        except asyncio.TimeoutError as e:
            raise PaymentGatewayError("payment timed out", transient=True) from e

    async def _require_live(self, user_id: str) -> Subscription:
        sub = await self._repo.get_live_subscription(user_id)
        if sub is None:
            raise NotFoundError("no active subscription found")
        return sub

    async def subscribe(
        self,
        user_id: str,
        plan_id: str,
        payment_method: str,
        auto_renew: bool = True,
    ) -> SubscriptionView:
        """
        Оформляет подписку.

        С пробным периодом первое списание откладывается до trial_ends_at;
        без него сумма списывается сразу, и при ошибке подписка не создаётся.

        Raises:
            ConflictError: у пользователя уже есть живая подписка
            NotFoundError: план не найден
            InvalidStateError: план не активен
            PaymentFailedError: списание не прошло
        """
        if await self._repo.get_live_subscription(user_id) is not None:
            raise ConflictError("you already have an active subscription")

        plan = await self._repo.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("plan not found")
        if plan.status != PlanStatus.ACTIVE:
            raise InvalidStateError("this plan is no longer available")

        now = self._clock.now()
        is_trial = plan.trial_days > 0
        trial_ends_at = now + timedelta(days=plan.trial_days) if is_trial else None
        period_end = trial_ends_at if trial_ends_at else calculate_period_end(now, plan.billing_period)

        if not is_trial:
            try:
                await self._charge(user_id, plan, payment_method)
            except PaymentGatewayError as e:
                await log_warning(
                    f"Списание при оформлении подписки не прошло: {e}",
                    extra={"user_id": user_id, "plan_id": plan.id, "transient": e.transient},
                )
                raise PaymentFailedError("payment processing failed", cause=e) from e

        sub = Subscription(
            id=self._new_id(),
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=period_end,
            payment_method=payment_method,
            auto_renew=auto_renew,
            last_payment_date=None if is_trial else now,
            next_billing_date=period_end,
            is_trial_active=is_trial,
            trial_ends_at=trial_ends_at,
            activated_at=now,
            created_at=now,
            updated_at=now,
        )

        try:
            created = await self._repo.create_subscription(sub)
        except ServiceError as e:
            if not is_trial:
                # Деньги списаны, подписка не сохранена: нужен ручной возврат
                await log_error(
                    f"Подписка не сохранена после успешного списания: {e.message}",
                    extra={"user_id": user_id, "plan_id": plan.id, "amount": str(plan.price), "refund_required": True},
                )
            raise

        await log_info(
            f"Оформлена подписка {created.id} на план {plan.slug}",
            extra={"user_id": user_id, "trial": is_trial},
        )
        return SubscriptionView(subscription=created, plan=plan, usage=build_usage_summary(created, plan, now))

    async def get_subscription(self, user_id: str) -> SubscriptionView:
        sub = await self._require_live(user_id)
        plan = await self._repo.get_plan(sub.plan_id)
        return SubscriptionView(subscription=sub, plan=plan, usage=build_usage_summary(sub, plan, self._clock.now()))

    async def pause(self, user_id: str) -> Subscription:
        """active -> paused."""
        sub = await self._require_live(user_id)
        if sub.status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError("subscription is not active")

        now = self._clock.now()
        updated = await self._repo.transition_subscription(
            sub.id, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED, now, paused_at=now
        )
        await log_info(f"Подписка {sub.id} приостановлена", extra={"user_id": user_id})
        return updated

    async def resume(self, user_id: str) -> Subscription:
        """paused -> active."""
        sub = await self._require_live(user_id)
        if sub.status != SubscriptionStatus.PAUSED:
            raise InvalidStateError("subscription is not paused")

        now = self._clock.now()
        updated = await self._repo.transition_subscription(
            sub.id, SubscriptionStatus.PAUSED, SubscriptionStatus.ACTIVE, now, paused_at=None
        )
        await log_info(f"Подписка {sub.id} возобновлена", extra={"user_id": user_id})
        return updated

    async def cancel(self, user_id: str, reason: Optional[str] = None) -> Subscription:
        """Отмена из любого нетерминального статуса; деньги не возвращаются."""
        sub = await self._require_live(user_id)

        now = self._clock.now()
        updated = await self._repo.transition_subscription(
            sub.id,
            sub.status,
            SubscriptionStatus.CANCELLED,
            now,
            cancelled_at=now,
            cancel_reason=reason,
            auto_renew=False,
        )
        await log_info(f"Подписка {sub.id} отменена", extra={"user_id": user_id, "reason": reason})
        return updated

    # =========================================================================
    # СКИДКА НА ПОЕЗДКУ
    # =========================================================================

    @staticmethod
    def _rides_cap(sub: Subscription, plan: SubscriptionPlan) -> Optional[int]:
        """Лимит поездок периода; в пробный период его ограничивает trial_rides."""
        cap = plan.rides_included
        if sub.is_trial_active and plan.trial_rides > 0:
            cap = plan.trial_rides if cap is None else min(cap, plan.trial_rides)
        return cap

    async def apply_discount(
        self,
        user_id: str,
        ride_id: str,
        original_fare: Decimal,
        ride_type: str,
        city: Optional[str] = None,
        distance_km: Optional[float] = None,
    ) -> Decimal:
        """
        Применяет подписку к стоимости поездки.

        Returns:
            Итоговая стоимость; исходная, если скидка не положена
            или учёт использования не удалось сохранить
        """
        original = quantize_money(original_fare)
        if original < ZERO:
            raise InvalidInputError("fare must be non-negative")

        sub = await self._repo.get_live_subscription(user_id)
        if sub is None or sub.status != SubscriptionStatus.ACTIVE:
            return original

        plan = await self._repo.get_plan(sub.plan_id)
        if plan is None:
            return original

        if plan.allowed_ride_types and ride_type not in plan.allowed_ride_types:
            return original
        if city is not None and plan.allowed_cities and city not in plan.allowed_cities:
            return original
        if distance_km is not None and plan.max_distance_km is not None and distance_km > plan.max_distance_km:
            return original

        cap = self._rides_cap(sub, plan)
        if cap is not None and sub.rides_used >= cap:
            return original

        quote = quote_discount(plan, original)
        usage_log = SubscriptionUsageLog(
            id=self._new_id(),
            subscription_id=sub.id,
            ride_id=ride_id,
            usage_type=UsageType.RIDE,
            original_fare=quote.original_fare,
            discounted_fare=quote.final_fare,
            savings_amount=quote.savings,
            created_at=self._clock.now(),
        )

        try:
            granted = await self._repo.record_ride_usage(sub.id, cap, usage_log)
        except ServiceError as e:
            await log_error(
                f"Не удалось учесть поездку по подписке {sub.id}: {e.message}",
                extra={"ride_id": ride_id},
            )
            return original

        if not granted:
            await log_info(
                f"Лимит поездок подписки {sub.id} исчерпан",
                type_msg=TypeMsg.DEBUG,
                extra={"ride_id": ride_id},
            )
            return original

        await log_info(
            f"Скидка по подписке применена: {quote.original_fare} -> {quote.final_fare}",
            extra={"user_id": user_id, "ride_id": ride_id, "savings": str(quote.savings)},
        )
        return quote.final_fare

    # =========================================================================
    # ПРЕИМУЩЕСТВА
    # =========================================================================

    async def _active_with_plan(self, user_id: str) -> tuple[Optional[Subscription], Optional[SubscriptionPlan]]:
        sub = await self._repo.get_live_subscription(user_id)
        if sub is None or sub.status != SubscriptionStatus.ACTIVE:
            return None, None
        return sub, await self._repo.get_plan(sub.plan_id)

    async def has_free_cancellation(self, user_id: str) -> bool:
        sub, plan = await self._active_with_plan(user_id)
        if sub is None or plan is None:
            return False
        return sub.cancellations_used < plan.free_cancellations

    async def has_surge_protection(self, user_id: str) -> tuple[bool, Optional[Decimal]]:
        """(защищён ли пользователь от повышенного спроса, максимальный коэффициент)."""
        sub, plan = await self._active_with_plan(user_id)
        if sub is None or plan is None:
            return False, None
        return plan.surge_protection, plan.surge_max_cap

    async def has_priority_matching(self, user_id: str) -> bool:
        sub, plan = await self._active_with_plan(user_id)
        return bool(plan and plan.priority_matching)

    async def _use_benefit(self, user_id: str, usage_type: UsageType, ride_id: Optional[str]) -> bool:
        sub, plan = await self._active_with_plan(user_id)
        if sub is None or plan is None:
            raise InvalidStateError("no active subscription")

        cap = plan.free_upgrades if usage_type == UsageType.UPGRADE else plan.free_cancellations
        usage_log = SubscriptionUsageLog(
            id=self._new_id(),
            subscription_id=sub.id,
            ride_id=ride_id,
            usage_type=usage_type,
            created_at=self._clock.now(),
        )
        granted = await self._repo.record_benefit_usage(sub.id, usage_type, cap, usage_log)
        if granted:
            await log_info(
                f"Использовано преимущество {usage_type.value} подписки {sub.id}",
                extra={"user_id": user_id},
            )
        return granted

    async def use_free_cancellation(self, user_id: str, ride_id: Optional[str] = None) -> bool:
        return await self._use_benefit(user_id, UsageType.CANCELLATION, ride_id)

    async def use_free_upgrade(self, user_id: str, ride_id: Optional[str] = None) -> bool:
        return await self._use_benefit(user_id, UsageType.UPGRADE, ride_id)

    async def get_usage_history(self, user_id: str, limit: int = 20, offset: int = 0) -> list[SubscriptionUsageLog]:
        if limit <= 0 or offset < 0:
            raise InvalidInputError("invalid pagination parameters")
        sub = await self._require_live(user_id)
        return await self._repo.list_usage_logs(sub.id, limit, offset)

    # =========================================================================
    # СРАВНЕНИЕ ПЛАНОВ
    # =========================================================================

    async def compare_plans(self, user_id: str) -> PlanComparison:
        plans = await self._repo.list_plans(only_active=True)
        since = self._clock.now() - timedelta(days=self.spend_window_days)
        avg_spend = await self._repo.get_average_monthly_spend(user_id, since, self.spend_window_days)
        return compare_plans(plans, avg_spend, self.rides_per_month)

    # =========================================================================
    # ПРОДЛЕНИЕ
    # =========================================================================

    async def process_renewals(
        self,
        batch_size: int = 100,
        stop_event: Optional[asyncio.Event] = None,
    ) -> RenewalSummary:
        """
        Один проход продления по подпискам с истёкшим периодом.

        Ошибки отдельных подписок логируются и не прерывают проход;
        stop_event проверяется между подписками.
        """
        now = self._clock.now()
        due = await self._repo.list_due_subscriptions(now, batch_size)
        summary = RenewalSummary()

        for sub in due:
            if stop_event is not None and stop_event.is_set():
                break
            summary.processed += 1
            try:
                outcome = await self._renew(sub)
            except ServiceError as e:
                await log_error(
                    f"Ошибка продления подписки {sub.id}: {e.message}",
                    extra={"subscription_id": sub.id, "kind": e.kind.value},
                )
                summary.skipped += 1
                continue
            setattr(summary, outcome, getattr(summary, outcome) + 1)

        if summary.processed:
            await log_info(
                f"Продление: обработано {summary.processed}, продлено {summary.renewed}, "
                f"ошибок оплаты {summary.failed}, истекло {summary.expired}",
                extra=summary.model_dump(),
            )
        return summary

    async def _renew(self, sub: Subscription) -> str:
        """Продлевает одну подписку; возвращает имя счётчика RenewalSummary."""
        now = self._clock.now()

        if not sub.auto_renew:
            await self._repo.transition_subscription(
                sub.id, sub.status, SubscriptionStatus.EXPIRED, now, is_trial_active=False
            )
            await log_info(f"Подписка {sub.id} истекла без автопродления", extra={"user_id": sub.user_id})
            return "expired"

        plan = await self._repo.get_plan(sub.plan_id)
        if plan is None or plan.status != PlanStatus.ACTIVE:
            await log_warning(
                f"План подписки {sub.id} неактивен, продление пропущено",
                extra={"plan_id": sub.plan_id},
            )
            return "skipped"

        # Пробный период заканчивается при первой попытке списания, успешной или нет
        try:
            await self._charge(sub.user_id, plan, sub.payment_method)
        except PaymentGatewayError as e:
            updated = await self._repo.record_payment_failure(
                sub.id,
                sub.status,
                sub.current_period_end,
                max_failed_payments=self.max_failed_payments,
                force_past_due=not e.transient,
                now=now,
            )
            await log_warning(
                f"Продление подписки {sub.id} не оплачено ({updated.failed_payments})",
                extra={"user_id": sub.user_id, "status": updated.status.value, "transient": e.transient},
            )
            return "failed"

        period_end = calculate_period_end(now, plan.billing_period)
        try:
            await self._repo.renew_subscription(
                sub.id,
                sub.status,
                sub.current_period_end,
                period_start=now,
                period_end=period_end,
                now=now,
            )
        except ServiceError as e:
            # Деньги списаны, период не продлён: нужен ручной возврат
            await log_error(
                f"Подписка {sub.id} не продлена после успешного списания: {e.message}",
                extra={
                    "user_id": sub.user_id,
                    "subscription_id": sub.id,
                    "amount": str(plan.price),
                    "refund_required": True,
                },
            )
            raise
        await log_info(f"Подписка {sub.id} продлена до {period_end.isoformat()}", extra={"user_id": sub.user_id})
        return "renewed"


def create_subscription_service(repo: SubscriptionRepository, payments: PaymentProcessor) -> SubscriptionService:
    """Собирает SubscriptionService с параметрами из настроек."""
    from src.config import settings

    cfg = settings.subscriptions
    return SubscriptionService(
        repo,
        payments,
        max_failed_payments=cfg.MAX_FAILED_PAYMENTS,
        payment_timeout=cfg.PAYMENT_TIMEOUT,
        rides_per_month=cfg.ASSUMED_RIDES_PER_MONTH,
        spend_window_days=cfg.SPEND_WINDOW_DAYS,
    )
