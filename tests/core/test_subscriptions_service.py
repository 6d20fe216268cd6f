# tests/core/test_subscriptions_service.py
"""
Тесты для сервиса подписок.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from fakes import USER_ID, FakePaymentProcessor, InMemorySubscriptionRepository
from src.common.constants import BillingPeriod, PlanStatus, PlanType, SubscriptionStatus, UsageType
from src.common.errors import (
    ConflictError,
    DependencyUnavailableError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    PaymentFailedError,
)
from src.core.subscriptions.models import Subscription
from src.core.subscriptions.service import SubscriptionService, build_usage_summary, calculate_period_end
from src.infra.payments import PaymentGatewayError

OTHER_USER = "3c8d1f6e-95b2-4a07-8d1e-5a4f2b7c6d02"


class TestCalculatePeriodEnd:
    """Границы периода списания."""

    def test_periods(self) -> None:
        start = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
        assert calculate_period_end(start, BillingPeriod.WEEKLY) == datetime(2026, 3, 22, 12, 0, tzinfo=timezone.utc)
        assert calculate_period_end(start, BillingPeriod.MONTHLY) == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)
        assert calculate_period_end(start, BillingPeriod.YEARLY) == datetime(2027, 3, 15, 12, 0, tzinfo=timezone.utc)

    def test_month_end_clamped(self) -> None:
        start = datetime(2026, 1, 31, tzinfo=timezone.utc)
        assert calculate_period_end(start, BillingPeriod.MONTHLY) == datetime(2026, 2, 28, tzinfo=timezone.utc)


class TestPlanCatalog:
    """Каталог планов."""

    @pytest.mark.asyncio
    async def test_create_plan(self, subscription_service: SubscriptionService, plan_payload) -> None:
        plan = await subscription_service.create_plan(plan_payload())

        assert plan.status == PlanStatus.ACTIVE
        assert plan.rides_included == 10
        assert [p.id for p in await subscription_service.list_active_plans()] == [plan.id]

    @pytest.mark.asyncio
    async def test_duplicate_slug(self, subscription_service: SubscriptionService, plan_payload) -> None:
        await subscription_service.create_plan(plan_payload())
        with pytest.raises(ConflictError):
            await subscription_service.create_plan(plan_payload(name="Other"))

    def test_payload_validation(self, plan_payload) -> None:
        with pytest.raises(ValueError):
            plan_payload(rides_included=None)
        with pytest.raises(ValueError):
            plan_payload(plan_type=PlanType.DISCOUNT, discount_pct=Decimal("0"))
        assert plan_payload(currency="usd").currency == "USD"

    @pytest.mark.asyncio
    async def test_deactivate_plan(self, subscription_service: SubscriptionService, make_plan) -> None:
        plan = make_plan()
        await subscription_service.deactivate_plan(plan.id)

        assert await subscription_service.list_active_plans() == []
        assert [p.status for p in await subscription_service.list_all_plans()] == [PlanStatus.INACTIVE]

        with pytest.raises(NotFoundError):
            await subscription_service.deactivate_plan("missing")


class TestSubscribe:
    """Оформление подписки."""

    @pytest.mark.asyncio
    async def test_paid_subscription(
        self,
        subscription_service: SubscriptionService,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        plan = make_plan()

        view = await subscription_service.subscribe(USER_ID, plan.id, "card_visa")

        sub = view.subscription
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_start == clock.now()
        assert sub.current_period_end == datetime(2026, 4, 15, 12, 0, tzinfo=timezone.utc)
        assert sub.last_payment_date == clock.now()
        assert sub.is_trial_active is False
        assert view.plan.id == plan.id
        assert view.usage.days_remaining == 31
        assert payments.charges == [
            {"user_id": USER_ID, "amount": Decimal("9.99"), "currency": "EUR", "payment_method": "card_visa"}
        ]

    @pytest.mark.asyncio
    async def test_trial_defers_charge(
        self,
        subscription_service: SubscriptionService,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        plan = make_plan(trial_days=7)

        view = await subscription_service.subscribe(USER_ID, plan.id, "card")

        assert payments.charges == []
        assert view.subscription.is_trial_active is True
        assert view.subscription.trial_ends_at == clock.now() + timedelta(days=7)
        assert view.subscription.current_period_end == clock.now() + timedelta(days=7)
        assert view.subscription.last_payment_date is None

    @pytest.mark.asyncio
    async def test_second_live_subscription_rejected(self, subscription_service: SubscriptionService, make_plan) -> None:
        plan = make_plan()
        await subscription_service.subscribe(USER_ID, plan.id, "card")
        with pytest.raises(ConflictError):
            await subscription_service.subscribe(USER_ID, plan.id, "card")

    @pytest.mark.asyncio
    async def test_unknown_and_inactive_plans(self, subscription_service: SubscriptionService, make_plan) -> None:
        with pytest.raises(NotFoundError):
            await subscription_service.subscribe(USER_ID, "missing", "card")

        inactive = make_plan(status=PlanStatus.INACTIVE)
        with pytest.raises(InvalidStateError):
            await subscription_service.subscribe(USER_ID, inactive.id, "card")

    @pytest.mark.asyncio
    async def test_payment_failure_creates_nothing(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
    ) -> None:
        payments.error = PaymentGatewayError("card declined", transient=False)

        with pytest.raises(PaymentFailedError):
            await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        assert subscription_repo.subscriptions == {}

    @pytest.mark.asyncio
    async def test_payment_timeout(
        self,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        service = SubscriptionService(subscription_repo, payments, clock=clock, payment_timeout=0.01)
        payments.delay = 0.5

        with pytest.raises(PaymentFailedError) as exc_info:
            await service.subscribe(USER_ID, make_plan().id, "card")
        assert exc_info.value.cause.transient is True

    @pytest.mark.asyncio
    async def test_persist_failure_after_charge(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
    ) -> None:
        """Списание прошло, запись не сохранилась: ошибка уходит наружу."""
        with patch.object(
            subscription_repo,
            "create_subscription",
            new_callable=AsyncMock,
            side_effect=DependencyUnavailableError("database unavailable"),
        ):
            with pytest.raises(DependencyUnavailableError):
                await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        assert len(payments.charges) == 1


class TestLifecycle:
    """Пауза, возобновление и отмена."""

    @pytest.mark.asyncio
    async def test_pause_resume_cancel(self, subscription_service: SubscriptionService, make_plan, clock) -> None:
        await subscription_service.subscribe(USER_ID, make_plan().id, "card")

        paused = await subscription_service.pause(USER_ID)
        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.paused_at == clock.now()

        with pytest.raises(InvalidStateError, match="not active"):
            await subscription_service.pause(USER_ID)

        resumed = await subscription_service.resume(USER_ID)
        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.paused_at is None

        with pytest.raises(InvalidStateError, match="not paused"):
            await subscription_service.resume(USER_ID)

        cancelled = await subscription_service.cancel(USER_ID, reason="too expensive")
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.auto_renew is False
        assert cancelled.cancel_reason == "too expensive"

        with pytest.raises(NotFoundError):
            await subscription_service.get_subscription(USER_ID)

    @pytest.mark.asyncio
    async def test_cancel_from_paused_then_resubscribe(self, subscription_service: SubscriptionService, make_plan) -> None:
        plan = make_plan()
        await subscription_service.subscribe(USER_ID, plan.id, "card")
        await subscription_service.pause(USER_ID)

        await subscription_service.cancel(USER_ID)
        view = await subscription_service.subscribe(USER_ID, plan.id, "card")

        assert view.subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_no_subscription(self, subscription_service: SubscriptionService) -> None:
        for action in (subscription_service.pause, subscription_service.resume, subscription_service.cancel):
            with pytest.raises(NotFoundError):
                await action(USER_ID)

    @pytest.mark.asyncio
    async def test_concurrent_modification(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        make_plan,
    ) -> None:
        view = await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        stale = view.subscription
        subscription_repo.subscriptions[stale.id] = stale.model_copy(update={"status": SubscriptionStatus.PAST_DUE})

        with patch.object(subscription_repo, "get_live_subscription", new_callable=AsyncMock, return_value=stale):
            with pytest.raises(ConflictError):
                await subscription_service.pause(USER_ID)

    @pytest.mark.asyncio
    async def test_pause_keeps_rides_recorded_meanwhile(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        make_plan,
    ) -> None:
        """Поездки, учтённые между чтением и записью паузы, не теряются."""
        plan = make_plan(plan_type=PlanType.PACKAGE, rides_included=5, discount_pct=Decimal("0"))
        view = await subscription_service.subscribe(USER_ID, plan.id, "card")

        reached = asyncio.Event()
        release = asyncio.Event()
        transition = subscription_repo.transition_subscription

        async def held_transition(*args, **kwargs) -> Subscription:
            reached.set()
            await release.wait()
            return await transition(*args, **kwargs)

        with patch.object(subscription_repo, "transition_subscription", side_effect=held_transition):
            pause = asyncio.create_task(subscription_service.pause(USER_ID))
            await reached.wait()

            finals = [
                await subscription_service.apply_discount(USER_ID, f"ride-{i}", Decimal("12.00"), "economy")
                for i in range(3)
            ]
            release.set()
            paused = await pause

        assert finals == [Decimal("0.00")] * 3
        assert paused.status == SubscriptionStatus.PAUSED
        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.rides_used == len(subscription_repo.usage_logs) == 3
        assert sub.total_saved == Decimal("36.00")


class TestApplyDiscount:
    """Скидка на поездку."""

    @pytest.mark.asyncio
    async def test_discount_applied_and_logged(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        make_plan,
    ) -> None:
        view = await subscription_service.subscribe(USER_ID, make_plan().id, "card")

        final = await subscription_service.apply_discount(USER_ID, "ride-1", Decimal("12.35"), "economy")

        assert final == Decimal("9.88")
        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.rides_used == 1
        assert sub.total_saved == Decimal("2.47")
        log = subscription_repo.usage_logs[0]
        assert log.usage_type == UsageType.RIDE
        assert log.ride_id == "ride-1"
        assert log.discounted_fare == Decimal("9.88")
        assert log.savings_amount == Decimal("2.47")

    @pytest.mark.asyncio
    async def test_no_subscription_returns_quantized_original(self, subscription_service: SubscriptionService) -> None:
        assert await subscription_service.apply_discount(USER_ID, "r", Decimal("10.005"), "economy") == Decimal("10.01")

    @pytest.mark.asyncio
    async def test_negative_fare_rejected(self, subscription_service: SubscriptionService) -> None:
        with pytest.raises(InvalidInputError):
            await subscription_service.apply_discount(USER_ID, "r", Decimal("-1"), "economy")

    @pytest.mark.asyncio
    async def test_paused_subscription_gives_no_discount(self, subscription_service: SubscriptionService, make_plan) -> None:
        await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        await subscription_service.pause(USER_ID)

        assert await subscription_service.apply_discount(USER_ID, "r", Decimal("20.00"), "economy") == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_restrictions(self, subscription_service: SubscriptionService, make_plan) -> None:
        plan = make_plan(allowed_ride_types=["economy"], allowed_cities=["Berlin"], max_distance_km=15.0)
        await subscription_service.subscribe(USER_ID, plan.id, "card")

        apply = subscription_service.apply_discount
        assert await apply(USER_ID, "r1", Decimal("10.00"), "premium") == Decimal("10.00")
        assert await apply(USER_ID, "r2", Decimal("10.00"), "economy", city="Hamburg") == Decimal("10.00")
        assert await apply(USER_ID, "r3", Decimal("10.00"), "economy", distance_km=20.0) == Decimal("10.00")
        assert await apply(USER_ID, "r4", Decimal("10.00"), "economy", city="Berlin", distance_km=5.0) == Decimal("8.00")

    @pytest.mark.asyncio
    async def test_parallel_rides_never_exceed_cap(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        make_plan,
    ) -> None:
        """10 параллельных поездок при лимите 5: ровно 5 со скидкой."""
        plan = make_plan(plan_type=PlanType.PACKAGE, rides_included=5, discount_pct=Decimal("0"))
        view = await subscription_service.subscribe(USER_ID, plan.id, "card")

        finals = await asyncio.gather(
            *(
                subscription_service.apply_discount(USER_ID, f"ride-{i}", Decimal("15.00"), "economy")
                for i in range(10)
            )
        )

        assert finals.count(Decimal("0.00")) == 5
        assert finals.count(Decimal("15.00")) == 5
        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.rides_used == 5
        assert sub.total_saved == Decimal("75.00")
        assert len(subscription_repo.usage_logs) == 5

    @pytest.mark.asyncio
    async def test_trial_rides_cap(self, subscription_service: SubscriptionService, make_plan) -> None:
        plan = make_plan(plan_type=PlanType.PACKAGE, rides_included=10, trial_days=7, trial_rides=2)
        await subscription_service.subscribe(USER_ID, plan.id, "card")

        finals = [
            await subscription_service.apply_discount(USER_ID, f"r{i}", Decimal("8.00"), "economy")
            for i in range(3)
        ]
        assert finals == [Decimal("0.00"), Decimal("0.00"), Decimal("8.00")]

    @pytest.mark.asyncio
    async def test_usage_store_failure_returns_original(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        make_plan,
    ) -> None:
        await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        with patch.object(
            subscription_repo,
            "record_ride_usage",
            new_callable=AsyncMock,
            side_effect=DependencyUnavailableError("database unavailable"),
        ):
            assert await subscription_service.apply_discount(USER_ID, "r", Decimal("10.00"), "economy") == Decimal("10.00")


class TestBenefits:
    """Бесплатные отмены, апгрейды, защита от повышенного спроса."""

    @pytest.mark.asyncio
    async def test_free_cancellations(self, subscription_service: SubscriptionService, make_plan) -> None:
        await subscription_service.subscribe(USER_ID, make_plan(free_cancellations=2).id, "card")

        assert await subscription_service.has_free_cancellation(USER_ID) is True
        assert await subscription_service.use_free_cancellation(USER_ID, "r1") is True
        assert await subscription_service.use_free_cancellation(USER_ID, "r2") is True
        assert await subscription_service.use_free_cancellation(USER_ID, "r3") is False
        assert await subscription_service.has_free_cancellation(USER_ID) is False

    @pytest.mark.asyncio
    async def test_upgrade_without_allowance(self, subscription_service: SubscriptionService, make_plan) -> None:
        await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        assert await subscription_service.use_free_upgrade(USER_ID) is False

    @pytest.mark.asyncio
    async def test_benefit_requires_active_subscription(self, subscription_service: SubscriptionService) -> None:
        with pytest.raises(InvalidStateError):
            await subscription_service.use_free_upgrade(USER_ID)
        assert await subscription_service.has_free_cancellation(USER_ID) is False
        assert await subscription_service.has_surge_protection(USER_ID) == (False, None)
        assert await subscription_service.has_priority_matching(USER_ID) is False

    @pytest.mark.asyncio
    async def test_surge_and_priority(self, subscription_service: SubscriptionService, make_plan) -> None:
        plan = make_plan(
            plan_type=PlanType.PRIORITY,
            surge_protection=True,
            surge_max_cap=Decimal("1.5"),
            priority_matching=True,
        )
        await subscription_service.subscribe(USER_ID, plan.id, "card")

        assert await subscription_service.has_surge_protection(USER_ID) == (True, Decimal("1.5"))
        assert await subscription_service.has_priority_matching(USER_ID) is True

    @pytest.mark.asyncio
    async def test_usage_history(self, subscription_service: SubscriptionService, make_plan, clock) -> None:
        await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        await subscription_service.apply_discount(USER_ID, "first", Decimal("10.00"), "economy")
        clock.advance(minutes=5)
        await subscription_service.apply_discount(USER_ID, "second", Decimal("10.00"), "economy")

        history = await subscription_service.get_usage_history(USER_ID, limit=10, offset=0)
        assert [u.ride_id for u in history] == ["second", "first"]

        with pytest.raises(InvalidInputError):
            await subscription_service.get_usage_history(USER_ID, limit=0)

    @pytest.mark.asyncio
    async def test_usage_summary(self, make_plan, clock) -> None:
        plan = make_plan(plan_type=PlanType.PACKAGE, rides_included=10, free_upgrades=2)
        sub = Subscription(
            id="s1",
            user_id=USER_ID,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=clock.now(),
            current_period_end=clock.now() + timedelta(days=10, hours=5),
            rides_used=3,
            upgrades_used=3,
            payment_method="card",
        )
        usage = build_usage_summary(sub, plan, clock.now())

        assert usage.rides_remaining == 7
        assert usage.utilization_pct == 30.0
        assert usage.upgrades_left == 0
        assert usage.days_remaining == 10


class TestComparePlans:
    """Сравнение планов по истории трат."""

    @pytest.mark.asyncio
    async def test_compare_uses_spend_history(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        make_plan,
    ) -> None:
        cheap = make_plan(price=Decimal("9.99"), discount_pct=Decimal("20"))
        make_plan(price=Decimal("29.99"), discount_pct=Decimal("25"), status=PlanStatus.INACTIVE)
        subscription_repo.monthly_spend[USER_ID] = Decimal("200.00")

        result = await subscription_service.compare_plans(USER_ID)

        assert [p.id for p in result.plans] == [cheap.id]
        assert result.best_plan_id == cheap.id
        assert result.estimated_savings[cheap.id] == Decimal("30.01")

    @pytest.mark.asyncio
    async def test_compare_without_history(self, subscription_service: SubscriptionService, make_plan) -> None:
        make_plan()
        result = await subscription_service.compare_plans(OTHER_USER)
        assert result.best_plan_id is None
        assert result.avg_monthly_spend == Decimal("0.00")


class TestRenewals:
    """Продление подписок."""

    @pytest.mark.asyncio
    async def test_renews_due_subscription(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        view = await subscription_service.subscribe(USER_ID, make_plan(free_cancellations=1).id, "card")
        await subscription_service.apply_discount(USER_ID, "r", Decimal("10.00"), "economy")
        await subscription_service.use_free_cancellation(USER_ID)

        # Период ещё не истёк
        assert (await subscription_service.process_renewals()).processed == 0

        clock.advance(days=31)
        summary = await subscription_service.process_renewals()

        assert summary.processed == 1
        assert summary.renewed == 1
        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.current_period_start == clock.now()
        assert sub.current_period_end == datetime(2026, 5, 15, 12, 0, tzinfo=timezone.utc)
        assert sub.rides_used == 0
        assert sub.cancellations_used == 0
        assert sub.total_saved == Decimal("2.00")
        assert len(payments.charges) == 2

    @pytest.mark.asyncio
    async def test_no_auto_renew_expires(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        view = await subscription_service.subscribe(USER_ID, make_plan().id, "card", auto_renew=False)
        clock.advance(days=31)

        summary = await subscription_service.process_renewals()

        assert summary.expired == 1
        assert subscription_repo.subscriptions[view.subscription.id].status == SubscriptionStatus.EXPIRED
        assert len(payments.charges) == 1

    @pytest.mark.asyncio
    async def test_transient_failures_lead_to_past_due(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        view = await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        sub_id = view.subscription.id
        clock.advance(days=31)
        payments.error = PaymentGatewayError("gateway timeout", transient=True)

        for expected_failures, expected_status in (
            (1, SubscriptionStatus.ACTIVE),
            (2, SubscriptionStatus.ACTIVE),
            (3, SubscriptionStatus.PAST_DUE),
        ):
            summary = await subscription_service.process_renewals()
            assert summary.failed == 1
            sub = subscription_repo.subscriptions[sub_id]
            assert sub.failed_payments == expected_failures
            assert sub.status == expected_status

        # past_due: скидки не действуют, продление продолжает попытки
        assert await subscription_service.apply_discount(USER_ID, "r", Decimal("10.00"), "economy") == Decimal("10.00")

        payments.error = None
        summary = await subscription_service.process_renewals()
        assert summary.renewed == 1
        sub = subscription_repo.subscriptions[sub_id]
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.failed_payments == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_is_immediately_past_due(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        view = await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        clock.advance(days=31)
        payments.error = PaymentGatewayError("card expired", transient=False)

        await subscription_service.process_renewals()

        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.status == SubscriptionStatus.PAST_DUE
        assert sub.failed_payments == 1

    @pytest.mark.asyncio
    async def test_failed_renewal_keeps_rides_recorded_during_charge(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        plan = make_plan(plan_type=PlanType.PACKAGE, rides_included=5, discount_pct=Decimal("0"))
        view = await subscription_service.subscribe(USER_ID, plan.id, "card")
        clock.advance(days=31)

        reached = asyncio.Event()
        release = asyncio.Event()

        async def declined_charge(*args, **kwargs) -> None:
            reached.set()
            await release.wait()
            raise PaymentGatewayError("gateway timeout", transient=True)

        with patch.object(payments, "charge_subscription", side_effect=declined_charge):
            renewal = asyncio.create_task(subscription_service.process_renewals())
            await reached.wait()
            final = await subscription_service.apply_discount(USER_ID, "ride-1", Decimal("9.00"), "economy")
            release.set()
            summary = await renewal

        assert final == Decimal("0.00")
        assert summary.failed == 1
        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.failed_payments == 1
        assert sub.rides_used == 1

    @pytest.mark.asyncio
    async def test_overlapping_passes_renew_once(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        """Второй проход списал деньги, но период уже продлён: нужен возврат."""
        view = await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        clock.advance(days=31)

        reached = asyncio.Event()
        release = asyncio.Event()
        charge = payments.charge_subscription

        async def held_charge(*args, **kwargs) -> None:
            if not reached.is_set():
                reached.set()
                await release.wait()
            await charge(*args, **kwargs)

        with patch.object(payments, "charge_subscription", side_effect=held_charge):
            with patch("src.core.subscriptions.service.log_error", new_callable=AsyncMock) as mock_log:
                slow_pass = asyncio.create_task(subscription_service.process_renewals())
                await reached.wait()
                fast = await subscription_service.process_renewals()
                release.set()
                slow = await slow_pass

        assert fast.renewed == 1
        assert slow.skipped == 1
        assert len(payments.charges) == 3
        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.current_period_end == datetime(2026, 5, 15, 12, 0, tzinfo=timezone.utc)

        refunds = [
            call.kwargs["extra"] for call in mock_log.await_args_list
            if call.kwargs.get("extra", {}).get("refund_required")
        ]
        assert refunds == [
            {"user_id": USER_ID, "subscription_id": view.subscription.id, "amount": "9.99", "refund_required": True}
        ]

    @pytest.mark.asyncio
    async def test_trial_conversion(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        view = await subscription_service.subscribe(USER_ID, make_plan(trial_days=7).id, "card")
        clock.advance(days=7)

        summary = await subscription_service.process_renewals()

        assert summary.renewed == 1
        sub = subscription_repo.subscriptions[view.subscription.id]
        assert sub.is_trial_active is False
        assert sub.last_payment_date == clock.now()
        assert len(payments.charges) == 1

    @pytest.mark.asyncio
    async def test_inactive_plan_skipped(
        self,
        subscription_service: SubscriptionService,
        payments: FakePaymentProcessor,
        make_plan,
        clock,
    ) -> None:
        plan = make_plan()
        await subscription_service.subscribe(USER_ID, plan.id, "card")
        await subscription_service.deactivate_plan(plan.id)
        clock.advance(days=31)

        summary = await subscription_service.process_renewals()

        assert summary.skipped == 1
        assert len(payments.charges) == 1

    @pytest.mark.asyncio
    async def test_errors_do_not_abort_pass(
        self,
        subscription_service: SubscriptionService,
        subscription_repo: InMemorySubscriptionRepository,
        make_plan,
        clock,
    ) -> None:
        plan = make_plan()
        await subscription_service.subscribe(USER_ID, plan.id, "card")
        await subscription_service.subscribe(OTHER_USER, plan.id, "card")
        clock.advance(days=31)

        with patch.object(
            subscription_repo,
            "renew_subscription",
            new_callable=AsyncMock,
            side_effect=ConflictError("subscription was modified concurrently"),
        ):
            summary = await subscription_service.process_renewals()

        assert summary.processed == 2
        assert summary.skipped == 2

    @pytest.mark.asyncio
    async def test_stop_event_checked_between_subscriptions(
        self,
        subscription_service: SubscriptionService,
        make_plan,
        clock,
    ) -> None:
        await subscription_service.subscribe(USER_ID, make_plan().id, "card")
        clock.advance(days=31)
        stop = asyncio.Event()
        stop.set()

        summary = await subscription_service.process_renewals(stop_event=stop)
        assert summary.processed == 0
