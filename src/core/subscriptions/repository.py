# src/core/subscriptions/repository.py
"""
Репозиторий подписок.

SubscriptionRepository: порт доступа к данным, PostgresSubscriptionRepository:
реализация на asyncpg. Учёт использования выполняется одним условным UPDATE,
поэтому параллельные поездки не могут превысить лимит плана.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from asyncpg import Record

from src.common.constants import (
    LIVE_SUBSCRIPTION_STATUSES,
    RENEWABLE_SUBSCRIPTION_STATUSES,
    PlanStatus,
    SubscriptionStatus,
    TypeMsg,
    UsageType,
)
from src.common.errors import ConflictError, NotFoundError
from src.common.logger import log_info
from src.core.subscriptions.models import (
    Subscription,
    SubscriptionPlan,
    SubscriptionUsageLog,
)
from src.infra.database import DatabaseManager, db_errors


# Счётчик подписки для каждого вида бесплатного преимущества
BENEFIT_COUNTERS = {
    UsageType.UPGRADE: "upgrades_used",
    UsageType.CANCELLATION: "cancellations_used",
}

# Колонки, которые меняет смена статуса; счётчики использования сюда не входят
TRANSITION_COLUMNS = frozenset({"paused_at", "cancelled_at", "cancel_reason", "auto_renew", "is_trial_active"})


class SubscriptionRepository(ABC):
    """Port: хранение планов, подписок и журнала использования."""

    # --- Планы ---

    @abstractmethod
    async def create_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """Raises ConflictError, если slug уже занят."""
        ...

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        ...

    @abstractmethod
    async def get_plan_by_slug(self, slug: str) -> Optional[SubscriptionPlan]:
        ...

    @abstractmethod
    async def list_plans(self, only_active: bool = True) -> list[SubscriptionPlan]:
        """Планы в порядке display_order, затем цены."""
        ...

    @abstractmethod
    async def update_plan_status(self, plan_id: str, status: PlanStatus, now: datetime) -> None:
        """Raises NotFoundError, если плана нет."""
        ...

    # --- Подписки ---

    @abstractmethod
    async def create_subscription(self, subscription: Subscription) -> Subscription:
        """Raises ConflictError, если у пользователя уже есть живая подписка."""
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    @abstractmethod
    async def get_live_subscription(self, user_id: str) -> Optional[Subscription]:
        """Подписка пользователя в статусе active, paused или past_due."""
        ...

    @abstractmethod
    async def transition_subscription(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        status: SubscriptionStatus,
        now: datetime,
        **changes: Any,
    ) -> Subscription:
        """
        CAS-смена статуса; меняются только status, updated_at и колонки из TRANSITION_COLUMNS.

        Raises:
            NotFoundError: подписки нет
            ConflictError: статус изменился с момента чтения
        """
        ...

    @abstractmethod
    async def record_payment_failure(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        expected_period_end: datetime,
        max_failed_payments: int,
        force_past_due: bool,
        now: datetime,
    ) -> Subscription:
        """
        Инкремент failed_payments; при достижении порога или force_past_due статус past_due.

        Raises:
            NotFoundError: подписки нет
            ConflictError: подписку изменили или уже продлили
        """
        ...

    @abstractmethod
    async def renew_subscription(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        expected_period_end: datetime,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> Subscription:
        """
        Новый оплаченный период: счётчики обнуляются, статус active.

        Raises:
            NotFoundError: подписки нет
            ConflictError: подписку изменили или уже продлили
        """
        ...

    @abstractmethod
    async def record_ride_usage(
        self,
        subscription_id: str,
        rides_cap: Optional[int],
        usage_log: SubscriptionUsageLog,
    ) -> bool:
        """
        Атомарно: rides_used += 1, total_saved += savings и запись в журнал,
        только если подписка активна и rides_used < rides_cap.

        Returns:
            True, если поездка засчитана
        """
        ...

    @abstractmethod
    async def record_benefit_usage(
        self,
        subscription_id: str,
        usage_type: UsageType,
        cap: int,
        usage_log: SubscriptionUsageLog,
    ) -> bool:
        """Атомарный учёт бесплатного апгрейда или отмены в пределах cap."""
        ...

    @abstractmethod
    async def list_due_subscriptions(self, now: datetime, limit: int) -> list[Subscription]:
        """Подписки active/past_due с current_period_end <= now."""
        ...

    @abstractmethod
    async def list_usage_logs(self, subscription_id: str, limit: int, offset: int) -> list[SubscriptionUsageLog]:
        ...

    @abstractmethod
    async def get_average_monthly_spend(self, user_id: str, since: datetime, window_days: int) -> Decimal:
        """Средняя месячная трата на завершённые поездки с момента since."""
        ...


# =============================================================================
# POSTGRESQL
# =============================================================================

_PLAN_COLUMNS = """
    id, name, slug, description, plan_type, billing_period, price, currency, status,
    rides_included, max_ride_value, discount_pct, allowed_ride_types, allowed_cities,
    max_distance_km, priority_matching, free_upgrades, free_cancellations,
    surge_protection, surge_max_cap, popular_badge, savings_label, display_order,
    trial_days, trial_rides, created_at, updated_at
"""

_SUBSCRIPTION_COLUMNS = """
    id, user_id, plan_id, status, current_period_start, current_period_end,
    rides_used, upgrades_used, cancellations_used, failed_payments, total_saved,
    payment_method, auto_renew, last_payment_date, next_billing_date,
    is_trial_active, trial_ends_at, activated_at, paused_at, cancelled_at,
    cancel_reason, created_at, updated_at
"""

_USAGE_COLUMNS = """
    id, subscription_id, ride_id, usage_type, original_fare, discounted_fare,
    savings_amount, created_at
"""


def _row_to_plan(row: Record) -> SubscriptionPlan:
    data = dict(row)
    data["id"] = str(data["id"])
    data["allowed_ride_types"] = list(data["allowed_ride_types"] or [])
    data["allowed_cities"] = list(data["allowed_cities"] or [])
    return SubscriptionPlan(**data)


def _row_to_subscription(row: Record) -> Subscription:
    data = dict(row)
    for key in ("id", "user_id", "plan_id"):
        data[key] = str(data[key])
    return Subscription(**data)


def _row_to_usage(row: Record) -> SubscriptionUsageLog:
    data = dict(row)
    data["id"] = str(data["id"])
    data["subscription_id"] = str(data["subscription_id"])
    data["ride_id"] = str(data["ride_id"]) if data["ride_id"] is not None else None
    return SubscriptionUsageLog(**data)


class PostgresSubscriptionRepository(SubscriptionRepository):
    """Реализация репозитория подписок на PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # -------------------------------------------------------------------------
    # Планы
    # -------------------------------------------------------------------------

    async def create_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        async with db_errors("create_plan"):
            row = await self._db.fetchrow(
                f"""
                INSERT INTO subscription_plans (
                    id, name, slug, description, plan_type, billing_period, price, currency, status,
                    rides_included, max_ride_value, discount_pct, allowed_ride_types, allowed_cities,
                    max_distance_km, priority_matching, free_upgrades, free_cancellations,
                    surge_protection, surge_max_cap, popular_badge, savings_label, display_order,
                    trial_days, trial_rides, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16,
                        $17, $18, $19, $20, $21, $22, $23, $24, $25, $26, $26)
                RETURNING {_PLAN_COLUMNS}
                """,
                plan.id,
                plan.name,
                plan.slug,
                plan.description,
                plan.plan_type.value,
                plan.billing_period.value,
                plan.price,
                plan.currency,
                plan.status.value,
                plan.rides_included,
                plan.max_ride_value,
                plan.discount_pct,
                plan.allowed_ride_types,
                plan.allowed_cities,
                plan.max_distance_km,
                plan.priority_matching,
                plan.free_upgrades,
                plan.free_cancellations,
                plan.surge_protection,
                plan.surge_max_cap,
                plan.popular_badge,
                plan.savings_label,
                plan.display_order,
                plan.trial_days,
                plan.trial_rides,
                plan.created_at,
            )
        return _row_to_plan(row)

    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        async with db_errors("get_plan"):
            row = await self._db.fetchrow(f"SELECT {_PLAN_COLUMNS} FROM subscription_plans WHERE id = $1", plan_id)
        return _row_to_plan(row) if row else None

    async def get_plan_by_slug(self, slug: str) -> Optional[SubscriptionPlan]:
        async with db_errors("get_plan_by_slug"):
            row = await self._db.fetchrow(f"SELECT {_PLAN_COLUMNS} FROM subscription_plans WHERE slug = $1", slug)
        return _row_to_plan(row) if row else None

    async def list_plans(self, only_active: bool = True) -> list[SubscriptionPlan]:
        async with db_errors("list_plans"):
            rows = await self._db.fetch(
                f"""
                SELECT {_PLAN_COLUMNS}
                FROM subscription_plans
                WHERE status = 'active' OR NOT $1
                ORDER BY display_order, price
                """,
                only_active,
            )
        return [_row_to_plan(r) for r in rows]

    async def update_plan_status(self, plan_id: str, status: PlanStatus, now: datetime) -> None:
        async with db_errors("update_plan_status"):
            updated = await self._db.fetchval(
                "UPDATE subscription_plans SET status = $2, updated_at = $3 WHERE id = $1 RETURNING id",
                plan_id,
                status.value,
                now,
            )
        if updated is None:
            raise NotFoundError("plan not found")

    # -------------------------------------------------------------------------
    # Подписки
    # -------------------------------------------------------------------------

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        s = subscription
        async with db_errors("create_subscription"):
            row = await self._db.fetchrow(
                f"""
                INSERT INTO subscriptions (
                    id, user_id, plan_id, status, current_period_start, current_period_end,
                    rides_used, upgrades_used, cancellations_used, failed_payments, total_saved,
                    payment_method, auto_renew, last_payment_date, next_billing_date,
                    is_trial_active, trial_ends_at, activated_at, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                        $16, $17, $18, $19, $19)
                RETURNING {_SUBSCRIPTION_COLUMNS}
                """,
                s.id,
                s.user_id,
                s.plan_id,
                s.status.value,
                s.current_period_start,
                s.current_period_end,
                s.rides_used,
                s.upgrades_used,
                s.cancellations_used,
                s.failed_payments,
                s.total_saved,
                s.payment_method,
                s.auto_renew,
                s.last_payment_date,
                s.next_billing_date,
                s.is_trial_active,
                s.trial_ends_at,
                s.activated_at,
                s.created_at,
            )
        return _row_to_subscription(row)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        async with db_errors("get_subscription"):
            row = await self._db.fetchrow(
                f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = $1",
                subscription_id,
            )
        return _row_to_subscription(row) if row else None

    async def get_live_subscription(self, user_id: str) -> Optional[Subscription]:
        async with db_errors("get_live_subscription"):
            row = await self._db.fetchrow(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM subscriptions
                WHERE user_id = $1 AND status = ANY($2::text[])
                ORDER BY created_at DESC
                LIMIT 1
                """,
                user_id,
                [s.value for s in LIVE_SUBSCRIPTION_STATUSES],
            )
        return _row_to_subscription(row) if row else None

    async def _conditional_update(self, operation: str, subscription_id: str, query: str, *args: Any) -> Subscription:
        """UPDATE ... RETURNING; пустой результат различается на NotFound и Conflict."""
        async with db_errors(operation):
            row = await self._db.fetchrow(query, subscription_id, *args)
            if row is None:
                exists = await self._db.fetchval("SELECT 1 FROM subscriptions WHERE id = $1", subscription_id)
                if exists is None:
                    raise NotFoundError("subscription not found")
                raise ConflictError("subscription was modified concurrently")
        return _row_to_subscription(row)

    async def transition_subscription(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        status: SubscriptionStatus,
        now: datetime,
        **changes: Any,
    ) -> Subscription:
        unknown = set(changes) - TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Недопустимые колонки для смены статуса: {sorted(unknown)}")

        columns = sorted(changes)
        assignments = "".join(f", {column} = ${i}" for i, column in enumerate(columns, start=5))
        return await self._conditional_update(
            "transition_subscription",
            subscription_id,
            f"""
            UPDATE subscriptions
            SET status = $3, updated_at = $4{assignments}
            WHERE id = $1 AND status = $2
            RETURNING {_SUBSCRIPTION_COLUMNS}
            """,
            expected_status.value,
            status.value,
            now,
            *(changes[column] for column in columns),
        )

    async def record_payment_failure(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        expected_period_end: datetime,
        max_failed_payments: int,
        force_past_due: bool,
        now: datetime,
    ) -> Subscription:
        return await self._conditional_update(
            "record_payment_failure",
            subscription_id,
            f"""
            UPDATE subscriptions
            SET failed_payments = failed_payments + 1,
                status = CASE
                    WHEN $4 OR failed_payments + 1 >= $5 THEN $6
                    ELSE status
                END,
                is_trial_active = FALSE,
                updated_at = $7
            WHERE id = $1 AND status = $2 AND current_period_end = $3
            RETURNING {_SUBSCRIPTION_COLUMNS}
            """,
            expected_status.value,
            expected_period_end,
            force_past_due,
            max_failed_payments,
            SubscriptionStatus.PAST_DUE.value,
            now,
        )

    async def renew_subscription(
        self,
        subscription_id: str,
        expected_status: SubscriptionStatus,
        expected_period_end: datetime,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> Subscription:
        return await self._conditional_update(
            "renew_subscription",
            subscription_id,
            f"""
            UPDATE subscriptions
            SET status = $4,
                current_period_start = $5,
                current_period_end = $6,
                next_billing_date = $6,
                rides_used = 0,
                upgrades_used = 0,
                cancellations_used = 0,
                failed_payments = 0,
                is_trial_active = FALSE,
                last_payment_date = $7,
                updated_at = $7
            WHERE id = $1 AND status = $2 AND current_period_end = $3
            RETURNING {_SUBSCRIPTION_COLUMNS}
            """,
            expected_status.value,
            expected_period_end,
            SubscriptionStatus.ACTIVE.value,
            period_start,
            period_end,
            now,
        )

    @staticmethod
    async def _insert_usage(conn: Any, usage_log: SubscriptionUsageLog) -> None:
        await conn.execute(
            """
            INSERT INTO subscription_usage_logs (
                id, subscription_id, ride_id, usage_type, original_fare,
                discounted_fare, savings_amount, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            usage_log.id,
            usage_log.subscription_id,
            usage_log.ride_id,
            usage_log.usage_type.value,
            usage_log.original_fare,
            usage_log.discounted_fare,
            usage_log.savings_amount,
            usage_log.created_at,
        )

    async def record_ride_usage(
        self,
        subscription_id: str,
        rides_cap: Optional[int],
        usage_log: SubscriptionUsageLog,
    ) -> bool:
        async with db_errors("record_ride_usage"):
            async with self._db.transaction() as conn:
                # Условный UPDATE берёт блокировку строки: лимит не превышается
                updated = await conn.fetchval(
                    """
                    UPDATE subscriptions
                    SET rides_used = rides_used + 1,
                        total_saved = total_saved + $3,
                        updated_at = $4
                    WHERE id = $1 AND status = 'active'
                      AND ($2::int IS NULL OR rides_used < $2::int)
                    RETURNING id
                    """,
                    subscription_id,
                    rides_cap,
                    usage_log.savings_amount,
                    usage_log.created_at,
                )
                if updated is None:
                    return False
                await self._insert_usage(conn, usage_log)

        await log_info(
            f"Поездка засчитана по подписке {subscription_id}",
            type_msg=TypeMsg.DEBUG,
            extra={"ride_id": usage_log.ride_id, "savings": str(usage_log.savings_amount)},
        )
        return True

    async def record_benefit_usage(
        self,
        subscription_id: str,
        usage_type: UsageType,
        cap: int,
        usage_log: SubscriptionUsageLog,
    ) -> bool:
        column = BENEFIT_COUNTERS[usage_type]
        async with db_errors("record_benefit_usage"):
            async with self._db.transaction() as conn:
                updated = await conn.fetchval(
                    f"""
                    UPDATE subscriptions
                    SET {column} = {column} + 1, updated_at = $3
                    WHERE id = $1 AND status = 'active' AND {column} < $2
                    RETURNING id
                    """,
                    subscription_id,
                    cap,
                    usage_log.created_at,
                )
                if updated is None:
                    return False
                await self._insert_usage(conn, usage_log)
        return True

    async def list_due_subscriptions(self, now: datetime, limit: int) -> list[Subscription]:
        async with db_errors("list_due_subscriptions"):
            rows = await self._db.fetch(
                f"""
                SELECT {_SUBSCRIPTION_COLUMNS}
                FROM subscriptions
                WHERE status = ANY($1::text[]) AND current_period_end <= $2
                ORDER BY current_period_end ASC
                LIMIT $3
                """,
                [s.value for s in RENEWABLE_SUBSCRIPTION_STATUSES],
                now,
                limit,
            )
        return [_row_to_subscription(r) for r in rows]

    async def list_usage_logs(self, subscription_id: str, limit: int, offset: int) -> list[SubscriptionUsageLog]:
        async with db_errors("list_usage_logs"):
            rows = await self._db.fetch(
                f"""
                SELECT {_USAGE_COLUMNS}
                FROM subscription_usage_logs
                WHERE subscription_id = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
                """,
                subscription_id,
                limit,
                offset,
            )
        return [_row_to_usage(r) for r in rows]

    async def get_average_monthly_spend(self, user_id: str, since: datetime, window_days: int) -> Decimal:
        async with db_errors("get_average_monthly_spend"):
            total = await self._db.fetchval(
                """
                SELECT COALESCE(SUM(final_fare), 0)
                FROM rides
                WHERE rider_id = $1 AND status = 'completed' AND completed_at >= $2
                """,
                user_id,
                since,
            )
        months = Decimal(max(window_days, 1)) / Decimal(30)
        return Decimal(total or 0) / months
