# src/services/subscriptions/admin_routes.py
"""
Маршруты администратора: управление каталогом планов.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from src.core.subscriptions import SubscriptionService
from src.core.subscriptions.models import PlanCreate
from src.services.subscriptions.dependencies import get_subscription_service
from src.shared.auth import require_admin
from src.shared.http import parse_id, success


router = APIRouter(
    prefix="/admin/subscriptions",
    tags=["Admin: Subscriptions"],
    dependencies=[Depends(require_admin)],
)


@router.get("/plans")
async def list_all_plans(
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    """Все планы, включая неактивные."""
    return success({"plans": await service.list_all_plans()})


@router.post("/plans")
async def create_plan(
    payload: PlanCreate,
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    return success(await service.create_plan(payload))


@router.post("/plans/{plan_id}/deactivate")
async def deactivate_plan(
    plan_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    await service.deactivate_plan(parse_id(plan_id, "plan"))
    return success({"message": "Plan deactivated"})
