# src/services/subscriptions/routes.py
"""
Маршруты пассажира: каталог планов, оформление и управление подпиской.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.core.subscriptions import SubscriptionService
from src.core.subscriptions.models import SubscribeRequest
from src.services.subscriptions.dependencies import get_subscription_service
from src.shared.auth import Caller, require_user
from src.shared.http import pagination_params, parse_id, success
from src.shared.models.common import PaginationParams


router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


@router.get("/plans")
async def list_plans(
    pagination: PaginationParams = Depends(pagination_params),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    """Активные планы в порядке отображения."""
    plans = await service.list_active_plans()
    page = plans[pagination.offset:pagination.offset + pagination.limit]
    return success({"plans": page}, meta=pagination.meta(len(plans)))


@router.get("/compare")
async def compare_plans(
    caller: Caller = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    """Сравнение планов с фактическими тратами пользователя."""
    comparison = await service.compare_plans(caller.user_id)
    return success(comparison)


@router.post("")
async def subscribe(
    request: SubscribeRequest,
    caller: Caller = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    view = await service.subscribe(
        caller.user_id,
        parse_id(request.plan_id, "plan"),
        request.payment_method,
        auto_renew=request.auto_renew,
    )
    return success(view)


@router.get("/me")
async def get_my_subscription(
    caller: Caller = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    return success(await service.get_subscription(caller.user_id))


@router.post("/me/pause")
async def pause_subscription(
    caller: Caller = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    return success(await service.pause(caller.user_id))


@router.post("/me/resume")
async def resume_subscription(
    caller: Caller = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    return success(await service.resume(caller.user_id))


@router.delete("/me")
async def cancel_subscription(
    request: Optional[CancelRequest] = Body(None),
    caller: Caller = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    """Отмена подписки; причина необязательна."""
    reason = request.reason if request is not None else None
    return success(await service.cancel(caller.user_id, reason))


@router.get("/me/usage")
async def get_my_usage(
    pagination: PaginationParams = Depends(pagination_params),
    caller: Caller = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    logs = await service.get_usage_history(caller.user_id, pagination.limit, pagination.offset)
    return success({"usage": logs})
