# src/infra/payments.py
"""
Списание оплаты за подписку.

PaymentProcessor: порт. HttpPaymentProcessor: клиент сервиса платежей.
Таймауты и 5xx считаются временными ошибками (повтор при следующем продлении),
4xx считаются постоянными.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

import httpx

from src.common.logger import log_error, log_info, log_warning


class PaymentGatewayError(Exception):
    """Ошибка платёжного шлюза."""

    def __init__(self, message: str, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class PaymentProcessor(ABC):
    """Port: списание средств за подписку."""

    @abstractmethod
    async def charge_subscription(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        payment_method: str,
    ) -> None:
        """Списывает сумму; при неудаче поднимает PaymentGatewayError."""
        ...


class HttpPaymentProcessor(PaymentProcessor):
    """Клиент payments service поверх httpx."""

    CHARGE_PATH = "/api/v1/payments/subscriptions/charge"

    def __init__(self, base_url: str, timeout: float = 30.0, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self.client.aclose()

    async def charge_subscription(
        self,
        user_id: str,
        amount: Decimal,
        currency: str,
        payment_method: str,
    ) -> None:
        payload = {
            "user_id": user_id,
            "amount": str(amount),
            "currency": currency,
            "payment_method": payment_method,
        }
        try:
            response = await self.client.post(self.CHARGE_PATH, json=payload)
        except httpx.TimeoutException as e:
            await log_warning(f"Таймаут платёжного шлюза для пользователя {user_id}")
            raise PaymentGatewayError("payment gateway timeout", transient=True) from e
        except httpx.HTTPError as e:
            await log_error(f"Платёжный шлюз недоступен: {e}")
            raise PaymentGatewayError("payment gateway unavailable", transient=True) from e

        if response.status_code >= 500:
            await log_error(
                f"Платёжный шлюз вернул {response.status_code}",
                extra={"user_id": user_id, "body": response.text[:500]},
            )
            raise PaymentGatewayError(f"gateway error {response.status_code}", transient=True)
        if response.status_code >= 400:
            await log_warning(
                f"Списание отклонено ({response.status_code}) для пользователя {user_id}",
                extra={"body": response.text[:500]},
            )
            raise PaymentGatewayError(f"charge declined {response.status_code}", transient=False)

        await log_info(
            f"Списание подписки выполнено: {amount} {currency}",
            extra={"user_id": user_id},
        )


def create_payment_processor() -> HttpPaymentProcessor:
    """Создаёт клиент платёжного сервиса по настройкам."""
    from src.config import settings

    return HttpPaymentProcessor(
        base_url=settings.deployment.payments_base_url,
        timeout=settings.subscriptions.PAYMENT_TIMEOUT,
    )
