# src/worker/renewal.py
"""
Воркер продления подписок.
"""

from __future__ import annotations

import asyncio

from src.core.subscriptions.service import SubscriptionService
from src.worker.base import PollingWorker


class RenewalWorker(PollingWorker):
    """Периодически продлевает подписки с истёкшим периодом."""

    def __init__(self, service: SubscriptionService, interval: float = 300.0, batch_size: int = 100) -> None:
        super().__init__(interval)
        self._service = service
        self.batch_size = batch_size

    @property
    def name(self) -> str:
        return "RenewalWorker"

    async def run_once(self, stop_event: asyncio.Event) -> int:
        summary = await self._service.process_renewals(batch_size=self.batch_size, stop_event=stop_event)
        return summary.processed
