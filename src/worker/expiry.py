# src/worker/expiry.py
"""
Воркер истечения документов.
"""

from __future__ import annotations

import asyncio

from src.core.documents.service import DocumentService
from src.worker.base import PollingWorker


class DocumentExpiryWorker(PollingWorker):
    """Переводит одобренные документы с прошедшим сроком действия в expired."""

    def __init__(self, service: DocumentService, interval: float = 3600.0, batch_size: int = 100) -> None:
        super().__init__(interval)
        self._service = service
        self.batch_size = batch_size

    @property
    def name(self) -> str:
        return "DocumentExpiryWorker"

    async def run_once(self, stop_event: asyncio.Event) -> int:
        return await self._service.expire_documents(batch_size=self.batch_size)
