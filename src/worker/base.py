# src/worker/base.py
"""
Базовый класс для фоновых воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from src.common.logger import log_info, log_error
from src.common.constants import TypeMsg


class PollingWorker(ABC):
    """
    Воркер, который по таймеру забирает и обрабатывает порцию работы.

    run_once() получает stop_event и должен проверять его между элементами
    порции; текущий элемент всегда доделывается до конца. Ошибки прохода
    логируются и не останавливают цикл.
    """

    def __init__(self, interval: float) -> None:
        """
        Args:
            interval: Пауза между проходами, сек
        """
        self.interval = interval
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""
        pass

    @abstractmethod
    async def run_once(self, stop_event: asyncio.Event) -> int:
        """
        Один проход.

        Returns:
            Количество обработанных элементов
        """
        pass

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Запускает цикл воркера в фоновой задаче."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        await log_info(f"Воркер {self.name} запущен (интервал {self.interval}с)", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер, дожидаясь завершения текущего элемента."""
        if self._task is None:
            return

        self._stop_event.set()
        await self._task
        self._task = None
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                processed = await self.run_once(self._stop_event)
                if processed:
                    await log_info(
                        f"Воркер {self.name}: обработано {processed}",
                        type_msg=TypeMsg.DEBUG,
                    )
            except Exception as e:
                await log_error(f"Ошибка в воркере {self.name}: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
