#!/usr/bin/env python3
# main.py
"""
Главная точка входа платформы.
Запускает Documents Service, Subscriptions Service или воркеры в зависимости от режима.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db


VALID_MODES = ("documents_service", "subscriptions_service", "worker", "all")

_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def _serve(app_path: str, port: int, title: str) -> None:
    """Запускает uvicorn сервер приложения."""
    import uvicorn

    await log_info(f"Запуск {title} на порту {port}...", type_msg=TypeMsg.INFO)

    config = uvicorn.Config(
        app_path,
        host="0.0.0.0",
        port=port,
        log_level="debug" if settings.system.DEBUG else "info",
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info(f"{title}: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_documents_service() -> None:
    """Documents Service (загрузка и проверка документов)."""
    await _serve(
        "src.services.documents.app:app",
        settings.deployment.DOCUMENTS_SERVICE_PORT,
        "Documents Service",
    )


async def run_subscriptions_service() -> None:
    """Subscriptions Service (планы, подписки, скидки)."""
    await _serve(
        "src.services.subscriptions.app:app",
        settings.deployment.SUBSCRIPTIONS_SERVICE_PORT,
        "Subscriptions Service",
    )


async def run_worker(init_infra: bool = True) -> None:
    """OCR, продление подписок и истечение документов."""
    from src.worker.runner import run_workers
    await run_workers(init_infra=init_infra)


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (documents_service, subscriptions_service, worker, all).
              Если None, берётся COMPONENT_MODE из настроек.
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    if mode is None:
        mode = settings.system.COMPONENT_MODE
    if mode not in VALID_MODES:
        await log_error(f"Неизвестный режим: {mode}")
        return

    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    owns_db = False
    try:
        if mode == "documents_service":
            await run_documents_service()
        elif mode == "subscriptions_service":
            await run_subscriptions_service()
        elif mode == "worker":
            await run_worker()
        else:
            # Общий пул БД для всех компонентов процесса
            await init_db()
            owns_db = True

            _running_tasks = [
                asyncio.create_task(run_documents_service()),
                asyncio.create_task(run_subscriptions_service()),
                asyncio.create_task(run_worker(init_infra=False)),
            ]
            try:
                await asyncio.gather(*_running_tasks, return_exceptions=True)
            except asyncio.CancelledError:
                await log_info("Отмена всех компонентов...", type_msg=TypeMsg.INFO)
                for task in _running_tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*_running_tasks, return_exceptions=True)
                raise

    except asyncio.CancelledError:
        await log_info("Задача отменена, выполняется graceful shutdown", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        if _running_tasks:
            for task in _running_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*_running_tasks, return_exceptions=True)
            _running_tasks.clear()

        if owns_db:
            await close_db()
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Использование:
    python main.py [mode]

Режимы:
    documents_service        Documents Service (:8092)
    subscriptions_service    Subscriptions Service (:8093)
    worker                   OCR, продление подписок, истечение документов
    all                      все компоненты в одном процессе

Без аргумента режим берётся из COMPONENT_MODE (config/config.json или окружение).
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
