# src/worker/runner.py
"""
Запускалка всех воркеров.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import List

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.config import settings
from src.core.documents import PostgresDocumentRepository, create_document_service
from src.core.documents.ocr import build_ocr_processor
from src.core.subscriptions import PostgresSubscriptionRepository, create_subscription_service
from src.infra.database import close_db, get_db, init_db
from src.infra.payments import create_payment_processor
from src.infra.storage import create_storage
from src.worker.base import PollingWorker
from src.worker.expiry import DocumentExpiryWorker
from src.worker.ocr import OCRWorker
from src.worker.renewal import RenewalWorker


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает OCRWorker, RenewalWorker и DocumentExpiryWorker.

    Args:
        init_infra: Если True, инициализирует БД.
                    При запуске через main.py в режиме "all" передаётся False,
                    так как инфраструктура уже инициализирована.
    """
    await log_info("Запуск воркеров...", type_msg=TypeMsg.INFO)

    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        await init_db()

    db = get_db()
    storage = create_storage()
    payments = create_payment_processor()
    document_repo = PostgresDocumentRepository(db)
    subscription_repo = PostgresSubscriptionRepository(db)

    ocr_cfg = settings.ocr
    workers: List[PollingWorker] = [
        OCRWorker(
            document_repo,
            storage,
            build_ocr_processor(ocr_cfg),
            interval=ocr_cfg.OCR_POLL_INTERVAL,
            batch_size=ocr_cfg.OCR_BATCH_SIZE,
            min_confidence=ocr_cfg.OCR_MIN_CONFIDENCE,
            download_timeout=settings.documents.DOWNLOAD_TIMEOUT,
            processor_timeout=ocr_cfg.OCR_PROCESSOR_TIMEOUT,
            stuck_after=timedelta(minutes=ocr_cfg.OCR_STUCK_JOB_MINUTES),
        ),
        RenewalWorker(
            create_subscription_service(subscription_repo, payments),
            interval=settings.subscriptions.RENEWAL_INTERVAL,
            batch_size=settings.subscriptions.RENEWAL_BATCH_SIZE,
        ),
        DocumentExpiryWorker(
            create_document_service(document_repo, storage),
            interval=settings.documents.EXPIRY_SWEEP_INTERVAL,
        ),
    ]

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        # Ждём завершения (Ctrl+C)
        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
    finally:
        # Текущие элементы порций доделываются до конца
        for worker in workers:
            await worker.stop()

        await payments.close()
        if init_infra:
            await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
