# src/worker/ocr.py
"""
Воркер OCR распознавания документов.

На каждом тике: возвращает в очередь зависшие задачи, забирает порцию
(priority DESC, created_at ASC), для каждой задачи атомарно переводит её в
processing, скачивает файл, вызывает OCR процессор и сохраняет результат.
Ошибки не уходят наружу, а меняют состояние задачи.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Optional

from src.common.clock import Clock, IdGenerator, SystemClock, new_id
from src.common.constants import SYSTEM_ACTOR, DocumentStatus, HistoryAction, TypeMsg
from src.common.errors import ConflictError, ServiceError
from src.common.logger import log_error, log_info, log_warning
from src.core.documents.models import DocumentHistory, DriverDocument, OCRJob, OCRResult
from src.core.documents.ocr import OCRProcessingError, OCRProcessor
from src.core.documents.repository import DocumentRepository
from src.infra.storage import ObjectNotFoundError, Storage, StorageError
from src.worker.base import PollingWorker


def retry_delay(retry_count: int) -> timedelta:
    """Квадратичная задержка: k-я неудача -> k² минут."""
    return timedelta(minutes=retry_count ** 2)


class OCRWorker(PollingWorker):
    """Обработчик очереди ocr_processing_queue."""

    def __init__(
        self,
        repo: DocumentRepository,
        storage: Storage,
        processor: OCRProcessor,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        interval: float = 30.0,
        batch_size: int = 10,
        min_confidence: float = 0.7,
        download_timeout: float = 60.0,
        processor_timeout: float = 60.0,
        stuck_after: timedelta = timedelta(minutes=15),
    ) -> None:
        super().__init__(interval)
        self._repo = repo
        self._storage = storage
        self._processor = processor
        self._clock = clock or SystemClock()
        self._new_id = id_generator or new_id
        self.batch_size = batch_size
        self.min_confidence = min_confidence
        self.download_timeout = download_timeout
        self.processor_timeout = processor_timeout
        self.stuck_after = stuck_after

    @property
    def name(self) -> str:
        return "OCRWorker"

    async def run_once(self, stop_event: asyncio.Event) -> int:
        now = self._clock.now()

        reaped = await self._repo.reap_stuck_ocr_jobs(now - self.stuck_after, now)
        if reaped:
            await log_warning(f"Возвращено в очередь {reaped} зависших OCR задач", extra={"count": reaped})

        jobs = await self._repo.fetch_ocr_jobs(now, self.batch_size)
        if not jobs:
            return 0

        await log_info(f"OCR: получено {len(jobs)} задач", type_msg=TypeMsg.DEBUG)

        processed = 0
        for job in jobs:
            if stop_event.is_set():
                break
            if await self.process_job(job):
                processed += 1
        return processed

    # =========================================================================
    # ОБРАБОТКА ЗАДАЧИ
    # =========================================================================

    async def process_job(self, job: OCRJob) -> bool:
        """
        Обрабатывает одну задачу.

        Returns:
            False, если задачу уже забрал другой экземпляр воркера
        """
        now = self._clock.now()
        claimed = await self._repo.claim_ocr_job(job.id, job.status, self._processor.name, now)
        if claimed is None:
            return False

        try:
            await self._process_claimed(claimed)
        except ServiceError as e:
            # Сбой БД: задача останется в processing, её вернёт reaper
            await log_error(
                f"OCR задача {claimed.id} прервана ошибкой хранилища данных: {e.message}",
                extra={"document_id": claimed.document_id},
                exc_info=e.cause or e,
            )
        return True

    async def _process_claimed(self, job: OCRJob) -> None:
        document = await self._repo.get_document(job.document_id)
        if document is None:
            await self._fail_terminal(job, "document_not_found")
            return

        try:
            data = await asyncio.wait_for(self._storage.download(document.file_key), timeout=self.download_timeout)
        except ObjectNotFoundError:
            await self._fail_terminal(job, "file_not_found")
            return
        except (StorageError, asyncio.TimeoutError) as e:
            await self._retry_or_fail(job, f"download failed: {str(e) or 'timeout'}")
            return

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._processor.process_document(data, document.file_mime_type or ""),
                timeout=self.processor_timeout,
            )
        except asyncio.TimeoutError:
            await self._retry_or_fail(job, "ocr processing timed out")
            return
        except OCRProcessingError as e:
            if e.transient:
                await self._retry_or_fail(job, str(e))
            else:
                await self._fail_terminal(job, str(e))
            return
        except Exception as e:
            # Сбой внутри процессора не должен оставлять задачу в processing до reaper
            await log_error(
                f"OCR процессор упал на задаче {job.id}: {e!r}",
                extra={"document_id": job.document_id, "provider": self._processor.name},
                exc_info=e,
            )
            await self._retry_or_fail(job, f"unexpected processor error: {type(e).__name__}")
            return

        elapsed_ms = int((time.monotonic() - started) * 1000)
        await self._complete(job, document, result, elapsed_ms)

    async def _complete(self, job: OCRJob, document: DriverDocument, result: OCRResult, elapsed_ms: int) -> None:
        now = self._clock.now()
        confidence = result.confidence
        low_confidence = confidence < self.min_confidence

        metadata: dict = {"confidence": confidence, "provider": self._processor.name, "job_id": job.id}
        if low_confidence:
            metadata.update({"warning": "low_confidence", "threshold": self.min_confidence})

        history = DocumentHistory(
            id=self._new_id(),
            document_id=document.id,
            action=HistoryAction.OCR_PROCESSED,
            performed_by=SYSTEM_ACTOR,
            is_system_action=True,
            notes=f"OCR processed with {confidence * 100:.0f}% confidence",
            metadata=metadata,
            created_at=now,
        )

        updated = await self._repo.complete_ocr_job(
            job.id,
            document.id,
            result.to_ocr_data(),
            confidence,
            result.to_details(),
            result.raw_response,
            elapsed_ms,
            history,
            now,
        )

        if low_confidence:
            await log_warning(
                f"OCR результат документа {document.id} ниже порога уверенности",
                extra={"confidence": confidence, "threshold": self.min_confidence},
            )
            return

        await log_info(
            f"OCR документа {document.id} завершён",
            extra={"confidence": confidence, "processing_time_ms": elapsed_ms},
        )
        await self._maybe_auto_approve(updated, now)

    async def _maybe_auto_approve(self, document: DriverDocument, now: datetime) -> None:
        """Одобряет документ, если тип не требует ручной проверки."""
        if document.status != DocumentStatus.PENDING:
            return
        doc_type = await self._repo.get_document_type(document.document_type_id)
        if doc_type is None or doc_type.requires_manual_review:
            return

        history = DocumentHistory(
            id=self._new_id(),
            document_id=document.id,
            action=HistoryAction.APPROVED,
            previous_status=DocumentStatus.PENDING,
            new_status=DocumentStatus.APPROVED,
            performed_by=SYSTEM_ACTOR,
            is_system_action=True,
            notes="Auto-approved after OCR",
            created_at=now,
        )
        try:
            await self._repo.transition_document(
                document.id,
                [DocumentStatus.PENDING],
                DocumentStatus.APPROVED,
                {"reviewed_by": SYSTEM_ACTOR, "reviewed_at": now, "review_notes": "Auto-approved after OCR"},
                history,
            )
        except ConflictError:
            # Администратор успел взять документ в работу
            return
        await log_info(f"Документ {document.id} одобрен автоматически", extra={"driver_id": document.driver_id})

    # =========================================================================
    # ОШИБКИ
    # =========================================================================

    async def _retry_or_fail(self, job: OCRJob, error_message: str) -> None:
        now = self._clock.now()
        retry_count = job.retry_count + 1

        if retry_count >= job.max_retries:
            await self._repo.fail_ocr_job(job.id, error_message, retry_count, None, now)
            await log_error(
                f"OCR задача {job.id} окончательно провалена после {retry_count} попыток: {error_message}",
                extra={"document_id": job.document_id},
            )
            return

        next_retry_at = now + retry_delay(retry_count)
        await self._repo.fail_ocr_job(job.id, error_message, retry_count, next_retry_at, now)
        await log_warning(
            f"OCR задача {job.id} будет повторена в {next_retry_at.isoformat()}",
            extra={"retry_count": retry_count, "error": error_message},
        )

    async def _fail_terminal(self, job: OCRJob, error_message: str) -> None:
        now = self._clock.now()
        retry_count = max(job.retry_count, job.max_retries)
        await self._repo.fail_ocr_job(job.id, error_message, retry_count, None, now)
        await log_error(
            f"OCR задача {job.id} провалена: {error_message}",
            extra={"document_id": job.document_id},
        )
