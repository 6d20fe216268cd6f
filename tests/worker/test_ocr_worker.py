# tests/worker/test_ocr_worker.py
"""
Тесты воркера OCR.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from fakes import DRIVER_ID, InMemoryDocumentRepository, InMemoryStorage
from src.common.constants import SYSTEM_ACTOR, DocumentStatus, HistoryAction, OCRJobStatus
from src.common.errors import DependencyUnavailableError
from src.core.documents.models import OCRJob, OCRResult, UploadMetadata
from src.core.documents.ocr import GoogleVisionProcessor, MockOCRProcessor, OCRProcessingError, OCRProcessor
from src.core.documents.service import DocumentService
from src.worker.ocr import OCRWorker, retry_delay

PNG = b"\x89PNG\r\n\x1a\n" + b"1" * 32


class FailingProcessor(OCRProcessor):
    """Процессор, который всегда падает с заданной ошибкой."""

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    @property
    def name(self) -> str:
        return "failing"

    async def process_document(self, image_data: bytes, mime_type: str) -> OCRResult:
        self.calls += 1
        raise self.error


@pytest.fixture
def make_worker(document_repo: InMemoryDocumentRepository, storage: InMemoryStorage, clock, ids):
    def _make(processor: OCRProcessor | None = None, **kwargs) -> OCRWorker:
        return OCRWorker(
            document_repo,
            storage,
            processor or MockOCRProcessor(confidence=0.95, clock=clock),
            clock=clock,
            id_generator=ids,
            interval=0.01,
            min_confidence=0.7,
            **kwargs,
        )

    return _make


async def _upload(service: DocumentService, type_code: str = "drivers_license", **metadata) -> str:
    doc = await service.upload_document(
        DRIVER_ID, type_code, PNG, "image/png", "scan.png", metadata=UploadMetadata(**metadata)
    )
    return doc.id


def _job_for(repo: InMemoryDocumentRepository, document_id: str) -> OCRJob:
    return next(j for j in repo.jobs.values() if j.document_id == document_id)


def test_retry_delay_is_quadratic() -> None:
    assert [retry_delay(k) for k in (1, 2, 3)] == [
        timedelta(minutes=1),
        timedelta(minutes=4),
        timedelta(minutes=9),
    ]


class TestOCRSuccess:
    """Успешное распознавание."""

    @pytest.mark.asyncio
    async def test_completes_job_and_fills_document(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service)

        processed = await make_worker().run_once(asyncio.Event())

        assert processed == 1
        job = _job_for(document_repo, document_id)
        assert job.status == OCRJobStatus.COMPLETED
        assert job.provider == "mock"
        assert job.confidence_score == 0.95
        assert job.processing_time_ms is not None

        doc = document_repo.documents[document_id]
        # Тип требует ручной проверки: статус не меняется
        assert doc.status == DocumentStatus.PENDING
        assert doc.ocr_confidence == 0.95
        assert doc.ocr_processed_at == clock.now()
        assert doc.document_number.startswith("DL")
        assert doc.issuing_authority == "Mock Authority"
        assert doc.ocr_data["raw_text"] == "Mock OCR extracted text"

        history = await document_repo.get_document_history(document_id)
        ocr_entry = history[-1]
        assert ocr_entry.action == HistoryAction.OCR_PROCESSED
        assert ocr_entry.performed_by == SYSTEM_ACTOR
        assert ocr_entry.previous_status is None
        assert ocr_entry.notes == "OCR processed with 95% confidence"

    @pytest.mark.asyncio
    async def test_driver_values_not_overwritten(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
    ) -> None:
        document_id = await _upload(document_service, document_number="MY-NUMBER")

        await make_worker().run_once(asyncio.Event())

        doc = document_repo.documents[document_id]
        assert doc.document_number == "MY-NUMBER"
        assert doc.ocr_data["document_number"] != "MY-NUMBER"

    @pytest.mark.asyncio
    async def test_auto_approve_without_manual_review(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
    ) -> None:
        document_id = await _upload(document_service, type_code="vehicle_registration")

        await make_worker().run_once(asyncio.Event())

        doc = document_repo.documents[document_id]
        assert doc.status == DocumentStatus.APPROVED
        assert doc.reviewed_by == SYSTEM_ACTOR
        history = await document_repo.get_document_history(document_id)
        assert [h.action for h in history] == [
            HistoryAction.SUBMITTED,
            HistoryAction.OCR_PROCESSED,
            HistoryAction.APPROVED,
        ]

    @pytest.mark.asyncio
    async def test_low_confidence_is_flagged(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service, type_code="vehicle_registration")

        await make_worker(MockOCRProcessor(confidence=0.5, clock=clock)).run_once(asyncio.Event())

        doc = document_repo.documents[document_id]
        assert doc.status == DocumentStatus.PENDING
        assert doc.ocr_confidence == 0.5
        entry = (await document_repo.get_document_history(document_id))[-1]
        assert entry.metadata["warning"] == "low_confidence"
        assert entry.metadata["threshold"] == 0.7

    @pytest.mark.asyncio
    async def test_admin_review_wins_over_auto_approve(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
    ) -> None:
        """Если администратор взял документ в работу, автоодобрения нет."""
        document_id = await _upload(document_service, type_code="vehicle_registration")
        await document_service.start_review(document_id, "admin-1")

        await make_worker().run_once(asyncio.Event())

        assert document_repo.documents[document_id].status == DocumentStatus.UNDER_REVIEW
        assert _job_for(document_repo, document_id).status == OCRJobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_required_documents_first(
        self,
        document_repo: InMemoryDocumentRepository,
        make_document,
        make_worker,
        clock,
    ) -> None:
        optional = make_document(type_code="profile_photo")
        required = make_document(driver_id="other-driver")
        for doc, priority, age in ((optional, 0, 10), (required, 10, 1)):
            job = OCRJob(id=f"job-{doc.id}", document_id=doc.id, priority=priority, created_at=clock.now() - timedelta(minutes=age))
            document_repo.jobs[job.id] = job

        jobs = await document_repo.fetch_ocr_jobs(clock.now(), 10)
        assert [j.document_id for j in jobs] == [required.id, optional.id]


class TestOCRFailures:
    """Повторы и окончательные ошибки."""

    @pytest.mark.asyncio
    async def test_transient_failure_backoff(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service)
        processor = FailingProcessor(OCRProcessingError("provider unavailable"))
        worker = make_worker(processor)

        await worker.run_once(asyncio.Event())
        job = _job_for(document_repo, document_id)
        assert job.status == OCRJobStatus.FAILED
        assert job.retry_count == 1
        assert job.next_retry_at == clock.now() + timedelta(minutes=1)
        assert job.error_message == "provider unavailable"

        # До next_retry_at задача не берётся
        assert await worker.run_once(asyncio.Event()) == 0
        assert processor.calls == 1

        clock.advance(minutes=1)
        await worker.run_once(asyncio.Event())
        job = _job_for(document_repo, document_id)
        assert job.retry_count == 2
        assert job.next_retry_at == clock.now() + timedelta(minutes=4)

        clock.advance(minutes=4)
        await worker.run_once(asyncio.Event())
        job = _job_for(document_repo, document_id)
        assert job.retry_count == 3
        assert job.next_retry_at is None

        # Попытки исчерпаны
        clock.advance(hours=1)
        assert await worker.run_once(asyncio.Event()) == 0
        assert processor.calls == 3
        assert document_repo.documents[document_id].status == DocumentStatus.PENDING

    @pytest.mark.asyncio
    async def test_permanent_failure_is_terminal(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service)
        worker = make_worker(FailingProcessor(OCRProcessingError("missing API key", transient=False)))

        await worker.run_once(asyncio.Event())

        job = _job_for(document_repo, document_id)
        assert job.status == OCRJobStatus.FAILED
        assert job.retry_count == job.max_retries
        assert job.next_retry_at is None

    @pytest.mark.asyncio
    async def test_missing_file_is_terminal(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        storage: InMemoryStorage,
        make_worker,
    ) -> None:
        document_id = await _upload(document_service)
        storage.objects.clear()

        await make_worker().run_once(asyncio.Event())

        job = _job_for(document_repo, document_id)
        assert job.error_message == "file_not_found"
        assert job.retry_count == job.max_retries

    @pytest.mark.asyncio
    async def test_storage_outage_is_retried(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        storage: InMemoryStorage,
        make_worker,
    ) -> None:
        document_id = await _upload(document_service)
        storage.fail = True

        await make_worker().run_once(asyncio.Event())

        job = _job_for(document_repo, document_id)
        assert job.retry_count == 1
        assert job.next_retry_at is not None
        assert job.error_message.startswith("download failed")

    @pytest.mark.asyncio
    async def test_processor_timeout_is_retried(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service)
        worker = make_worker(MockOCRProcessor(clock=clock, delay=0.5), processor_timeout=0.01)

        await worker.run_once(asyncio.Event())

        job = _job_for(document_repo, document_id)
        assert job.error_message == "ocr processing timed out"
        assert job.retry_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_processor_error_is_retried(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service)
        worker = make_worker(FailingProcessor(KeyError("fullTextAnnotation")))

        assert await worker.run_once(asyncio.Event()) == 1

        job = _job_for(document_repo, document_id)
        assert job.status == OCRJobStatus.FAILED
        assert job.retry_count == 1
        assert job.next_retry_at == clock.now() + timedelta(minutes=1)
        assert job.error_message == "unexpected processor error: KeyError"

    @pytest.mark.asyncio
    async def test_gateway_html_page_is_retried(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
    ) -> None:
        """Google Vision за шлюзом отдал HTML со статусом 200."""
        document_id = await _upload(document_service)
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        )
        worker = make_worker(GoogleVisionProcessor(api_key="key", client=client))

        await worker.run_once(asyncio.Event())
        await client.aclose()

        job = _job_for(document_repo, document_id)
        assert job.status == OCRJobStatus.FAILED
        assert job.retry_count == 1
        assert job.next_retry_at is not None
        assert "non-JSON" in job.error_message

    @pytest.mark.asyncio
    async def test_database_failure_leaves_job_for_reaper(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
    ) -> None:
        document_id = await _upload(document_service)

        with patch.object(
            document_repo,
            "complete_ocr_job",
            new_callable=AsyncMock,
            side_effect=DependencyUnavailableError("database unavailable"),
        ):
            assert await make_worker().run_once(asyncio.Event()) == 1

        assert _job_for(document_repo, document_id).status == OCRJobStatus.PROCESSING


class TestOCRConcurrency:
    """Захват задач и возврат зависших."""

    @pytest.mark.asyncio
    async def test_already_claimed_job_is_skipped(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service)
        job = _job_for(document_repo, document_id)
        await document_repo.claim_ocr_job(job.id, OCRJobStatus.PENDING, "other-worker", clock.now())

        assert await make_worker().process_job(job) is False
        assert _job_for(document_repo, document_id).provider == "other-worker"

    @pytest.mark.asyncio
    async def test_two_workers_process_job_once(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
    ) -> None:
        await _upload(document_service)
        job = next(iter(document_repo.jobs.values()))

        results = await asyncio.gather(make_worker().process_job(job), make_worker().process_job(job))

        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_stuck_job_is_reaped_and_processed(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
        clock,
    ) -> None:
        document_id = await _upload(document_service)
        job = _job_for(document_repo, document_id)
        await document_repo.claim_ocr_job(job.id, OCRJobStatus.PENDING, "crashed-worker", clock.now())

        clock.advance(minutes=20)
        processed = await make_worker(stuck_after=timedelta(minutes=15)).run_once(asyncio.Event())

        assert processed == 1
        job = _job_for(document_repo, document_id)
        assert job.status == OCRJobStatus.COMPLETED
        assert job.retry_count == 1

    @pytest.mark.asyncio
    async def test_stop_event_checked_between_jobs(
        self,
        document_service: DocumentService,
        document_repo: InMemoryDocumentRepository,
        make_worker,
    ) -> None:
        await _upload(document_service)
        stop = asyncio.Event()
        stop.set()

        assert await make_worker().run_once(stop) == 0
        assert all(j.status == OCRJobStatus.PENDING for j in document_repo.jobs.values())
