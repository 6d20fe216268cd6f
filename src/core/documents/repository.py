# src/core/documents/repository.py
"""
Репозиторий документов водителей.

DocumentRepository: узкий порт доступа к данным, PostgresDocumentRepository:
реализация на asyncpg. Каждая операция, меняющая статус, выполняется одной
транзакцией вместе с записью в журнал верификации.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Iterable, Optional

from asyncpg import Connection, Record

from src.common.constants import DocumentStatus, OCRJobStatus, TypeMsg
from src.common.errors import ConflictError, NotFoundError
from src.common.logger import log_info
from src.core.documents.models import (
    DocumentDetails,
    DocumentHistory,
    DocumentType,
    DriverDocument,
    DriverSuspension,
    OCRJob,
)
from src.infra.database import DatabaseManager, db_errors


# Поля документа, которые может менять переход статуса
TRANSITION_FIELDS = frozenset({
    "reviewed_by",
    "reviewed_at",
    "review_notes",
    "rejection_reason",
})


class DocumentRepository(ABC):
    """Port: хранение документов, журнала, очереди OCR и блокировок."""

    # --- Каталог типов ---

    @abstractmethod
    async def list_document_types(self, include_inactive: bool = False) -> list[DocumentType]:
        ...

    @abstractmethod
    async def get_document_type(self, type_id: str) -> Optional[DocumentType]:
        ...

    @abstractmethod
    async def get_document_type_by_code(self, code: str) -> Optional[DocumentType]:
        """Активный тип по коду (неактивные не возвращаются)."""
        ...

    # --- Документы ---

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[DriverDocument]:
        ...

    @abstractmethod
    async def get_current_document(self, driver_id: str, document_type_id: str) -> Optional[DriverDocument]:
        """Актуальная (не superseded) версия документа водителя данного типа."""
        ...

    @abstractmethod
    async def get_current_document_by_file_key(self, driver_id: str, file_key: str) -> Optional[DriverDocument]:
        ...

    @abstractmethod
    async def list_driver_documents(self, driver_id: str) -> list[DriverDocument]:
        """Все не superseded документы водителя."""
        ...

    @abstractmethod
    async def create_document_version(
        self,
        document: DriverDocument,
        history: DocumentHistory,
        superseded: Optional[DriverDocument] = None,
        superseded_history: Optional[DocumentHistory] = None,
        ocr_job: Optional[OCRJob] = None,
    ) -> DriverDocument:
        """
        Атомарно создаёт новую версию документа.

        Предыдущая версия (если передана) переводится в superseded только если
        её статус не изменился с момента чтения; иначе ConflictError.
        Если предыдущей версии нет, а актуальный документ уже появился, тоже ConflictError.
        """
        ...

    @abstractmethod
    async def transition_document(
        self,
        document_id: str,
        expected_statuses: Iterable[DocumentStatus],
        new_status: DocumentStatus,
        changes: dict[str, Any],
        history: DocumentHistory,
    ) -> DriverDocument:
        """
        CAS-переход статуса вместе с записью в журнал.

        Raises:
            NotFoundError: документа нет
            ConflictError: текущий статус не входит в expected_statuses
        """
        ...

    @abstractmethod
    async def attach_back_side(
        self,
        document_id: str,
        expected_statuses: Iterable[DocumentStatus],
        back_file_url: str,
        back_file_key: str,
        now: datetime,
    ) -> DriverDocument:
        ...

    @abstractmethod
    async def get_document_history(self, document_id: str) -> list[DocumentHistory]:
        ...

    @abstractmethod
    async def list_pending_reviews(self, limit: int, offset: int) -> tuple[list[DriverDocument], int]:
        """Документы в pending/under_review, старые первыми, и их общее число."""
        ...

    @abstractmethod
    async def list_expiring_documents(self, until: date) -> list[DriverDocument]:
        """Одобренные документы со сроком действия не позже until."""
        ...

    @abstractmethod
    async def list_documents_to_expire(self, today: date, limit: int) -> list[DriverDocument]:
        """Одобренные документы, срок которых истёк раньше today."""
        ...

    @abstractmethod
    async def get_active_suspension(self, driver_id: str, now: datetime) -> Optional[DriverSuspension]:
        ...

    # --- Очередь OCR ---

    @abstractmethod
    async def fetch_ocr_jobs(self, now: datetime, limit: int) -> list[OCRJob]:
        """
        Задачи к обработке: pending или failed с оставшимися попытками и
        наступившим next_retry_at; priority DESC, created_at ASC.
        """
        ...

    @abstractmethod
    async def claim_ocr_job(
        self,
        job_id: str,
        expected_status: OCRJobStatus,
        provider: str,
        now: datetime,
    ) -> Optional[OCRJob]:
        """CAS expected_status -> processing; None если задачу уже забрали."""
        ...

    @abstractmethod
    async def fail_ocr_job(
        self,
        job_id: str,
        error_message: str,
        retry_count: int,
        next_retry_at: Optional[datetime],
        now: datetime,
    ) -> None:
        ...

    @abstractmethod
    async def complete_ocr_job(
        self,
        job_id: str,
        document_id: str,
        ocr_data: dict[str, Any],
        confidence: float,
        details: DocumentDetails,
        raw_response: dict[str, Any],
        processing_time_ms: int,
        history: DocumentHistory,
        now: datetime,
    ) -> DriverDocument:
        """
        Сохраняет результат OCR: payload и confidence в документ, реквизиты
        только в пустые поля, задачу в completed, запись ocr_processed в журнал.
        """
        ...

    @abstractmethod
    async def reap_stuck_ocr_jobs(self, stuck_before: datetime, now: datetime) -> int:
        """Переводит зависшие processing-задачи в failed с повтором сейчас."""
        ...


# =============================================================================
# POSTGRESQL
# =============================================================================

_DOCUMENT_COLUMNS = """
    dd.id, dd.driver_id, dd.document_type_id, dt.code AS document_type_code, dd.status,
    dd.file_url, dd.file_key, dd.file_name, dd.file_size_bytes, dd.file_mime_type,
    dd.back_file_url, dd.back_file_key, dd.document_number, dd.issue_date, dd.expiry_date,
    dd.issuing_authority, dd.ocr_data, dd.ocr_confidence, dd.ocr_processed_at,
    dd.reviewed_by, dd.reviewed_at, dd.review_notes, dd.rejection_reason,
    dd.version, dd.previous_document_id, dd.submitted_at, dd.created_at, dd.updated_at
"""

_DOCUMENT_SELECT = f"""
    SELECT {_DOCUMENT_COLUMNS}
    FROM driver_documents dd
    JOIN document_types dt ON dd.document_type_id = dt.id
"""

_DOCUMENT_TYPE_COLUMNS = """
    id, code, name, description, is_required, requires_expiry, requires_front_back,
    requires_manual_review, auto_ocr_enabled, default_validity_months,
    renewal_reminder_days, display_order, is_active
"""

_OCR_JOB_COLUMNS = """
    id, document_id, status, priority, provider, started_at, completed_at,
    processing_time_ms, raw_response, extracted_data, confidence_score,
    error_message, retry_count, max_retries, next_retry_at, created_at, updated_at
"""


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (bytes, str)):
        return json.loads(value)
    return dict(value)


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _row_to_document_type(row: Record) -> DocumentType:
    data = dict(row)
    data["id"] = str(data["id"])
    return DocumentType(**data)


def _row_to_document(row: Record) -> DriverDocument:
    data = dict(row)
    data["id"] = str(data["id"])
    data["driver_id"] = str(data["driver_id"])
    data["document_type_id"] = str(data["document_type_id"])
    data["previous_document_id"] = _str_or_none(data["previous_document_id"])
    data["status"] = DocumentStatus(data["status"])
    data["ocr_data"] = _load_json(data["ocr_data"])
    return DriverDocument(**data)


def _row_to_history(row: Record) -> DocumentHistory:
    data = dict(row)
    data["id"] = str(data["id"])
    data["document_id"] = str(data["document_id"])
    data["metadata"] = _load_json(data["metadata"])
    return DocumentHistory(**data)


def _row_to_ocr_job(row: Record) -> OCRJob:
    data = dict(row)
    data["id"] = str(data["id"])
    data["document_id"] = str(data["document_id"])
    data["raw_response"] = _load_json(data["raw_response"])
    data["extracted_data"] = _load_json(data["extracted_data"])
    return OCRJob(**data)


class PostgresDocumentRepository(DocumentRepository):
    """Реализация репозитория документов на PostgreSQL."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    # -------------------------------------------------------------------------
    # Каталог типов
    # -------------------------------------------------------------------------

    async def list_document_types(self, include_inactive: bool = False) -> list[DocumentType]:
        async with db_errors("list_document_types"):
            rows = await self._db.fetch(
                f"""
                SELECT {_DOCUMENT_TYPE_COLUMNS}
                FROM document_types
                WHERE is_active = true OR $1
                ORDER BY display_order, name
                """,
                include_inactive,
            )
        return [_row_to_document_type(r) for r in rows]

    async def get_document_type(self, type_id: str) -> Optional[DocumentType]:
        async with db_errors("get_document_type"):
            row = await self._db.fetchrow(
                f"SELECT {_DOCUMENT_TYPE_COLUMNS} FROM document_types WHERE id = $1",
                type_id,
            )
        return _row_to_document_type(row) if row else None

    async def get_document_type_by_code(self, code: str) -> Optional[DocumentType]:
        async with db_errors("get_document_type_by_code"):
            row = await self._db.fetchrow(
                f"SELECT {_DOCUMENT_TYPE_COLUMNS} FROM document_types WHERE code = $1 AND is_active = true",
                code,
            )
        return _row_to_document_type(row) if row else None

    # -------------------------------------------------------------------------
    # Документы
    # -------------------------------------------------------------------------

    async def _fetch_document(self, conn: Connection, document_id: str) -> Optional[DriverDocument]:
        row = await conn.fetchrow(f"{_DOCUMENT_SELECT} WHERE dd.id = $1", document_id)
        return _row_to_document(row) if row else None

    async def get_document(self, document_id: str) -> Optional[DriverDocument]:
        async with db_errors("get_document"):
            row = await self._db.fetchrow(f"{_DOCUMENT_SELECT} WHERE dd.id = $1", document_id)
        return _row_to_document(row) if row else None

    async def get_current_document(self, driver_id: str, document_type_id: str) -> Optional[DriverDocument]:
        async with db_errors("get_current_document"):
            row = await self._db.fetchrow(
                f"""
                {_DOCUMENT_SELECT}
                WHERE dd.driver_id = $1 AND dd.document_type_id = $2 AND dd.status <> 'superseded'
                ORDER BY dd.version DESC
                LIMIT 1
                """,
                driver_id,
                document_type_id,
            )
        return _row_to_document(row) if row else None

    async def get_current_document_by_file_key(self, driver_id: str, file_key: str) -> Optional[DriverDocument]:
        async with db_errors("get_current_document_by_file_key"):
            row = await self._db.fetchrow(
                f"""
                {_DOCUMENT_SELECT}
                WHERE dd.driver_id = $1 AND dd.file_key = $2 AND dd.status <> 'superseded'
                LIMIT 1
                """,
                driver_id,
                file_key,
            )
        return _row_to_document(row) if row else None

    async def list_driver_documents(self, driver_id: str) -> list[DriverDocument]:
        async with db_errors("list_driver_documents"):
            rows = await self._db.fetch(
                f"""
                {_DOCUMENT_SELECT}
                WHERE dd.driver_id = $1 AND dd.status <> 'superseded'
                ORDER BY dt.display_order, dd.submitted_at DESC
                """,
                driver_id,
            )
        return [_row_to_document(r) for r in rows]

    @staticmethod
    async def _insert_history(conn: Connection, history: DocumentHistory) -> None:
        await conn.execute(
            """
            INSERT INTO document_verification_history (
                id, document_id, action, previous_status, new_status,
                performed_by, is_system_action, notes, metadata, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
            """,
            history.id,
            history.document_id,
            history.action.value,
            history.previous_status.value if history.previous_status else None,
            history.new_status.value if history.new_status else None,
            history.performed_by,
            history.is_system_action,
            history.notes,
            _dump_json(history.metadata),
            history.created_at,
        )

    async def create_document_version(
        self,
        document: DriverDocument,
        history: DocumentHistory,
        superseded: Optional[DriverDocument] = None,
        superseded_history: Optional[DocumentHistory] = None,
        ocr_job: Optional[OCRJob] = None,
    ) -> DriverDocument:
        async with db_errors("create_document_version"):
            async with self._db.transaction() as conn:
                if superseded is not None:
                    updated = await conn.fetchval(
                        """
                        UPDATE driver_documents
                        SET status = 'superseded', updated_at = $3
                        WHERE id = $1 AND status = $2
                        RETURNING id
                        """,
                        superseded.id,
                        superseded.status.value,
                        document.submitted_at,
                    )
                    if updated is None:
                        raise ConflictError("document was modified concurrently")
                    if superseded_history is not None:
                        await self._insert_history(conn, superseded_history)

                await conn.execute(
                    """
                    INSERT INTO driver_documents (
                        id, driver_id, document_type_id, status, file_url, file_key, file_name,
                        file_size_bytes, file_mime_type, back_file_url, back_file_key,
                        document_number, issue_date, expiry_date, issuing_authority,
                        ocr_data, version, previous_document_id, submitted_at, created_at, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                            $16::jsonb, $17, $18, $19, $19, $19)
                    """,
                    document.id,
                    document.driver_id,
                    document.document_type_id,
                    document.status.value,
                    document.file_url,
                    document.file_key,
                    document.file_name,
                    document.file_size_bytes,
                    document.file_mime_type,
                    document.back_file_url,
                    document.back_file_key,
                    document.document_number,
                    document.issue_date,
                    document.expiry_date,
                    document.issuing_authority,
                    _dump_json(document.ocr_data),
                    document.version,
                    document.previous_document_id,
                    document.submitted_at,
                )
                await self._insert_history(conn, history)

                if ocr_job is not None:
                    await conn.execute(
                        """
                        INSERT INTO ocr_processing_queue (
                            id, document_id, status, priority, max_retries, created_at, updated_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $6)
                        """,
                        ocr_job.id,
                        ocr_job.document_id,
                        ocr_job.status.value,
                        ocr_job.priority,
                        ocr_job.max_retries,
                        ocr_job.created_at,
                    )

                created = await self._fetch_document(conn, document.id)

        await log_info(
            f"Документ {document.id} v{document.version} сохранён",
            type_msg=TypeMsg.DEBUG,
            extra={"driver_id": document.driver_id, "superseded": superseded.id if superseded else None},
        )
        return created  # type: ignore[return-value]

    async def transition_document(
        self,
        document_id: str,
        expected_statuses: Iterable[DocumentStatus],
        new_status: DocumentStatus,
        changes: dict[str, Any],
        history: DocumentHistory,
    ) -> DriverDocument:
        unknown = set(changes) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Недопустимые поля перехода: {sorted(unknown)}")

        columns = list(changes)
        assignments = ", ".join(f"{col} = ${i + 4}" for i, col in enumerate(columns))
        set_clause = "status = $2, updated_at = $3" + (f", {assignments}" if assignments else "")
        expected = [s.value for s in expected_statuses]

        async with db_errors("transition_document"):
            async with self._db.transaction() as conn:
                updated = await conn.fetchval(
                    f"""
                    UPDATE driver_documents
                    SET {set_clause}
                    WHERE id = $1 AND status = ANY(${len(columns) + 4}::text[])
                    RETURNING id
                    """,
                    document_id,
                    new_status.value,
                    history.created_at,
                    *[changes[c] for c in columns],
                    expected,
                )
                if updated is None:
                    exists = await conn.fetchval("SELECT 1 FROM driver_documents WHERE id = $1", document_id)
                    if exists is None:
                        raise NotFoundError("document not found")
                    raise ConflictError("document status has changed")

                await self._insert_history(conn, history)
                document = await self._fetch_document(conn, document_id)

        return document  # type: ignore[return-value]

    async def attach_back_side(
        self,
        document_id: str,
        expected_statuses: Iterable[DocumentStatus],
        back_file_url: str,
        back_file_key: str,
        now: datetime,
    ) -> DriverDocument:
        expected = [s.value for s in expected_statuses]
        async with db_errors("attach_back_side"):
            async with self._db.transaction() as conn:
                updated = await conn.fetchval(
                    """
                    UPDATE driver_documents
                    SET back_file_url = $2, back_file_key = $3, updated_at = $4
                    WHERE id = $1 AND status = ANY($5::text[])
                    RETURNING id
                    """,
                    document_id,
                    back_file_url,
                    back_file_key,
                    now,
                    expected,
                )
                if updated is None:
                    exists = await conn.fetchval("SELECT 1 FROM driver_documents WHERE id = $1", document_id)
                    if exists is None:
                        raise NotFoundError("document not found")
                    raise ConflictError("document status has changed")
                document = await self._fetch_document(conn, document_id)
        return document  # type: ignore[return-value]

    async def get_document_history(self, document_id: str) -> list[DocumentHistory]:
        async with db_errors("get_document_history"):
            rows = await self._db.fetch(
                """
                SELECT id, document_id, action, previous_status, new_status,
                       performed_by, is_system_action, notes, metadata, created_at
                FROM document_verification_history
                WHERE document_id = $1
                ORDER BY created_at ASC
                """,
                document_id,
            )
        return [_row_to_history(r) for r in rows]

    async def list_pending_reviews(self, limit: int, offset: int) -> tuple[list[DriverDocument], int]:
        async with db_errors("list_pending_reviews"):
            total = await self._db.fetchval(
                "SELECT COUNT(*) FROM driver_documents WHERE status IN ('pending', 'under_review')"
            )
            rows = await self._db.fetch(
                f"""
                {_DOCUMENT_SELECT}
                WHERE dd.status IN ('pending', 'under_review')
                ORDER BY dd.submitted_at ASC
                LIMIT $1 OFFSET $2
                """,
                limit,
                offset,
            )
        return [_row_to_document(r) for r in rows], int(total or 0)

    async def list_expiring_documents(self, until: date) -> list[DriverDocument]:
        async with db_errors("list_expiring_documents"):
            rows = await self._db.fetch(
                f"""
                {_DOCUMENT_SELECT}
                WHERE dd.status = 'approved' AND dd.expiry_date IS NOT NULL AND dd.expiry_date <= $1
                ORDER BY dd.expiry_date ASC
                """,
                until,
            )
        return [_row_to_document(r) for r in rows]

    async def list_documents_to_expire(self, today: date, limit: int) -> list[DriverDocument]:
        async with db_errors("list_documents_to_expire"):
            rows = await self._db.fetch(
                f"""
                {_DOCUMENT_SELECT}
                WHERE dd.status = 'approved' AND dd.expiry_date < $1
                ORDER BY dd.expiry_date ASC
                LIMIT $2
                """,
                today,
                limit,
            )
        return [_row_to_document(r) for r in rows]

    async def get_active_suspension(self, driver_id: str, now: datetime) -> Optional[DriverSuspension]:
        async with db_errors("get_active_suspension"):
            row = await self._db.fetchrow(
                """
                SELECT driver_id, reason, suspended_by, suspended_at, ends_at
                FROM driver_suspensions
                WHERE driver_id = $1 AND lifted_at IS NULL AND (ends_at IS NULL OR ends_at > $2)
                ORDER BY suspended_at DESC
                LIMIT 1
                """,
                driver_id,
                now,
            )
        if row is None:
            return None
        data = dict(row)
        data["driver_id"] = str(data["driver_id"])
        return DriverSuspension(**data)

    # -------------------------------------------------------------------------
    # Очередь OCR
    # -------------------------------------------------------------------------

    async def fetch_ocr_jobs(self, now: datetime, limit: int) -> list[OCRJob]:
        async with db_errors("fetch_ocr_jobs"):
            rows = await self._db.fetch(
                f"""
                SELECT {_OCR_JOB_COLUMNS}
                FROM ocr_processing_queue
                WHERE status = 'pending'
                   OR (status = 'failed' AND retry_count < max_retries
                       AND (next_retry_at IS NULL OR next_retry_at <= $1))
                ORDER BY priority DESC, created_at ASC
                LIMIT $2
                """,
                now,
                limit,
            )
        return [_row_to_ocr_job(r) for r in rows]

    async def claim_ocr_job(
        self,
        job_id: str,
        expected_status: OCRJobStatus,
        provider: str,
        now: datetime,
    ) -> Optional[OCRJob]:
        async with db_errors("claim_ocr_job"):
            row = await self._db.fetchrow(
                f"""
                UPDATE ocr_processing_queue
                SET status = 'processing', provider = $3, started_at = $4,
                    error_message = NULL, updated_at = $4
                WHERE id = $1 AND status = $2
                RETURNING {_OCR_JOB_COLUMNS}
                """,
                job_id,
                expected_status.value,
                provider,
                now,
            )
        return _row_to_ocr_job(row) if row else None

    async def fail_ocr_job(
        self,
        job_id: str,
        error_message: str,
        retry_count: int,
        next_retry_at: Optional[datetime],
        now: datetime,
    ) -> None:
        async with db_errors("fail_ocr_job"):
            await self._db.execute(
                """
                UPDATE ocr_processing_queue
                SET status = 'failed', error_message = $2, retry_count = $3,
                    next_retry_at = $4, completed_at = $5, updated_at = $5
                WHERE id = $1
                """,
                job_id,
                error_message,
                retry_count,
                next_retry_at,
                now,
            )

    async def complete_ocr_job(
        self,
        job_id: str,
        document_id: str,
        ocr_data: dict[str, Any],
        confidence: float,
        details: DocumentDetails,
        raw_response: dict[str, Any],
        processing_time_ms: int,
        history: DocumentHistory,
        now: datetime,
    ) -> DriverDocument:
        async with db_errors("complete_ocr_job"):
            async with self._db.transaction() as conn:
                await conn.execute(
                    """
                    UPDATE driver_documents
                    SET ocr_data = $2::jsonb,
                        ocr_confidence = $3,
                        ocr_processed_at = $4,
                        document_number = COALESCE(document_number, $5),
                        issue_date = COALESCE(issue_date, $6),
                        expiry_date = COALESCE(expiry_date, $7),
                        issuing_authority = COALESCE(issuing_authority, $8),
                        updated_at = $4
                    WHERE id = $1
                    """,
                    document_id,
                    _dump_json(ocr_data),
                    confidence,
                    now,
                    details.document_number,
                    details.issue_date,
                    details.expiry_date,
                    details.issuing_authority,
                )
                await conn.execute(
                    """
                    UPDATE ocr_processing_queue
                    SET status = 'completed', completed_at = $2, extracted_data = $3::jsonb,
                        raw_response = $4::jsonb, confidence_score = $5,
                        processing_time_ms = $6, error_message = NULL, updated_at = $2
                    WHERE id = $1
                    """,
                    job_id,
                    now,
                    _dump_json(ocr_data),
                    _dump_json(raw_response),
                    confidence,
                    processing_time_ms,
                )
                await self._insert_history(conn, history)
                document = await self._fetch_document(conn, document_id)
        return document  # type: ignore[return-value]

    async def reap_stuck_ocr_jobs(self, stuck_before: datetime, now: datetime) -> int:
        async with db_errors("reap_stuck_ocr_jobs"):
            status = await self._db.execute(
                """
                UPDATE ocr_processing_queue
                SET status = 'failed', retry_count = retry_count + 1, next_retry_at = $2,
                    error_message = 'processing timed out', updated_at = $2
                WHERE status = 'processing' AND started_at < $1
                """,
                stuck_before,
                now,
            )
        # asyncpg возвращает статус вида "UPDATE 3"
        return int(status.split()[-1]) if status else 0
