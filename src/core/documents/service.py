# src/core/documents/service.py
"""
Сервис документов водителей.

Загрузка и версионирование документов, проверка администратором,
снимок верификации и свип истёкших документов. Каждый переход статуса
сохраняется одной операцией репозитория вместе с записью в журнал.
"""

from __future__ import annotations

import os
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from src.common.clock import Clock, IdGenerator, SystemClock, new_id
from src.common.constants import (
    BACK_SIDE_UPLOAD_STATUSES,
    OCR_PRIORITY_OPTIONAL,
    OCR_PRIORITY_REQUIRED,
    REVIEWABLE_DOCUMENT_STATUSES,
    SYSTEM_ACTOR,
    DocumentStatus,
    HistoryAction,
    OCRJobStatus,
    ReviewAction,
    TypeMsg,
)
from src.common.errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    StorageFailureError,
)
from src.common.logger import log_error, log_info, log_warning
from src.core.documents.models import (
    DocumentHistory,
    DocumentType,
    DriverDocument,
    DriverVerificationStatus,
    ExpiringDocument,
    OCRJob,
    PendingReviewDocument,
    PresignedUpload,
    ReviewDecision,
    UploadMetadata,
)
from src.core.documents.repository import DocumentRepository
from src.core.documents.verification import derive_verification_status
from src.infra.storage import ObjectNotFoundError, Storage, StorageError, extension_for


DEFAULT_ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
    "application/pdf",
)

_REVIEW_TARGETS = {
    ReviewAction.APPROVE: (DocumentStatus.APPROVED, HistoryAction.APPROVED),
    ReviewAction.REJECT: (DocumentStatus.REJECTED, HistoryAction.REJECTED),
    ReviewAction.REQUEST_RESUBMIT: (DocumentStatus.RESUBMIT_REQUESTED, HistoryAction.RESUBMIT_REQUESTED),
}


def expiry_urgency(days_until_expiry: int) -> str:
    """Срочность продления документа."""
    if days_until_expiry < 0:
        return "expired"
    if days_until_expiry <= 7:
        return "critical"
    if days_until_expiry <= 30:
        return "warning"
    return "ok"


def build_file_key(driver_id: str, type_code: str, object_id: str, extension: str, suffix: str = "") -> str:
    """Ключ объекта: documents/<driver_id>/<type_code>/<id><suffix><ext>."""
    return f"documents/{driver_id}/{type_code}/{object_id}{suffix}{extension}"


class DocumentService:
    """
    Сервис документов.

    Зависимости передаются через конструктор; часы и генератор ID
    подменяются в тестах.
    """

    def __init__(
        self,
        repo: DocumentRepository,
        storage: Storage,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        max_upload_bytes: int = 10 * 1024 * 1024,
        allowed_mime_types: Iterable[str] = DEFAULT_ALLOWED_MIME_TYPES,
        presigned_expiry: timedelta = timedelta(minutes=15),
        ocr_max_retries: int = 3,
    ) -> None:
        self._repo = repo
        self._storage = storage
        self._clock = clock or SystemClock()
        self._new_id = id_generator or new_id
        self.max_upload_bytes = max_upload_bytes
        self.allowed_mime_types = frozenset(allowed_mime_types)
        self.presigned_expiry = presigned_expiry
        self.ocr_max_retries = ocr_max_retries

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _get_active_type(self, type_code: str) -> DocumentType:
        doc_type = await self._repo.get_document_type_by_code(type_code)
        if doc_type is None:
            raise InvalidInputError("invalid document type")
        return doc_type

    def _validate_file(self, size: int, mime_type: str) -> None:
        if mime_type not in self.allowed_mime_types:
            raise InvalidInputError(f"file type {mime_type} is not allowed")
        if size <= 0:
            raise InvalidInputError("file is empty")
        if size > self.max_upload_bytes:
            raise InvalidInputError(
                f"file size exceeds maximum of {self.max_upload_bytes // (1024 * 1024)}MB"
            )

    def _history(
        self,
        document_id: str,
        action: HistoryAction,
        previous_status: Optional[DocumentStatus],
        new_status: Optional[DocumentStatus],
        performed_by: Optional[str],
        now: datetime,
        notes: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> DocumentHistory:
        return DocumentHistory(
            id=self._new_id(),
            document_id=document_id,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            performed_by=performed_by,
            is_system_action=performed_by == SYSTEM_ACTOR,
            notes=notes,
            metadata=metadata or {},
            created_at=now,
        )

    async def _store(self, key: str, data: bytes, mime_type: str) -> str:
        try:
            stored = await self._storage.upload(key, data, mime_type)
        except StorageError as e:
            await log_error(f"Не удалось сохранить файл {key}: {e}", extra={"key": key})
            raise StorageFailureError("failed to upload file", cause=e) from e
        return stored.url

    async def _discard(self, key: str) -> None:
        """Компенсирующее удаление файла, если документ не сохранился."""
        try:
            await self._storage.delete(key)
        except StorageError as e:
            # Файл остаётся сиротой; его подберёт сборщик мусора хранилища
            await log_error(
                f"Не удалось удалить осиротевший файл {key}: {e}",
                extra={"key": key, "orphan": True},
            )

    async def _create_version(
        self,
        driver_id: str,
        doc_type: DocumentType,
        document_id: str,
        file_url: str,
        file_key: str,
        file_name: Optional[str],
        file_size: Optional[int],
        mime_type: Optional[str],
        metadata: Optional[UploadMetadata],
    ) -> DriverDocument:
        """
        Создаёт новую версию документа, вытесняя актуальную.
        При конкурентной загрузке того же типа повторяет попытку один раз.
        """
        metadata = metadata or UploadMetadata()

        for attempt in range(2):
            now = self._clock.now()
            current = await self._repo.get_current_document(driver_id, doc_type.id)

            document = DriverDocument(
                id=document_id,
                driver_id=driver_id,
                document_type_id=doc_type.id,
                document_type_code=doc_type.code,
                status=DocumentStatus.PENDING,
                file_url=file_url,
                file_key=file_key,
                file_name=file_name,
                file_size_bytes=file_size,
                file_mime_type=mime_type,
                document_number=metadata.document_number or None,
                issue_date=metadata.issue_date,
                expiry_date=metadata.expiry_date,
                issuing_authority=metadata.issuing_authority or None,
                version=current.version + 1 if current else 1,
                previous_document_id=current.id if current else None,
                submitted_at=now,
            )
            history = self._history(
                document_id,
                HistoryAction.SUBMITTED,
                None,
                DocumentStatus.PENDING,
                driver_id,
                now,
                metadata={"version": document.version},
            )

            superseded_history = None
            if current is not None:
                superseded_history = self._history(
                    current.id,
                    HistoryAction.SUPERSEDED,
                    current.status,
                    DocumentStatus.SUPERSEDED,
                    driver_id,
                    now,
                    notes=f"Superseded by version {document.version}",
                    metadata={"superseded_by": document_id},
                )

            ocr_job = None
            if doc_type.auto_ocr_enabled:
                ocr_job = OCRJob(
                    id=self._new_id(),
                    document_id=document_id,
                    status=OCRJobStatus.PENDING,
                    priority=OCR_PRIORITY_REQUIRED if doc_type.is_required else OCR_PRIORITY_OPTIONAL,
                    max_retries=self.ocr_max_retries,
                    created_at=now,
                )

            try:
                return await self._repo.create_document_version(
                    document,
                    history,
                    superseded=current,
                    superseded_history=superseded_history,
                    ocr_job=ocr_job,
                )
            except ConflictError:
                if attempt == 1:
                    await log_warning(
                        f"Конфликт загрузки документа {doc_type.code} водителя {driver_id}",
                        extra={"driver_id": driver_id},
                    )
                    raise ConflictError("document was modified concurrently, please retry")
                await log_info(
                    f"Конкурентная загрузка {doc_type.code}, повтор",
                    type_msg=TypeMsg.DEBUG,
                    extra={"driver_id": driver_id},
                )

        raise ConflictError("document was modified concurrently, please retry")  # pragma: no cover

    # =========================================================================
    # ЗАГРУЗКА
    # =========================================================================

    async def upload_document(
        self,
        driver_id: str,
        type_code: str,
        data: bytes,
        mime_type: str,
        filename: Optional[str] = None,
        metadata: Optional[UploadMetadata] = None,
    ) -> DriverDocument:
        """
        Загружает документ водителя.

        Args:
            driver_id: ID водителя
            type_code: Код типа документа
            data: Содержимое файла
            mime_type: MIME тип файла
            filename: Исходное имя файла
            metadata: Реквизиты, указанные водителем

        Returns:
            Новая версия документа в статусе pending
        """
        doc_type = await self._get_active_type(type_code)
        self._validate_file(len(data), mime_type)

        document_id = self._new_id()
        key = build_file_key(driver_id, doc_type.code, document_id, extension_for(mime_type))
        file_url = await self._store(key, data, mime_type)

        try:
            document = await self._create_version(
                driver_id, doc_type, document_id, file_url, key, filename, len(data), mime_type, metadata
            )
        except Exception:
            await self._discard(key)
            raise

        await log_info(
            f"Документ {doc_type.code} v{document.version} загружен водителем {driver_id}",
            extra={"document_id": document.id, "ocr_queued": doc_type.auto_ocr_enabled},
        )
        return document

    async def upload_back_side(
        self,
        document_id: str,
        driver_id: str,
        data: bytes,
        mime_type: str,
        filename: Optional[str] = None,
    ) -> DriverDocument:
        """Догружает обратную сторону документа (только владелец)."""
        document = await self.get_document(document_id, driver_id=driver_id)
        doc_type = await self._repo.get_document_type(document.document_type_id)
        self._check_back_side_allowed(document, doc_type)
        self._validate_file(len(data), mime_type)

        key = build_file_key(
            driver_id,
            doc_type.code,  # type: ignore[union-attr]
            document.id,
            extension_for(mime_type),
            suffix="_back",
        )
        back_url = await self._store(key, data, mime_type)

        try:
            updated = await self._repo.attach_back_side(
                document.id, BACK_SIDE_UPLOAD_STATUSES, back_url, key, self._clock.now()
            )
        except Exception:
            await self._discard(key)
            raise

        await log_info(f"Обратная сторона документа {document.id} загружена", extra={"driver_id": driver_id})
        return updated

    @staticmethod
    def _check_back_side_allowed(document: DriverDocument, doc_type: Optional[DocumentType]) -> None:
        if doc_type is None or not doc_type.requires_front_back:
            raise InvalidStateError("this document type does not require a back side")
        if document.status not in BACK_SIDE_UPLOAD_STATUSES:
            raise InvalidStateError("cannot upload back side for document in current status")

    async def get_presigned_upload_url(
        self,
        driver_id: str,
        type_code: str,
        filename: str,
        content_type: str,
        is_front: bool = True,
    ) -> PresignedUpload:
        """Выдаёт подписанную ссылку для прямой загрузки в хранилище."""
        doc_type = await self._get_active_type(type_code)
        if content_type not in self.allowed_mime_types:
            raise InvalidInputError(f"file type {content_type} is not allowed")

        key = build_file_key(
            driver_id,
            doc_type.code,
            self._new_id(),
            extension_for(content_type),
            suffix="" if is_front else "_back",
        )
        try:
            presigned = await self._storage.get_presigned_upload_url(key, content_type, self.presigned_expiry)
        except StorageError as e:
            await log_error(f"Не удалось подписать ссылку для {key}: {e}")
            raise StorageFailureError("failed to generate upload URL", cause=e) from e

        return PresignedUpload(
            upload_url=presigned.url,
            method=presigned.method,
            headers=presigned.headers,
            expires_at=presigned.expires_at,
            file_key=key,
        )

    async def complete_direct_upload(
        self,
        driver_id: str,
        file_key: str,
        type_code: str,
        is_front: bool = True,
        metadata: Optional[UploadMetadata] = None,
    ) -> DriverDocument:
        """
        Регистрирует файл, загруженный по подписанной ссылке.

        Повторный вызов для того же ключа возвращает уже созданный документ.
        """
        doc_type = await self._get_active_type(type_code)
        if not file_key.startswith(f"documents/{driver_id}/{doc_type.code}/"):
            raise ForbiddenError("file key does not belong to caller")

        try:
            stored = await self._storage.stat(file_key)
        except ObjectNotFoundError as e:
            raise InvalidInputError("file not found in storage") from e
        except StorageError as e:
            await log_error(f"Хранилище недоступно при проверке {file_key}: {e}")
            raise StorageFailureError("failed to verify uploaded file", cause=e) from e

        mime_type = stored.content_type or ""
        try:
            self._validate_file(stored.size, mime_type)
        except InvalidInputError:
            await log_warning(
                f"Отклонён файл прямой загрузки {file_key}",
                extra={"driver_id": driver_id, "mime_type": mime_type, "size": stored.size},
            )
            await self._discard(file_key)
            raise

        file_url = stored.url

        if not is_front:
            current = await self._repo.get_current_document(driver_id, doc_type.id)
            if current is None:
                raise NotFoundError("document not found")
            if current.back_file_key == file_key:
                return current
            self._check_back_side_allowed(current, doc_type)
            return await self._repo.attach_back_side(
                current.id, BACK_SIDE_UPLOAD_STATUSES, file_url, file_key, self._clock.now()
            )

        existing = await self._repo.get_current_document_by_file_key(driver_id, file_key)
        if existing is not None:
            return existing

        document = await self._create_version(
            driver_id,
            doc_type,
            self._new_id(),
            file_url,
            file_key,
            os.path.basename(file_key),
            stored.size,
            mime_type,
            metadata,
        )
        await log_info(
            f"Прямая загрузка {doc_type.code} v{document.version} завершена",
            extra={"driver_id": driver_id, "document_id": document.id},
        )
        return document

    # =========================================================================
    # ПРОВЕРКА АДМИНИСТРАТОРОМ
    # =========================================================================

    async def start_review(self, document_id: str, reviewer_id: str) -> DriverDocument:
        """pending -> under_review."""
        document = await self.get_document(document_id)
        if document.status != DocumentStatus.PENDING:
            raise InvalidStateError("document is not pending review")

        now = self._clock.now()
        updated = await self._repo.transition_document(
            document.id,
            [DocumentStatus.PENDING],
            DocumentStatus.UNDER_REVIEW,
            {},
            self._history(
                document.id,
                HistoryAction.REVIEW_STARTED,
                DocumentStatus.PENDING,
                DocumentStatus.UNDER_REVIEW,
                reviewer_id,
                now,
            ),
        )
        await log_info(f"Начата проверка документа {document.id}", extra={"reviewer_id": reviewer_id})
        return updated

    async def review(self, document_id: str, reviewer_id: str, decision: ReviewDecision) -> DriverDocument:
        """
        Решение администратора: approve, reject или request_resubmit.

        Допустимо только из pending и under_review. Для reject и
        request_resubmit причина обязательна.
        """
        reason = (decision.rejection_reason or "").strip()
        if decision.action in (ReviewAction.REJECT, ReviewAction.REQUEST_RESUBMIT) and not reason:
            raise InvalidInputError("rejection reason is required")

        document = await self.get_document(document_id)
        if document.status not in REVIEWABLE_DOCUMENT_STATUSES:
            raise InvalidStateError("document cannot be reviewed in its current status")

        new_status, action = _REVIEW_TARGETS[decision.action]
        now = self._clock.now()
        changes: dict = {
            "reviewed_by": reviewer_id,
            "reviewed_at": now,
            "review_notes": decision.notes,
        }
        if reason:
            changes["rejection_reason"] = reason

        # Ожидаем именно прочитанный статус, иначе журнал запишет неверный previous_status
        updated = await self._repo.transition_document(
            document.id,
            [document.status],
            new_status,
            changes,
            self._history(
                document.id,
                action,
                document.status,
                new_status,
                reviewer_id,
                now,
                notes=decision.notes or reason or None,
                metadata={"rejection_reason": reason} if reason else None,
            ),
        )
        await log_info(
            f"Документ {document.id}: {document.status.value} -> {new_status.value}",
            extra={"reviewer_id": reviewer_id, "driver_id": document.driver_id},
        )
        return updated

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def list_document_types(self) -> list[DocumentType]:
        return await self._repo.list_document_types()

    async def get_document(self, document_id: str, driver_id: Optional[str] = None) -> DriverDocument:
        """
        Возвращает документ; если передан driver_id, проверяет владельца.

        Raises:
            NotFoundError: документ не найден
            ForbiddenError: документ принадлежит другому водителю
        """
        document = await self._repo.get_document(document_id)
        if document is None:
            raise NotFoundError("document not found")
        if driver_id is not None and document.driver_id != driver_id:
            raise ForbiddenError("not your document")
        return document

    async def list_driver_documents(self, driver_id: str) -> list[DriverDocument]:
        return await self._repo.list_driver_documents(driver_id)

    async def get_document_history(self, document_id: str) -> list:
        await self.get_document(document_id)
        return await self._repo.get_document_history(document_id)

    async def get_verification_status(self, driver_id: str) -> DriverVerificationStatus:
        """Снимок верификации водителя."""
        now = self._clock.now()
        types = await self._repo.list_document_types()
        documents = await self._repo.list_driver_documents(driver_id)
        suspension = await self._repo.get_active_suspension(driver_id, now)
        return derive_verification_status(driver_id, types, documents, now.date(), suspension)

    async def _type_names(self) -> dict[str, str]:
        types = await self._repo.list_document_types(include_inactive=True)
        return {t.id: t.name for t in types}

    async def get_pending_reviews(self, limit: int = 20, offset: int = 0) -> tuple[list[PendingReviewDocument], int]:
        """Очередь на проверку: старые документы первыми."""
        if limit <= 0 or offset < 0:
            raise InvalidInputError("invalid pagination parameters")

        documents, total = await self._repo.list_pending_reviews(limit, offset)
        names = await self._type_names()
        now = self._clock.now()
        items = [
            PendingReviewDocument(
                document=doc,
                document_type_name=names.get(doc.document_type_id, doc.document_type_code or ""),
                hours_pending=round((now - doc.submitted_at).total_seconds() / 3600, 1),
            )
            for doc in documents
        ]
        return items, total

    async def get_expiring_documents(self, days_ahead: int = 30) -> list[ExpiringDocument]:
        """Одобренные документы, истекающие в ближайшие days_ahead дней."""
        if days_ahead < 0:
            raise InvalidInputError("days must be non-negative")

        today = self._clock.now().date()
        documents = await self._repo.list_expiring_documents(today + timedelta(days=days_ahead))
        names = await self._type_names()

        result = []
        for doc in documents:
            days_left = (doc.expiry_date - today).days  # type: ignore[operator]
            result.append(
                ExpiringDocument(
                    document=doc,
                    document_type_name=names.get(doc.document_type_id, doc.document_type_code or ""),
                    days_until_expiry=days_left,
                    urgency=expiry_urgency(days_left),
                )
            )
        return result

    # =========================================================================
    # СВИП ИСТЁКШИХ
    # =========================================================================

    async def expire_documents(self, batch_size: int = 100) -> int:
        """
        Переводит одобренные документы с expiry_date < сегодня в expired.

        Returns:
            Количество переведённых документов
        """
        now = self._clock.now()
        today: date = now.date()
        documents = await self._repo.list_documents_to_expire(today, batch_size)

        expired = 0
        for doc in documents:
            try:
                await self._repo.transition_document(
                    doc.id,
                    [DocumentStatus.APPROVED],
                    DocumentStatus.EXPIRED,
                    {},
                    self._history(
                        doc.id,
                        HistoryAction.EXPIRED,
                        DocumentStatus.APPROVED,
                        DocumentStatus.EXPIRED,
                        SYSTEM_ACTOR,
                        now,
                        notes=f"Document expired on {doc.expiry_date.isoformat()}",  # type: ignore[union-attr]
                    ),
                )
            except (ConflictError, NotFoundError):
                # Документ успели заменить или пересмотреть
                continue
            expired += 1

        if expired:
            await log_info(f"Истёк срок действия у {expired} документов", extra={"count": expired})
        return expired


def create_document_service(repo: DocumentRepository, storage: Storage) -> DocumentService:
    """Собирает DocumentService с параметрами из настроек."""
    from src.config import settings

    return DocumentService(
        repo,
        storage,
        max_upload_bytes=settings.documents.max_upload_bytes,
        allowed_mime_types=settings.documents.ALLOWED_MIME_TYPES,
        presigned_expiry=timedelta(minutes=settings.storage.PRESIGNED_URL_EXPIRY_MINUTES),
        ocr_max_retries=settings.ocr.OCR_MAX_RETRIES,
    )
