# src/core/documents/ocr.py
"""
OCR процессоры документов.

OCRProcessor: порт. Реализации: mock (разработка и тесты), Google Cloud Vision
и AWS Textract (оба через REST API поверх httpx). Извлечение номера документа
и срока действия из сырого текста общее для всех провайдеров.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Optional

import httpx
from dateutil.relativedelta import relativedelta

from src.common.clock import Clock, SystemClock
from src.common.constants import OCRProvider
from src.common.logger import get_logger
from src.core.documents.models import OCRResult


class OCRProcessingError(Exception):
    """
    Ошибка распознавания.

    transient=True означает, что задачу можно повторить позже.
    """

    def __init__(self, message: str, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class OCRProcessor(ABC):
    """Port: распознавание текста документа."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Метка провайдера (сохраняется в задаче)."""
        ...

    @abstractmethod
    async def process_document(self, image_data: bytes, mime_type: str) -> OCRResult:
        ...


# =============================================================================
# ИЗВЛЕЧЕНИЕ ПОЛЕЙ
# =============================================================================

_DOCUMENT_NUMBER_PATTERNS = [
    re.compile(r"\b(?:license|licence|dl|no|number)[:.\s#]*([A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE),
    re.compile(r"\b([A-Z]{2}[0-9]{6,})\b"),
]

_EXPIRY_PATTERNS = [
    re.compile(r"exp(?:iry|ires)?[:.\s]*(\d{2}[/-]\d{2}[/-]\d{4})", re.IGNORECASE),
    re.compile(r"valid\s*(?:until|till)[:\s]*(\d{2}[/-]\d{2}[/-]\d{4})", re.IGNORECASE),
]

# Сначала европейский формат, затем американский
_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%m/%d/%Y", "%m-%d-%Y")


def parse_document_date(value: str) -> Optional[date]:
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def extract_document_number(text: str) -> Optional[str]:
    """Ищет номер документа по ключевым словам или по шаблону AA123456."""
    for pattern in _DOCUMENT_NUMBER_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).upper()
    return None


def extract_expiry_date(text: str) -> Optional[date]:
    """Ищет срок действия ("Exp: 31/12/2027", "Valid until 31-12-2027")."""
    for pattern in _EXPIRY_PATTERNS:
        match = pattern.search(text)
        if match:
            parsed = parse_document_date(match.group(1))
            if parsed is not None:
                return parsed
    return None


def _clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, value))


# Ошибки разбора ответа неожиданной формы
_MALFORMED_RESPONSE_ERRORS = (AttributeError, TypeError, KeyError, IndexError, ValueError)


def _json_object(response: httpx.Response, provider: str) -> dict[str, Any]:
    """Тело ответа провайдера как JSON-объект; иначе повторяемая OCRProcessingError."""
    try:
        body = response.json()
    except ValueError as e:
        raise OCRProcessingError(f"{provider} returned non-JSON response") from e
    if not isinstance(body, dict):
        raise OCRProcessingError(f"{provider} returned unexpected response: {type(body).__name__}")
    return body


# =============================================================================
# MOCK
# =============================================================================

class MockOCRProcessor(OCRProcessor):
    """Имитация OCR для разработки и тестов."""

    def __init__(
        self,
        confidence: float = 0.95,
        clock: Optional[Clock] = None,
        delay: float = 0.0,
    ) -> None:
        self.confidence = _clamp_confidence(confidence)
        self.clock = clock or SystemClock()
        self.delay = delay

    @property
    def name(self) -> str:
        return OCRProvider.MOCK.value

    async def process_document(self, image_data: bytes, mime_type: str) -> OCRResult:
        if self.delay:
            await asyncio.sleep(self.delay)

        now = self.clock.now()
        today = now.date()
        return OCRResult(
            raw_text="Mock OCR extracted text",
            confidence=self.confidence,
            document_number=f"DL{int(now.timestamp()) % 1000000}",
            full_name="Mock Driver Name",
            issue_date=today - relativedelta(years=1),
            expiry_date=today + relativedelta(years=2),
            issuing_authority="Mock Authority",
            metadata={
                "processor": self.name,
                "processed_at": now.isoformat(),
                "bytes": len(image_data),
            },
        )


# =============================================================================
# GOOGLE CLOUD VISION
# =============================================================================

class GoogleVisionProcessor(OCRProcessor):
    """Google Cloud Vision, images:annotate с DOCUMENT_TEXT_DETECTION."""

    ENDPOINT = "https://vision.googleapis.com/v1/images:annotate"

    def __init__(
        self,
        api_key: str,
        project_id: str = "",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.project_id = project_id
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return OCRProvider.GOOGLE_VISION.value

    async def close(self) -> None:
        await self.client.aclose()

    async def process_document(self, image_data: bytes, mime_type: str) -> OCRResult:
        if not self.api_key:
            raise OCRProcessingError("Google Vision API not configured: missing API key", transient=False)

        payload = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(image_data).decode("ascii")},
                    "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
                }
            ]
        }
        headers = {"x-goog-user-project": self.project_id} if self.project_id else {}

        try:
            response = await self.client.post(
                self.ENDPOINT,
                params={"key": self.api_key},
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise OCRProcessingError(f"Google Vision request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise OCRProcessingError(f"Google Vision error {response.status_code}")
        if response.status_code >= 400:
            raise OCRProcessingError(f"Google Vision rejected request {response.status_code}", transient=False)

        body = _json_object(response, "Google Vision")
        try:
            annotation = (body.get("responses") or [{}])[0]
            error = annotation.get("error")
            full_text = annotation.get("fullTextAnnotation") or {}
            text = str(full_text.get("text", ""))
            pages = full_text.get("pages") or []
            confidences = [float(p["confidence"]) for p in pages if "confidence" in p]
            confidence = sum(confidences) / len(confidences) if confidences else 0.0
        except _MALFORMED_RESPONSE_ERRORS as e:
            raise OCRProcessingError(f"Google Vision returned malformed response: {e!r}") from e

        if error is not None:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise OCRProcessingError(f"Google Vision error: {message}")

        return OCRResult(
            raw_text=text,
            confidence=_clamp_confidence(confidence),
            document_number=extract_document_number(text),
            expiry_date=extract_expiry_date(text),
            metadata={"processor": self.name, "pages": len(pages), "mime_type": mime_type},
            raw_response=annotation,
        )


# =============================================================================
# AWS TEXTRACT
# =============================================================================

class AWSTextractProcessor(OCRProcessor):
    """AWS Textract DetectDocumentText через JSON API с подписью SigV4."""

    SERVICE = "textract"
    TARGET = "Textract.DetectDocumentText"
    CONTENT_TYPE = "application/x-amz-json-1.1"

    def __init__(
        self,
        region: str,
        access_key_id: str,
        secret_access_key: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.region = region
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.clock = clock or SystemClock()

    @property
    def name(self) -> str:
        return OCRProvider.AWS_TEXTRACT.value

    @property
    def host(self) -> str:
        return f"textract.{self.region}.amazonaws.com"

    async def close(self) -> None:
        await self.client.aclose()

    def sign_headers(self, body: bytes, now: datetime) -> dict[str, str]:
        """Заголовки запроса с подписью AWS Signature Version 4."""
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")

        canonical_headers = (
            f"content-type:{self.CONTENT_TYPE}\n"
            f"host:{self.host}\n"
            f"x-amz-date:{amz_date}\n"
            f"x-amz-target:{self.TARGET}\n"
        )
        signed_headers = "content-type;host;x-amz-date;x-amz-target"
        payload_hash = hashlib.sha256(body).hexdigest()
        canonical_request = f"POST\n/\n\n{canonical_headers}\n{signed_headers}\n{payload_hash}"

        scope = f"{date_stamp}/{self.region}/{self.SERVICE}/aws4_request"
        string_to_sign = (
            f"AWS4-HMAC-SHA256\n{amz_date}\n{scope}\n"
            f"{hashlib.sha256(canonical_request.encode()).hexdigest()}"
        )

        def _sign(key: bytes, msg: str) -> bytes:
            return hmac.new(key, msg.encode(), hashlib.sha256).digest()

        k_date = _sign(f"AWS4{self.secret_access_key}".encode(), date_stamp)
        k_region = _sign(k_date, self.region)
        k_service = _sign(k_region, self.SERVICE)
        k_signing = _sign(k_service, "aws4_request")
        signature = hmac.new(k_signing, string_to_sign.encode(), hashlib.sha256).hexdigest()

        return {
            "Content-Type": self.CONTENT_TYPE,
            "X-Amz-Date": amz_date,
            "X-Amz-Target": self.TARGET,
            "Authorization": (
                f"AWS4-HMAC-SHA256 Credential={self.access_key_id}/{scope}, "
                f"SignedHeaders={signed_headers}, Signature={signature}"
            ),
        }

    async def process_document(self, image_data: bytes, mime_type: str) -> OCRResult:
        if not self.region or not self.access_key_id or not self.secret_access_key:
            raise OCRProcessingError("AWS Textract not configured: missing credentials", transient=False)

        body = json.dumps({"Document": {"Bytes": base64.b64encode(image_data).decode("ascii")}}).encode()
        headers = self.sign_headers(body, self.clock.now())

        try:
            response = await self.client.post(f"https://{self.host}/", content=body, headers=headers)
        except httpx.HTTPError as e:
            raise OCRProcessingError(f"Textract request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise OCRProcessingError(f"Textract error {response.status_code}")
        if response.status_code >= 400:
            raise OCRProcessingError(f"Textract rejected request {response.status_code}", transient=False)

        data = _json_object(response, "Textract")
        try:
            lines = [b for b in data.get("Blocks") or [] if b.get("BlockType") == "LINE"]
            text = "\n".join(str(b.get("Text", "")) for b in lines)
            # Textract отдаёт уверенность в процентах
            confidence = sum(float(b.get("Confidence", 0.0)) for b in lines) / len(lines) / 100 if lines else 0.0
            pages = (data.get("DocumentMetadata") or {}).get("Pages")
        except _MALFORMED_RESPONSE_ERRORS as e:
            raise OCRProcessingError(f"Textract returned malformed response: {e!r}") from e

        return OCRResult(
            raw_text=text,
            confidence=_clamp_confidence(confidence),
            document_number=extract_document_number(text),
            expiry_date=extract_expiry_date(text),
            metadata={
                "processor": self.name,
                "lines": len(lines),
                "pages": pages,
                "mime_type": mime_type,
            },
            raw_response=data,
        )


# =============================================================================
# ФАБРИКА
# =============================================================================

def build_ocr_processor(ocr_settings: Any, clock: Optional[Clock] = None) -> OCRProcessor:
    """Создаёт процессор по настройке OCR_PROVIDER (неизвестное значение -> mock)."""
    provider = ocr_settings.OCR_PROVIDER
    timeout = ocr_settings.OCR_PROCESSOR_TIMEOUT

    if provider == OCRProvider.GOOGLE_VISION.value:
        return GoogleVisionProcessor(
            api_key=ocr_settings.GOOGLE_VISION_API_KEY,
            project_id=ocr_settings.GOOGLE_PROJECT_ID,
            timeout=timeout,
        )
    if provider == OCRProvider.AWS_TEXTRACT.value:
        return AWSTextractProcessor(
            region=ocr_settings.AWS_REGION,
            access_key_id=ocr_settings.AWS_ACCESS_KEY_ID,
            secret_access_key=ocr_settings.AWS_SECRET_ACCESS_KEY,
            timeout=timeout,
            clock=clock,
        )
    if provider != OCRProvider.MOCK.value:
        get_logger(__name__).warning(f"Неизвестный OCR провайдер '{provider}', используется mock")
    return MockOCRProcessor(clock=clock)
