# src/worker/__init__.py
"""
Фоновые воркеры: OCR очередь, продление подписок, истечение документов.
"""

from src.worker.base import PollingWorker
from src.worker.expiry import DocumentExpiryWorker
from src.worker.ocr import OCRWorker
from src.worker.renewal import RenewalWorker

__all__ = ["PollingWorker", "OCRWorker", "RenewalWorker", "DocumentExpiryWorker"]
