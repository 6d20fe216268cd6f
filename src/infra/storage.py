# src/infra/storage.py
"""
Хранилище файлов документов.

Storage: порт (контракт). LocalStorage: реализация поверх файловой
системы с подписанными (HMAC-SHA256) ссылками для прямой загрузки.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import mimetypes
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

from src.common.clock import Clock, SystemClock
from src.common.logger import log_error, log_info


# Форматы фото документов, которых нет в части системных баз mimetypes
mimetypes.add_type("image/heic", ".heic")
mimetypes.add_type("image/webp", ".webp")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def guess_content_type(key: str) -> str:
    """MIME-тип объекта по расширению ключа."""
    return mimetypes.guess_type(key)[0] or DEFAULT_CONTENT_TYPE


def extension_for(content_type: str) -> str:
    """Расширение ключа для MIME-типа; пустая строка, если тип неизвестен."""
    return mimetypes.guess_extension(content_type) or ""


class StorageError(Exception):
    """Ошибка файлового хранилища."""


class ObjectNotFoundError(StorageError):
    """Объект с указанным ключом отсутствует."""


@dataclass
class StoredObject:
    """Сохранённый объект: результат загрузки или stat."""
    key: str
    url: str
    size: int
    content_type: Optional[str] = None


@dataclass
class PresignedURL:
    """Подписанная ссылка для прямой загрузки/скачивания."""
    url: str
    method: str
    expires_at: datetime
    headers: dict[str, str] = field(default_factory=dict)


class Storage(ABC):
    """
    Port: файловое хранилище.
    Все операции асинхронные; ошибки поднимаются как StorageError.
    """

    @abstractmethod
    async def upload(self, key: str, data: bytes, content_type: str) -> StoredObject:
        ...

    @abstractmethod
    async def download(self, key: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def stat(self, key: str) -> StoredObject:
        """Размер и MIME-тип объекта; ObjectNotFoundError, если его нет."""
        ...

    @abstractmethod
    def get_url(self, key: str) -> str:
        ...

    @abstractmethod
    async def get_presigned_upload_url(self, key: str, content_type: str, expiry: timedelta) -> PresignedURL:
        ...

    @abstractmethod
    async def get_presigned_download_url(self, key: str, expiry: timedelta) -> PresignedURL:
        ...

    @abstractmethod
    async def copy(self, src_key: str, dst_key: str) -> None:
        ...


class LocalStorage(Storage):
    """
    Хранилище на локальной файловой системе.

    Объекты лежат в base_dir/<key>, публичные ссылки строятся от public_url.
    Подпись ссылки: HMAC-SHA256(secret, "METHOD|key|expires").
    """

    def __init__(
        self,
        base_dir: str | Path,
        public_url: str,
        signing_secret: str,
        clock: Clock | None = None,
    ) -> None:
        self._base_dir = Path(base_dir).resolve()
        self._public_url = public_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")
        self._clock = clock or SystemClock()

    def _path_for(self, key: str) -> Path:
        """Путь к файлу ключа; ключи вне base_dir запрещены."""
        if not key or key.startswith("/"):
            raise StorageError(f"Некорректный ключ: {key!r}")
        path = (self._base_dir / key).resolve()
        if self._base_dir not in path.parents:
            raise StorageError(f"Ключ выходит за пределы хранилища: {key!r}")
        return path

    # -------------------------------------------------------------------------
    # Файловые операции
    # -------------------------------------------------------------------------

    async def upload(self, key: str, data: bytes, content_type: str) -> StoredObject:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".part")
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            await log_error(f"Ошибка записи файла {key}: {e}")
            raise StorageError(f"upload failed: {key}") from e

        await log_info(f"Файл сохранён: {key}", extra={"size": len(data), "content_type": content_type})
        return StoredObject(key=key, url=self.get_url(key), size=len(data), content_type=content_type)

    async def download(self, key: str) -> bytes:
        path = self._path_for(key)

        def _read() -> bytes:
            with open(path, "rb") as f:
                return f.read()

        try:
            return await asyncio.to_thread(_read)
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"object not found: {key}") from e
        except OSError as e:
            raise StorageError(f"download failed: {key}") from e

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageError(f"delete failed: {key}") from e

    async def exists(self, key: str) -> bool:
        path = self._path_for(key)
        return await asyncio.to_thread(path.is_file)

    async def stat(self, key: str) -> StoredObject:
        # Тип не хранится отдельно: приёмная сторона ссылок сверяет его с расширением ключа
        path = self._path_for(key)
        try:
            st = await asyncio.to_thread(path.stat)
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"object not found: {key}") from e
        except OSError as e:
            raise StorageError(f"stat failed: {key}") from e
        return StoredObject(key=key, url=self.get_url(key), size=st.st_size, content_type=guess_content_type(key))

    def get_url(self, key: str) -> str:
        return f"{self._public_url}/{quote(key)}"

    async def copy(self, src_key: str, dst_key: str) -> None:
        src = self._path_for(src_key)
        dst = self._path_for(dst_key)

        def _copy() -> None:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)

        try:
            await asyncio.to_thread(_copy)
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"object not found: {src_key}") from e
        except OSError as e:
            raise StorageError(f"copy failed: {src_key} -> {dst_key}") from e

    # -------------------------------------------------------------------------
    # Подписанные ссылки
    # -------------------------------------------------------------------------

    def _sign(self, method: str, key: str, expires: int) -> str:
        payload = f"{method}|{key}|{expires}".encode("utf-8")
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def _presign(self, method: str, key: str, expiry: timedelta) -> tuple[str, datetime]:
        self._path_for(key)
        expires_at = self._clock.now() + expiry
        expires = int(expires_at.timestamp())
        query = urlencode({
            "method": method,
            "expires": expires,
            "signature": self._sign(method, key, expires),
        })
        return f"{self.get_url(key)}?{query}", expires_at

    async def get_presigned_upload_url(self, key: str, content_type: str, expiry: timedelta) -> PresignedURL:
        url, expires_at = self._presign("PUT", key, expiry)
        return PresignedURL(
            url=url,
            method="PUT",
            expires_at=expires_at,
            headers={"Content-Type": content_type},
        )

    async def get_presigned_download_url(self, key: str, expiry: timedelta) -> PresignedURL:
        url, expires_at = self._presign("GET", key, expiry)
        return PresignedURL(url=url, method="GET", expires_at=expires_at)

    def verify_signature(self, method: str, key: str, expires: int, signature: str) -> bool:
        """Проверяет подпись ссылки (принимающая сторона прямой загрузки)."""
        if expires < int(self._clock.now().timestamp()):
            return False
        expected = self._sign(method.upper(), key, expires)
        return hmac.compare_digest(expected, signature)


def create_storage(clock: Clock | None = None) -> LocalStorage:
    """Создаёт хранилище документов по настройкам."""
    from src.config import settings

    cfg = settings.storage
    return LocalStorage(
        base_dir=cfg.STORAGE_BASE_DIR,
        public_url=cfg.STORAGE_PUBLIC_URL,
        signing_secret=cfg.STORAGE_SIGNING_SECRET,
        clock=clock,
    )
