# tests/infra/test_database.py
"""
Тесты для менеджера базы данных и перевода ошибок asyncpg.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from src.common.errors import (
    ConflictError,
    DependencyUnavailableError,
    ErrorKind,
    InternalError,
    NotFoundError,
)
from src.infra.database import (
    SCHEMA_LOCK_ID,
    DatabaseManager,
    _init_schema,
    db_errors,
    retry_on_connection_error,
    translate_db_error,
)


def _pool_with(conn: MagicMock) -> MagicMock:
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = None
    return pool


@pytest.fixture
def db_manager() -> DatabaseManager:
    DatabaseManager._instance = None
    DatabaseManager._pool = None
    return DatabaseManager()


class TestRetryOnConnectionError:
    """Повтор запросов при обрыве соединения."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        calls = 0

        @retry_on_connection_error(max_attempts=3, delay=0.001)
        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise asyncpg.PostgresConnectionError("connection lost")
            return "ok"

        assert await flaky() == "ok"
        assert calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        calls = 0

        @retry_on_connection_error(max_attempts=2, delay=0.001)
        async def always_down() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionRefusedError("refused")

        with pytest.raises(ConnectionRefusedError):
            await always_down()
        assert calls == 2

    @pytest.mark.asyncio
    async def test_query_errors_not_retried(self) -> None:
        calls = 0

        @retry_on_connection_error(max_attempts=3, delay=0.001)
        async def duplicate() -> None:
            nonlocal calls
            calls += 1
            raise asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(asyncpg.UniqueViolationError):
            await duplicate()
        assert calls == 1


class TestTranslateDbError:
    """Перевод исключений БД в ошибки сервисного слоя."""

    def test_unique_violation_is_conflict(self) -> None:
        cause = asyncpg.UniqueViolationError("duplicate key value")
        error = translate_db_error(cause, "plan slug already exists")

        assert isinstance(error, ConflictError)
        assert error.message == "plan slug already exists"
        assert error.cause is cause

    @pytest.mark.parametrize(
        "cause",
        [
            asyncpg.PostgresConnectionError("gone"),
            asyncpg.InterfaceError("pool closed"),
            asyncio.TimeoutError(),
        ],
    )
    def test_connection_problems_are_dependency_unavailable(self, cause: BaseException) -> None:
        error = translate_db_error(cause)
        assert isinstance(error, DependencyUnavailableError)
        assert error.kind is ErrorKind.DEPENDENCY_UNAVAILABLE

    def test_other_errors_are_internal(self) -> None:
        error = translate_db_error(asyncpg.DataError("bad value"))
        assert isinstance(error, InternalError)

    def test_service_error_passes_through(self) -> None:
        original = NotFoundError("document not found")
        assert translate_db_error(original) is original


class TestDbErrorsContext:
    """Контекст db_errors."""

    @pytest.mark.asyncio
    async def test_translates_and_chains(self) -> None:
        cause = asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(ConflictError) as exc_info:
            async with db_errors("create_plan"):
                raise cause

        assert exc_info.value.__cause__ is cause

    @pytest.mark.asyncio
    async def test_service_errors_unchanged(self) -> None:
        with pytest.raises(NotFoundError):
            async with db_errors("get_document"):
                raise NotFoundError()

    @pytest.mark.asyncio
    async def test_logs_operation(self) -> None:
        with patch("src.infra.database.log_error", new_callable=AsyncMock) as mock_log:
            with pytest.raises(InternalError):
                async with db_errors("renew_subscription"):
                    raise RuntimeError("boom")

        extra = mock_log.call_args.kwargs["extra"]
        assert extra == {"operation": "renew_subscription", "kind": "internal"}


class TestDatabaseManager:
    """Пул соединений и запросы."""

    def test_singleton(self, db_manager: DatabaseManager) -> None:
        assert DatabaseManager() is db_manager

    def test_pool_not_initialized(self, db_manager: DatabaseManager) -> None:
        assert db_manager.is_connected is False
        with pytest.raises(RuntimeError, match="Пул соединений не инициализирован"):
            _ = db_manager.pool

    @pytest.mark.asyncio
    async def test_connect_once(self, db_manager: DatabaseManager) -> None:
        with patch("asyncpg.create_pool", new_callable=AsyncMock, return_value=MagicMock()) as create:
            await db_manager.connect(dsn="postgresql://u:p@localhost/test", min_size=1, max_size=2)
            await db_manager.connect(dsn="postgresql://u:p@localhost/test")

        create.assert_awaited_once()
        assert create.call_args.kwargs["max_size"] == 2
        assert db_manager.is_connected is True

    @pytest.mark.asyncio
    async def test_disconnect(self, db_manager: DatabaseManager) -> None:
        pool = AsyncMock()
        db_manager._pool = pool

        await db_manager.disconnect()
        await db_manager.disconnect()

        pool.close.assert_awaited_once()
        assert db_manager.is_connected is False

    @pytest.mark.asyncio
    async def test_query_helpers(self, db_manager: DatabaseManager) -> None:
        conn = AsyncMock()
        conn.execute.return_value = "UPDATE 1"
        conn.fetch.return_value = [{"id": "doc-1"}]
        conn.fetchrow.return_value = {"id": "doc-1"}
        conn.fetchval.return_value = 3
        db_manager._pool = _pool_with(conn)

        assert await db_manager.execute("UPDATE driver_documents SET status = $1", "approved") == "UPDATE 1"
        assert await db_manager.fetch("SELECT id FROM driver_documents") == [{"id": "doc-1"}]
        assert (await db_manager.fetchrow("SELECT id FROM driver_documents LIMIT 1"))["id"] == "doc-1"
        assert await db_manager.fetchval("SELECT count(*) FROM ocr_processing_queue") == 3
        conn.execute.assert_awaited_once_with("UPDATE driver_documents SET status = $1", "approved")

    @pytest.mark.asyncio
    async def test_transaction_yields_connection(self, db_manager: DatabaseManager) -> None:
        conn = MagicMock()
        conn.transaction.return_value.__aenter__.return_value = None
        conn.transaction.return_value.__aexit__.return_value = None
        db_manager._pool = _pool_with(conn)

        async with db_manager.transaction() as tx:
            assert tx is conn
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_health_check(self, db_manager: DatabaseManager) -> None:
        conn = AsyncMock()
        conn.fetchval.return_value = 1
        db_manager._pool = _pool_with(conn)

        assert await db_manager.health_check() is True

        conn.fetchval.side_effect = asyncpg.DataError("bad")
        assert await db_manager.health_check() is False


class TestInitSchema:
    """Применение migrations/init.sql."""

    @pytest.mark.asyncio
    async def test_applies_schema_under_advisory_lock(self, tmp_path: Path) -> None:
        (tmp_path / "migrations").mkdir()
        (tmp_path / "migrations" / "init.sql").write_text("CREATE TABLE t (id int);", encoding="utf-8")
        conn = AsyncMock()
        db = MagicMock()
        db.transaction.return_value.__aenter__.return_value = conn
        db.transaction.return_value.__aexit__.return_value = None

        with patch("src.config.loader.get_project_root", return_value=tmp_path):
            await _init_schema(db)

        statements = [call.args[0] for call in conn.execute.await_args_list]
        assert statements == [f"SELECT pg_advisory_xact_lock({SCHEMA_LOCK_ID})", "CREATE TABLE t (id int);"]

    @pytest.mark.asyncio
    async def test_missing_schema_file(self, tmp_path: Path) -> None:
        db = MagicMock()

        with patch("src.config.loader.get_project_root", return_value=tmp_path):
            await _init_schema(db)

        db.transaction.assert_not_called()

    def test_project_schema_exists(self, project_root: Path) -> None:
        schema = (project_root / "migrations" / "init.sql").read_text(encoding="utf-8")
        for table in ("driver_documents", "ocr_processing_queue", "subscription_plans", "subscriptions"):
            assert table in schema
