# src/services/documents/app.py
"""
FastAPI приложение для Documents Service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.common.constants import TypeMsg
from src.common.logger import log_info
from src.config import settings
from src.services.documents import admin_routes, files_routes, routes
from src.shared.http import register_exception_handlers
from src.shared.models.common import HealthStatus


# =============================================================================
# LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Жизненный цикл приложения."""
    await log_info("Documents Service запускается...", type_msg=TypeMsg.INFO)

    from src.services.documents.dependencies import cleanup_dependencies, init_dependencies
    await init_dependencies()

    yield

    await cleanup_dependencies()
    await log_info("Documents Service остановлен", type_msg=TypeMsg.INFO)


# =============================================================================
# ПРИЛОЖЕНИЕ
# =============================================================================

def create_app() -> FastAPI:
    """Собирает приложение: маршруты под /api/v1, обработчики ошибок, /health."""
    application = FastAPI(
        title="Documents Service",
        description="Загрузка, OCR и проверка документов водителей",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # В продакшене ограничить
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(application)

    application.include_router(routes.router, prefix="/api/v1")
    application.include_router(admin_routes.router, prefix="/api/v1")
    application.include_router(files_routes.router)

    @application.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        """Проверка здоровья сервиса."""
        from src.services.documents.dependencies import get_db

        deps = {}
        try:
            db = await get_db()
            deps["postgres"] = "healthy" if await db.health_check() else "unhealthy"
        except RuntimeError:
            deps["postgres"] = "unhealthy"

        overall = "healthy" if all(v == "healthy" for v in deps.values()) else "degraded"
        return HealthStatus(
            service="documents_service",
            status=overall,
            version=settings.system.VERSION,
            dependencies=deps,
        )

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.services.documents.app:app",
        host="0.0.0.0",
        port=settings.deployment.DOCUMENTS_SERVICE_PORT,
        reload=settings.system.DEBUG,
    )
