from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Union

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ai.routes import router as ai_router
from db.postgres import close_postgres, init_postgres
from settings.config import settings
from settings.logging_config import configure_logging
from sync.sync_routes import router as sync_router
from sync.sync_service import ADAPTERS
from transactions.transaction_routes import router as transactions_router
from upload_service.upload_route import router as upload_router
import logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Connecting to Postgres (create_schema=%s)", settings.CREATE_SCHEMA)
    await init_postgres(create_schema=settings.CREATE_SCHEMA)
    try:
        yield
    finally:
        logger.info("Disposing Postgres engine")
        await close_postgres()


def get_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Ledgerflow Ingestion API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(upload_router)
    app.include_router(sync_router)
    app.include_router(transactions_router)
    app.include_router(ai_router)
    logger.info("Routers registered: ingestion, sync (%s), transactions, ai", ", ".join(sorted(ADAPTERS)))

    @app.get("/health")
    async def health_check() -> Dict[str, Union[str, bool, int]]:
        return {
            "status": "ok",
            "fallback_configured": bool(settings.OPENAI_API_KEY),
            "confidence_threshold": settings.CONFIDENCE_THRESHOLD,
        }

    return app


# ASGI app instance
app = get_app()
