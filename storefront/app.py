"""
FastAPI application entry point for the storefront service.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from storefront.config import get_settings
from storefront.routes import router
from storefront.schemas import HealthResponse

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Storefront Backend (FastAPI)", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)

    @app.get("/health", response_model=HealthResponse)
    def health():
        return HealthResponse(status="ok")

    if settings.use_in_memory_backends or not settings.supabase_url:
        logger.warning("Running with in-memory backends; data is not persisted")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
