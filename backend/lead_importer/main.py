"""FastAPI application bootstrap and router wiring."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lead_importer.api.routers import health, jobs, uploads, workers
from lead_importer.core.config import get_settings

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and include top-level routers."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(title=settings.app_name, version="0.1.0")

    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    app.include_router(health.router)
    # Worker routes first so GET /parse and /commit are not read as job ids.
    app.include_router(workers.router, prefix="/api/import", tags=["workers"])
    app.include_router(uploads.router, prefix="/api/import", tags=["uploads"])
    app.include_router(jobs.router, prefix="/api/import", tags=["jobs"])

    return app


app = create_app()
