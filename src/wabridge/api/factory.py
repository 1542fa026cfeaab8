"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response

from wabridge.observability.correlation import (
    CORRELATION_ID_HEADER,
    reset_correlation_id,
    resolve_correlation_id,
    set_correlation_id,
)
from wabridge.observability.logging import get_logger
from wabridge.whatsapp.media_storage import ensure_media_dirs, get_media_root

from .routes import health, webhooks_whatsapp

logger = get_logger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Media directories must exist before the first download
    status = ensure_media_dirs()
    logger.info(
        "media directories ready",
        extra={"extra_fields": {"media_root": str(get_media_root()), **status}},
    )
    yield


def create_app() -> FastAPI:
    """Create the FastAPI app with webhook and health routes.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="WhatsApp AI Bridge",
        docs_url=None,
        redoc_url=None,
        lifespan=_lifespan,
    )

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = resolve_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(health.router)
    app.include_router(webhooks_whatsapp.router)

    return app
