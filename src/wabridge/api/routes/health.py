"""Health check route."""

import os
import time
from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from wabridge.infra.time import utc_now
from wabridge.whatsapp.media_storage import media_dirs_status

router = APIRouter()

_STARTED_AT = time.monotonic()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: float
    directories: dict[str, bool]
    environment: str


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    """Liveness plus media directory status."""
    return HealthResponse(
        status="ok",
        timestamp=utc_now(),
        uptime_seconds=round(time.monotonic() - _STARTED_AT, 3),
        directories=media_dirs_status(),
        environment=os.environ.get("APP_ENV", "development"),
    )
