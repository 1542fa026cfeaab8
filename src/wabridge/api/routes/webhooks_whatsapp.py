"""WhatsApp webhook routes - Cloud API integration.

GET  /webhook: subscription handshake (echo hub.challenge or 403)
POST /webhook: inbound events, processed synchronously through the pipeline

Security:
- Counterparty numbers and message bodies never reach the logs
- Optional HMAC signature check when WHATSAPP_APP_SECRET is set

Status policy: 200 "OK" for everything the provider cannot fix by retrying
(status callbacks, unknown channels, malformed bodies, failed sends). 500
only when the pipeline hard-failed, so the provider retries the event.
"""

import json
import os
from typing import Any

from fastapi import APIRouter, Header, Query, Request, Response
from starlette.concurrency import run_in_threadpool

from wabridge.domain.inbound_pipeline import InboundPipeline
from wabridge.infra.business_directory import BusinessDirectory
from wabridge.infra.conversation_store import ConversationStore
from wabridge.infra.db import StoreUnavailableError
from wabridge.observability.correlation import get_correlation_id
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context
from wabridge.services.response_generator import ResponseGenerator
from wabridge.whatsapp.meta_adapter import (
    HandshakeRejectedError,
    SignatureVerificationError,
    verify_handshake,
    verify_signature,
)

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

# Module-level pipeline (lazy init, can be overridden for tests)
_pipeline: InboundPipeline | None = None


def _get_pipeline() -> InboundPipeline:
    """Get pipeline instance (allows test injection)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = InboundPipeline(
            directory=BusinessDirectory(),
            store=ConversationStore(),
            generator=ResponseGenerator(),
        )
    return _pipeline


def _set_pipeline(pipeline: InboundPipeline | None) -> None:
    """Set pipeline instance (for tests)."""
    global _pipeline
    _pipeline = pipeline


def _resolve_expected_token(presented_token: str | None) -> str:
    """Expected verification secret for a handshake.

    A business secret matching the presented token wins; otherwise the
    WHATSAPP_VERIFY_TOKEN fallback applies.
    """
    fallback = os.environ.get("WHATSAPP_VERIFY_TOKEN", "")
    if not presented_token:
        return fallback
    try:
        if _get_pipeline().directory.has_verify_token(presented_token):
            return presented_token
    except StoreUnavailableError:
        logger.warning(
            "business directory unavailable during handshake, using fallback token",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
    return fallback


@router.get("/webhook")
async def verify_webhook(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
) -> Response:
    """Webhook subscription handshake.

    Returns:
        200 with hub.challenge if mode and token match.
        403 with empty body otherwise.
    """
    expected_token = await run_in_threadpool(_resolve_expected_token, hub_verify_token)

    try:
        challenge = verify_handshake(hub_mode, hub_verify_token, hub_challenge, expected_token)
    except HandshakeRejectedError as e:
        logger.warning(
            "webhook verification failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=get_correlation_id(),
                    hub_mode=hub_mode or "missing",
                    reason=str(e),
                )
            },
        )
        return Response(status_code=403)

    logger.info(
        "webhook verification successful",
        extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
    )
    return Response(status_code=200, content=challenge, media_type="text/plain")


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    x_hub_signature_256: str | None = Header(None, alias="X-Hub-Signature-256"),
) -> Response:
    """Receive a WhatsApp Cloud API webhook event.

    The pipeline runs in a worker thread that is not cancelled if the
    provider disconnects, so an accepted event always runs to completion.

    Returns:
        200 "OK" unless the pipeline hard-failed (500).
    """
    correlation_id = get_correlation_id()

    body_bytes = await request.body()

    app_secret = os.environ.get("WHATSAPP_APP_SECRET", "")
    if app_secret:
        try:
            verify_signature(body_bytes, x_hub_signature_256 or "", app_secret)
        except SignatureVerificationError as e:
            logger.warning(
                "webhook signature verification failed",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
            )
            return Response(status_code=200, content="OK")

    try:
        payload: Any = json.loads(body_bytes)
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=200, content="OK")

    pipeline = _get_pipeline()
    try:
        result = await run_in_threadpool(pipeline.handle_event, payload)
    except Exception:
        logger.exception(
            "webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="Internal Server Error")

    logger.info(
        "webhook processed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                status=result.status,
                delivery=result.delivery,
                used_fallback=result.used_fallback,
                media_missing=result.media_missing,
            )
        },
    )
    return Response(status_code=200, content="OK")
