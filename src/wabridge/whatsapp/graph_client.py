"""Outbound calls to the WhatsApp Cloud (Graph) API.

Every function takes the business's ChannelCredentials explicitly. There is
no module-level "current business": concurrent events for different
businesses must never share credentials.

Security: NEVER log recipient numbers, message bodies, media URLs or tokens.
Only log hashes and lengths.
"""

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

import requests

from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import hash_identifier, safe_log_context

from .models import ChannelCredentials, MediaInfo, ProviderReceipt

logger = get_logger(__name__)

# Default Graph API version and host
DEFAULT_GRAPH_API_VERSION = "v18.0"
DEFAULT_GRAPH_BASE_URL = "https://graph.facebook.com"

# Timeout for HTTP requests (seconds)
DEFAULT_HTTP_TIMEOUT = 10

# Retry config (sends only; 5xx and network errors)
MAX_RETRIES = 1
RETRY_DELAY = 0.2

DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Graph error codes meaning the access token is expired, revoked or invalid
_CREDENTIAL_ERROR_CODES = frozenset({102, 190})


class GraphApiError(Exception):
    """Base class for WhatsApp Cloud API failures."""

    pass


class CredentialExpiredError(GraphApiError):
    """The provider rejected the business access token (expired or revoked)."""

    pass


class MediaDownloadError(GraphApiError):
    """Media could not be resolved or fetched."""

    pass


class SendError(GraphApiError):
    """An outbound message was not accepted by the provider."""

    pass


def _graph_base_url() -> str:
    base = os.environ.get("WHATSAPP_GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL).rstrip("/")
    version = os.environ.get("WHATSAPP_GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION)
    return f"{base}/{version}"


def _http_timeout() -> float:
    return float(os.environ.get("WHATSAPP_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT))


def _auth_headers(credentials: ChannelCredentials) -> dict[str, str]:
    return {"Authorization": f"Bearer {credentials.access_token}"}


def _error_details(response: requests.Response) -> dict[str, Any]:
    """Extract the Graph `error` object from a failed response, if any."""
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


def is_credential_error(response: requests.Response) -> bool:
    """True when a failed response means the access token is no longer valid."""
    if response.status_code == 401:
        return True
    return _error_details(response).get("code") in _CREDENTIAL_ERROR_CODES


def resolve_media(media_id: str, credentials: ChannelCredentials) -> MediaInfo:
    """Resolve a media id to its transient download URL.

    Raises:
        CredentialExpiredError: If the token was rejected.
        MediaDownloadError: On any other failure, including timeout.
    """
    url = f"{_graph_base_url()}/{media_id}"
    try:
        response = requests.get(url, headers=_auth_headers(credentials), timeout=_http_timeout())
    except requests.RequestException as e:
        raise MediaDownloadError(f"media lookup failed: {type(e).__name__}") from e

    if not response.ok:
        if is_credential_error(response):
            raise CredentialExpiredError("access token rejected during media lookup")
        raise MediaDownloadError(f"media lookup returned {response.status_code}")

    try:
        body = response.json()
    except ValueError as e:
        raise MediaDownloadError("media lookup returned invalid json") from e

    media_url = body.get("url") if isinstance(body, dict) else None
    if not media_url:
        raise MediaDownloadError("media lookup returned no url")

    try:
        file_size = int(body["file_size"])
    except (KeyError, TypeError, ValueError):
        file_size = None

    return MediaInfo(url=media_url, mime_type=body.get("mime_type"), file_size=file_size)


@dataclass
class MediaStream:
    """An open media download. Iterate `chunks()` inside the download_media block."""

    info: MediaInfo
    response: requests.Response

    def chunks(self) -> Iterator[bytes]:
        try:
            for chunk in self.response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise MediaDownloadError(f"media stream interrupted: {type(e).__name__}") from e


@contextmanager
def download_media(media_id: str, credentials: ChannelCredentials) -> Iterator[MediaStream]:
    """Open a streamed download of a media object.

    Two authenticated calls: resolve the id to a transient URL, then GET the
    bytes. The HTTP response is always closed when the block exits.

    Example:
        with download_media(media_id, creds) as stream:
            for chunk in stream.chunks():
                out.write(chunk)

    Raises:
        CredentialExpiredError: If the token was rejected on either call.
        MediaDownloadError: On any other failure, including timeout.
    """
    info = resolve_media(media_id, credentials)

    try:
        response = requests.get(
            info.url,
            headers=_auth_headers(credentials),
            timeout=_http_timeout(),
            stream=True,
        )
    except requests.RequestException as e:
        raise MediaDownloadError(f"media fetch failed: {type(e).__name__}") from e

    try:
        if not response.ok:
            if is_credential_error(response):
                raise CredentialExpiredError("access token rejected during media fetch")
            raise MediaDownloadError(f"media fetch returned {response.status_code}")
        mime_type = info.mime_type or response.headers.get("Content-Type")
        yield MediaStream(info=MediaInfo(info.url, mime_type, info.file_size), response=response)
    finally:
        response.close()


def send_text(
    to: str,
    body: str,
    credentials: ChannelCredentials,
    *,
    correlation_id: str | None = None,
) -> ProviderReceipt:
    """Send a text message.

    Args:
        to: Recipient phone number. NEVER logged.
        body: Message text. NEVER logged.
        credentials: The sending business's channel credentials.
        correlation_id: Optional correlation ID for tracing.

    Raises:
        CredentialExpiredError: If the token was rejected.
        SendError: On any other failure after retry.
    """
    return _send_message(
        to,
        {"type": "text", "text": {"body": body}},
        credentials,
        log_ctx={"text_len": len(body)},
        correlation_id=correlation_id,
    )


def send_image(
    to: str,
    link: str,
    credentials: ChannelCredentials,
    *,
    caption: str = "",
    correlation_id: str | None = None,
) -> ProviderReceipt:
    """Send an image by public link. Same failure kinds as send_text."""
    return _send_message(
        to,
        {"type": "image", "image": {"link": link, "caption": caption}},
        credentials,
        log_ctx={"caption_len": len(caption)},
        correlation_id=correlation_id,
    )


def send_audio(
    to: str,
    link: str,
    credentials: ChannelCredentials,
    *,
    correlation_id: str | None = None,
) -> ProviderReceipt:
    """Send an audio clip by public link. Same failure kinds as send_text."""
    return _send_message(
        to,
        {"type": "audio", "audio": {"link": link}},
        credentials,
        log_ctx={},
        correlation_id=correlation_id,
    )


def _send_message(
    to: str,
    content: dict[str, Any],
    credentials: ChannelCredentials,
    *,
    log_ctx: dict[str, Any],
    correlation_id: str | None,
) -> ProviderReceipt:
    """POST /{phone_number_id}/messages with retry on 5xx and network errors."""
    url = f"{_graph_base_url()}/{credentials.phone_number_id}/messages"
    payload = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to, **content}
    headers = {"Content-Type": "application/json", **_auth_headers(credentials)}

    # Safe logging context - NEVER include `to` or the body
    ctx = safe_log_context(
        correlationId=correlation_id or "",
        to_hash=hash_identifier(to),
        type=content["type"],
        **log_ctx,
    )

    logger.info("sending outbound whatsapp message", extra={"extra_fields": ctx})

    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=_http_timeout())
        except requests.RequestException as e:
            if attempt < MAX_RETRIES:
                logger.warning(
                    "outbound send failed, retrying",
                    extra={"extra_fields": {**ctx, "attempt": attempt, "error_type": type(e).__name__}},
                )
                time.sleep(RETRY_DELAY)
                continue
            logger.error(
                "outbound send failed",
                extra={"extra_fields": {**ctx, "attempt": attempt, "error_type": type(e).__name__}},
            )
            raise SendError(f"send failed: {type(e).__name__}") from e

        if response.ok:
            message_id = None
            try:
                messages = response.json().get("messages") or []
                message_id = messages[0].get("id") if messages else None
            except (ValueError, AttributeError, IndexError):
                pass
            logger.info(
                "outbound whatsapp message sent",
                extra={"extra_fields": {**ctx, "attempt": attempt}},
            )
            return ProviderReceipt(message_id=message_id, to=to)

        if is_credential_error(response):
            raise CredentialExpiredError("access token rejected during send")

        if attempt < MAX_RETRIES and response.status_code >= 500:
            logger.warning(
                "outbound send failed, retrying",
                extra={"extra_fields": {**ctx, "attempt": attempt, "status": response.status_code}},
            )
            time.sleep(RETRY_DELAY)
            continue

        logger.error(
            "outbound send failed",
            extra={
                "extra_fields": {
                    **ctx,
                    "attempt": attempt,
                    "status": response.status_code,
                    "error_code": _error_details(response).get("code"),
                }
            },
        )
        raise SendError(f"send returned {response.status_code}")

    # Loop always returns or raises
    raise SendError("send failed")
