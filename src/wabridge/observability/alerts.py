"""Operator alert channel.

Alerts go to a dedicated logger (`wabridge.alerts`) at CRITICAL level so log
routing can page on them independently of regular application errors.
"""

from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

ALERT_LOGGER_NAME = "wabridge.alerts"

alert_logger = get_logger(ALERT_LOGGER_NAME)


def alert_credential_expired(
    *,
    business_id: int,
    phone_number_id: str,
    operation: str,
    correlation_id: str | None = None,
) -> None:
    """Signal that a business's WhatsApp access token was rejected by the provider.

    Every outbound call for the business will keep failing until the token is
    rotated, so this is raised once per failing call and never downgraded.
    """
    alert_logger.critical(
        "whatsapp access token expired or revoked",
        extra={
            "extra_fields": {
                "alert": "credential_expired",
                # Provider channel id, not a phone number
                "phone_number_id": phone_number_id,
                **safe_log_context(
                    correlationId=correlation_id or "",
                    business_id=business_id,
                    operation=operation,
                ),
            }
        },
    )
