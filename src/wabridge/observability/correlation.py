"""Correlation ID management for request tracing.

Each webhook request gets an ID, taken from the X-Correlation-ID header when
the caller sent a usable one. Everything logged while handling the request,
including work in the pipeline's worker thread, carries it.
"""

import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Header values are echoed into logs and responses
_VALID_CORRELATION_ID = re.compile(r"[A-Za-z0-9._\-]{1,128}")


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def resolve_correlation_id(header_value: str | None) -> str:
    """Use the caller's ID if it is well-formed, otherwise generate one."""
    if header_value and _VALID_CORRELATION_ID.fullmatch(header_value):
        return header_value
    return generate_correlation_id()


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(cid: str | None) -> Iterator[str]:
    """Bind a correlation ID for work outside a request (CLI operations)."""
    effective = cid or generate_correlation_id()
    token = set_correlation_id(effective)
    try:
        yield effective
    finally:
        reset_correlation_id(token)
