"""Delete locally stored media older than the retention horizon.

Usage:
    DATABASE_URL=... python -m wabridge.operations.cleanup_media [--days N]

Removes files from disk first, then their media_files rows. Rows whose file
could not be removed are kept so a later run retries them.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from wabridge.infra.db import txn
from wabridge.infra.repositories.messages_repository import (
    delete_media_files,
    list_expired_media_files,
)
from wabridge.observability.correlation import correlation_scope
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_RETENTION_DAYS = 30


@dataclass(frozen=True)
class CleanupReport:
    files_deleted: int
    files_missing: int
    rows_deleted: int
    errors: int


def cleanup_media(older_than_days: int | None = None) -> CleanupReport:
    """Remove expired media files and their records.

    Args:
        older_than_days: Retention horizon; defaults to MEDIA_RETENTION_DAYS or 30.

    Returns:
        Counts of files deleted or already missing, rows deleted, and per-file errors.
    """
    days = older_than_days
    if days is None:
        days = int(os.environ.get("MEDIA_RETENTION_DAYS", DEFAULT_RETENTION_DAYS))

    with txn() as cur:
        expired = list_expired_media_files(cur, days)

    files_deleted = 0
    files_missing = 0
    errors = 0
    removable: list[int] = []

    for media_file_id, local_path in expired:
        path = Path(local_path)
        try:
            if path.exists():
                path.unlink()
                files_deleted += 1
            else:
                files_missing += 1
                logger.warning(
                    "media file already missing, removing its record",
                    extra={"extra_fields": safe_log_context(media_file_id=media_file_id)},
                )
            removable.append(media_file_id)
        except OSError as e:
            errors += 1
            logger.warning(
                "could not delete media file",
                extra={
                    "extra_fields": safe_log_context(
                        media_file_id=media_file_id,
                        error_type=type(e).__name__,
                    )
                },
            )

    with txn() as cur:
        rows_deleted = delete_media_files(cur, removable)

    report = CleanupReport(
        files_deleted=files_deleted,
        files_missing=files_missing,
        rows_deleted=rows_deleted,
        errors=errors,
    )
    logger.info(
        "media cleanup completed",
        extra={
            "extra_fields": safe_log_context(
                retention_days=days,
                files_deleted=report.files_deleted,
                files_missing=report.files_missing,
                rows_deleted=report.rows_deleted,
                errors=report.errors,
            )
        },
    )
    return report


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Delete expired WhatsApp media files.")
    parser.add_argument("--days", type=int, default=None, help="retention horizon in days")
    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        print("ERROR: DATABASE_URL not set")
        return 1

    with correlation_scope(None):
        report = cleanup_media(args.days)
    print(
        f"Files deleted: {report.files_deleted}\n"
        f"Files already missing: {report.files_missing}\n"
        f"Database records cleaned: {report.rows_deleted}\n"
        f"Errors encountered: {report.errors}"
    )
    return 0 if report.errors == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
