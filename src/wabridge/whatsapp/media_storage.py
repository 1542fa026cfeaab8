"""Local persistence of provider-hosted media.

Files land under MEDIA_ROOT/<modality dir>/ and are recorded by absolute
path. They are written to a `.part` sibling first and renamed into place
only after the full body arrived. A failed or empty download never leaves
a file behind.
"""

import mimetypes
import os
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, ContextManager

from wabridge.infra.time import epoch_millis

from .graph_client import MediaDownloadError, MediaStream, download_media
from .models import ChannelCredentials, Modality, NormalizedInboundEvent

DEFAULT_MEDIA_ROOT = "uploads"

MODALITY_DIRS: dict[Modality, str] = {
    Modality.IMAGE: "images",
    Modality.AUDIO: "audio",
    Modality.DOCUMENT: "documents",
}

_DEFAULT_EXTENSIONS: dict[Modality, str] = {
    Modality.IMAGE: ".jpg",
    Modality.AUDIO: ".ogg",
    Modality.DOCUMENT: ".bin",
}

# Preferred over mimetypes, whose answers vary across platforms
_KNOWN_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "audio/ogg": ".ogg",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/amr": ".amr",
    "application/pdf": ".pdf",
}

Downloader = Callable[[str, ChannelCredentials], ContextManager[MediaStream]]


@dataclass(frozen=True)
class StoredMedia:
    """A media object persisted on local disk."""

    path: str
    size: int
    mime_type: str | None
    original_filename: str | None


def get_media_root() -> Path:
    """Root directory for persisted media (MEDIA_ROOT, default ./uploads)."""
    return Path(os.environ.get("MEDIA_ROOT", DEFAULT_MEDIA_ROOT))


def ensure_media_dirs(root: Path | None = None) -> dict[str, bool]:
    """Create the modality directories; return which of them exist."""
    root = root or get_media_root()
    status: dict[str, bool] = {}
    for dirname in MODALITY_DIRS.values():
        path = root / dirname
        path.mkdir(parents=True, exist_ok=True)
        status[dirname] = path.is_dir()
    return status


def media_dirs_status(root: Path | None = None) -> dict[str, bool]:
    """Report existence of the media root and modality directories."""
    root = root or get_media_root()
    status = {"uploads": root.is_dir()}
    for dirname in MODALITY_DIRS.values():
        status[dirname] = (root / dirname).is_dir()
    return status


def extension_for(modality: Modality, mime_type: str | None, filename: str | None = None) -> str:
    """Pick a file extension from the MIME type, the original filename, or the modality."""
    if mime_type:
        base = mime_type.split(";")[0].strip().lower()
        if base in _KNOWN_EXTENSIONS:
            return _KNOWN_EXTENSIONS[base]
        guessed = mimetypes.guess_extension(base)
        if guessed:
            return guessed
    if filename:
        suffix = Path(filename).suffix
        if suffix:
            return suffix.lower()
    return _DEFAULT_EXTENSIONS.get(modality, ".bin")


def build_media_path(
    root: Path,
    business_id: int,
    event: NormalizedInboundEvent,
    mime_type: str | None,
    now: datetime | None = None,
) -> Path:
    """Modality-partitioned path: <root>/<dir>/<business>_<message id>_<epoch ms><ext>."""
    dirname = MODALITY_DIRS.get(event.modality)
    if dirname is None:
        raise ValueError(f"no media directory for modality {event.modality.value}")
    safe_message_id = "".join(c if c.isalnum() or c in "-_." else "_" for c in event.message_id)
    ext = extension_for(event.modality, mime_type, event.filename)
    return root / dirname / f"{business_id}_{safe_message_id}_{epoch_millis(now)}{ext}"


def store_media(
    event: NormalizedInboundEvent,
    business_id: int,
    credentials: ChannelCredentials,
    *,
    root: Path | None = None,
    downloader: Downloader = download_media,
) -> StoredMedia:
    """Download the event's media and persist it locally.

    Raises:
        CredentialExpiredError: If the provider rejected the token.
        MediaDownloadError: If there is no media id, the download failed, the
            body was empty, or the file could not be written.
    """
    if not event.media_id:
        raise MediaDownloadError("event carries no media id")

    # Absolute, so the cleanup operation finds files from any working directory
    root = (root or get_media_root()).absolute()

    with downloader(event.media_id, credentials) as stream:
        mime_type = stream.info.mime_type or event.mime_type
        final_path = build_media_path(root, business_id, event, mime_type)
        partial_path = final_path.with_name(final_path.name + ".part")

        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            size = 0
            with partial_path.open("wb") as out:
                for chunk in stream.chunks():
                    out.write(chunk)
                    size += len(chunk)
            if size == 0:
                raise MediaDownloadError("media body was empty")
            partial_path.replace(final_path)
        except OSError as e:
            _discard(partial_path)
            raise MediaDownloadError(f"could not write media file: {type(e).__name__}") from e
        except BaseException:
            _discard(partial_path)
            raise

    return StoredMedia(
        path=str(final_path),
        size=size,
        mime_type=mime_type,
        original_filename=event.filename,
    )


def discard_media(path: str) -> None:
    """Remove a stored media file; a missing file is not an error."""
    _discard(Path(path))


def _discard(path: Path) -> None:
    with suppress(OSError):
        path.unlink(missing_ok=True)
