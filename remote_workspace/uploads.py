"""Upload filename policy and the single write path.

Uploads land in one fixed directory under a client-chosen name. The name is
sanitised, validated against a strict character set and an image extension
allow-list, and written with exclusive creation so an existing file is never
overwritten.
"""

import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import Optional

from werkzeug.datastructures import FileStorage, MultiDict

from .errors import (
    InvalidFilenameError,
    InvalidUploadError,
    PathEscapeError,
    UploadConflictError,
)
from .sandbox import is_within

logger = logging.getLogger("remote_workspace.uploads")

ALLOWED_IMAGE_EXTENSIONS = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".webp",
        ".svg",
        ".bmp",
        ".heic",
        ".heif",
        ".avif",
    }
)

# Checked in order: "file" is current, "files" is what older clients send.
UPLOAD_FIELD_NAMES = ("file", "files")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")
_WHITESPACE = re.compile(r"\s")
_ALLOWED_NAME = re.compile(r"^[A-Za-z0-9._-]+$")
WRITE_CHUNK_BYTES = 1024 * 1024


def image_extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


def sanitize_upload_filename(raw_name: Optional[str], now: Optional[float] = None) -> str:
    """Strip directories and control characters from a client filename."""

    base = re.split(r"[\\/]", raw_name or "")[-1]
    cleaned = _CONTROL_CHARS.sub("", base).strip()
    if not cleaned or cleaned in {".", ".."}:
        timestamp = time.time() if now is None else now
        return f"upload-{int(timestamp * 1000)}"
    return cleaned


def validate_upload_filename(filename: str) -> Optional[str]:
    """Return a human readable rejection reason, or ``None`` when acceptable."""

    if not filename:
        return "Filename is required"
    if _WHITESPACE.search(filename):
        return "Filename cannot contain spaces"
    if filename in {".", ".."} or filename.startswith("."):
        return "Filename is invalid"
    if not _ALLOWED_NAME.match(filename):
        return "Filename may only contain letters, numbers, dot, underscore, and dash"
    extension = image_extension(filename)
    if not extension or extension not in ALLOWED_IMAGE_EXTENSIONS:
        return "Filename must use an allowed image extension"
    return None


def require_valid_filename(raw_name: Optional[str]) -> str:
    candidate = sanitize_upload_filename(raw_name)
    reason = validate_upload_filename(candidate)
    if reason:
        raise InvalidFilenameError(reason)
    return candidate


def resolve_named_image(directory: Path, raw_name: Optional[str]) -> Path:
    """Map a client supplied image name to a path directly inside *directory*."""

    name = require_valid_filename(raw_name)
    target = Path(os.path.normpath(os.path.join(os.fspath(directory), name)))
    if not is_within(target, directory) or target == Path(os.path.normpath(directory)):
        raise PathEscapeError("Path escapes target directory")
    return target


def is_image_upload(original_filename: Optional[str], mimetype: Optional[str]) -> bool:
    if not mimetype or not mimetype.lower().startswith("image/"):
        return False
    extension = image_extension(original_filename or "")
    return extension == "" or extension in ALLOWED_IMAGE_EXTENSIONS


def pick_upload(files: MultiDict) -> FileStorage:
    """Normalise the accepted multipart field names to a single upload.

    Files under unrecognised field names are ignored. More than one file
    across the recognised fields is rejected.
    """

    candidates = [
        storage
        for field in UPLOAD_FIELD_NAMES
        for storage in files.getlist(field)
        if isinstance(storage, FileStorage) and storage.filename is not None
    ]
    if not candidates:
        raise InvalidUploadError("Missing upload file")
    if len(candidates) > 1:
        raise InvalidUploadError("Only one file may be uploaded per request")
    upload = candidates[0]
    if not is_image_upload(upload.filename, upload.mimetype):
        raise InvalidUploadError("Only image uploads are allowed")
    return upload


def write_upload(upload: FileStorage, directory: Path, filename: str) -> Path:
    """Persist *upload* as *directory*/*filename*; first writer wins."""

    reason = validate_upload_filename(filename)
    if reason:
        raise InvalidFilenameError(reason)

    target = directory / filename
    try:
        handle = open(target, "xb")
    except FileExistsError as error:
        raise UploadConflictError() from error

    try:
        with handle:
            shutil.copyfileobj(upload.stream, handle, WRITE_CHUNK_BYTES)
    except BaseException:
        try:
            target.unlink()
        except OSError as cleanup_error:
            logger.warning(
                "upload_cleanup_failed name=%s error=%s", filename, cleanup_error
            )
        raise
    finally:
        upload.close()
    return target
