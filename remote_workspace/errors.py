"""Error taxonomy shared by the sandbox, upload and HTTP layers.

Every error carries the HTTP status it maps to so route handlers can let them
propagate to the single ``GatewayError`` handler registered on the app.
"""

from typing import Dict, Optional


class GatewayError(Exception):
    """Base class for errors that translate directly into an HTTP response."""

    status_code = 500
    default_message = "Unexpected server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.message}


class InvalidInputError(GatewayError):
    """Raised when client-supplied input fails local validation."""

    status_code = 400
    default_message = "Invalid request"


class MissingParameterError(InvalidInputError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Missing ?{name}=...")
        self.parameter = name


class InvalidPathError(InvalidInputError):
    default_message = "Invalid path"


class PathEscapeError(InvalidPathError):
    default_message = "Path escapes repository root"


class NullByteError(InvalidPathError):
    default_message = "Path contains null byte"


class HiddenPathError(InvalidPathError):
    default_message = "Hidden paths are not accessible"


class IgnoredPathError(InvalidPathError):
    default_message = "Gitignored paths are not accessible"


class PathNotFoundError(InvalidPathError):
    """A read target does not exist. Reads report this as invalid input."""

    default_message = "Path not found"


class InvalidFilenameError(InvalidInputError):
    default_message = "Filename is invalid"


class InvalidUploadError(InvalidInputError):
    default_message = "Invalid upload"


class ResourceNotFoundError(GatewayError):
    """Raised by delete routes when the named file does not exist."""

    status_code = 404
    default_message = "File not found"


class UploadConflictError(GatewayError):
    status_code = 409
    default_message = "Filename already exists"


class GitTimeoutError(GatewayError):
    """The git ignore oracle did not answer within the configured timeout."""

    status_code = 503
    default_message = "Repository metadata is temporarily unavailable"

    def __init__(self, timeout_seconds: float, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds

    @property
    def retry_after(self) -> int:
        return max(1, int(round(self.timeout_seconds)))
