import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("remote_workspace.config")

DEFAULT_PORT = 18080
DEFAULT_HOST = "127.0.0.1"
DEFAULT_MAX_PREVIEW_BYTES = 1_048_576
DEFAULT_MAX_UPLOAD_BYTES = 26_214_400
DEFAULT_MAX_TREE_ENTRIES = 5000
DEFAULT_AUTH_WINDOW_SECONDS = 10 * 60
DEFAULT_AUTH_MAX_ATTEMPTS = 20
DEFAULT_AUTH_BLOCK_SECONDS = 15 * 60
DEFAULT_AUTH_MAX_TRACKED_IPS = 10_000
DEFAULT_GIT_TIMEOUT_SECONDS = 10
DEFAULT_UPLOAD_RATE_LIMIT = "60 per minute"

CLIPBOARD_DIRECTORY_NAME = ".clipboard"
SCREENSHOTS_DIRECTORY_NAME = ".playwright-mcp"


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(
    key: str, default: int, min_value: int = 1, max_value: Optional[int] = None
) -> int:
    """Safely parse integer environment variable with error handling."""

    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default
    if value < min_value or (max_value is not None and value > max_value):
        logger.warning(
            "Out of range value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default
    return value


def _safe_bool_env(key: str, default: bool = False) -> bool:
    raw_value = os.environ.get(key)
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    logger.warning("Invalid boolean for %s: %s. Using default: %s", key, raw_value, default)
    return default


@dataclass(frozen=True)
class Settings:
    """Process configuration handed over by the launcher."""

    repo_root: Path
    host: str
    port: int
    password: str
    max_preview_bytes: int
    max_upload_bytes: int
    max_tree_entries: int
    auth_window_seconds: int
    auth_max_attempts: int
    auth_block_seconds: int
    auth_max_tracked_ips: int
    git_timeout_seconds: int
    ignore_fail_closed: bool
    upload_rate_limit: str
    logs_dir: Optional[Path]
    log_level: str

    @property
    def auth_enabled(self) -> bool:
        return bool(self.password)

    @property
    def clipboard_dir(self) -> Path:
        return self.repo_root / CLIPBOARD_DIRECTORY_NAME

    @property
    def screenshots_dir(self) -> Path:
        return self.repo_root / SCREENSHOTS_DIRECTORY_NAME


def load_settings() -> Settings:
    logs_dir_value = os.environ.get("REMOTE_WS_LOGS_DIR")
    return Settings(
        repo_root=_resolve_env_path("REPO_ROOT", Path.cwd()),
        host=os.environ.get("REMOTE_WS_HOST", DEFAULT_HOST),
        port=_safe_int_env("REMOTE_WS_PORT", DEFAULT_PORT, 1, 65535),
        password=os.environ.get("REMOTE_WS_PASSWORD", ""),
        max_preview_bytes=_safe_int_env(
            "REMOTE_WS_MAX_PREVIEW_BYTES", DEFAULT_MAX_PREVIEW_BYTES
        ),
        max_upload_bytes=_safe_int_env(
            "REMOTE_WS_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES
        ),
        max_tree_entries=_safe_int_env(
            "REMOTE_WS_MAX_TREE_ENTRIES", DEFAULT_MAX_TREE_ENTRIES
        ),
        auth_window_seconds=_safe_int_env(
            "REMOTE_WS_AUTH_WINDOW_SECONDS", DEFAULT_AUTH_WINDOW_SECONDS
        ),
        auth_max_attempts=_safe_int_env(
            "REMOTE_WS_AUTH_MAX_ATTEMPTS", DEFAULT_AUTH_MAX_ATTEMPTS
        ),
        auth_block_seconds=_safe_int_env(
            "REMOTE_WS_AUTH_BLOCK_SECONDS", DEFAULT_AUTH_BLOCK_SECONDS
        ),
        auth_max_tracked_ips=_safe_int_env(
            "REMOTE_WS_AUTH_MAX_TRACKED_IPS", DEFAULT_AUTH_MAX_TRACKED_IPS
        ),
        git_timeout_seconds=_safe_int_env(
            "REMOTE_WS_GIT_TIMEOUT_SECONDS", DEFAULT_GIT_TIMEOUT_SECONDS
        ),
        ignore_fail_closed=_safe_bool_env("REMOTE_WS_IGNORE_FAIL_CLOSED", False),
        upload_rate_limit=os.environ.get(
            "REMOTE_WS_UPLOAD_RATE_LIMIT", DEFAULT_UPLOAD_RATE_LIMIT
        ).strip()
        or DEFAULT_UPLOAD_RATE_LIMIT,
        logs_dir=Path(logs_dir_value).expanduser().resolve() if logs_dir_value else None,
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    )
