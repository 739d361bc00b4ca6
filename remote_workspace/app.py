import atexit
import mimetypes
import os
import time
import uuid
from pathlib import Path
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, jsonify, request, send_file
from flask_limiter import Limiter
from werkzeug.exceptions import HTTPException

from . import caching
from .auth import AuthFailureStore, Gateway, client_ip
from .config import CLIPBOARD_DIRECTORY_NAME, SCREENSHOTS_DIRECTORY_NAME, load_settings
from .errors import GatewayError, GitTimeoutError, InvalidInputError, MissingParameterError
from .logs import configure_logging, get_logger, sanitize_log_value
from .sandbox import (
    GitCommandError,
    GitRepository,
    VisibilityFilter,
    ensure_file,
    resolve_repo_path,
)
from .storage import (
    build_repository_tree,
    delete_named_image,
    list_directory,
    list_image_directory,
    locate_named_image,
    read_text_preview,
    store_upload,
)
from .uploads import pick_upload

# Image types the stdlib table may not know about.
for _mimetype, _extension in (
    ("image/webp", ".webp"),
    ("image/avif", ".avif"),
    ("image/heic", ".heic"),
    ("image/heif", ".heif"),
    ("image/svg+xml", ".svg"),
):
    mimetypes.add_type(_mimetype, _extension)

settings = load_settings()
APP_LOG_PATH = configure_logging(settings.log_level, settings.logs_dir)
lifecycle_logger = get_logger("remote_workspace.lifecycle")

repository = GitRepository(settings.repo_root, settings.git_timeout_seconds)
visibility = VisibilityFilter(
    settings.repo_root, repository, fail_closed=settings.ignore_fail_closed
)
auth_failures = AuthFailureStore(
    window_seconds=settings.auth_window_seconds,
    max_attempts=settings.auth_max_attempts,
    block_seconds=settings.auth_block_seconds,
    max_entries=settings.auth_max_tracked_ips,
)
gateway: Optional[Gateway] = (
    Gateway(settings.password, auth_failures) if settings.auth_enabled else None
)

if gateway is None:
    lifecycle_logger.warning(
        "auth_disabled REMOTE_WS_PASSWORD is empty; every request is served without credentials"
    )
if settings.ignore_fail_closed:
    lifecycle_logger.info("ignore_oracle_policy policy=fail_closed")

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes
app.json.sort_keys = False


def guess_mimetype(path: Path) -> str:
    mimetype, _ = mimetypes.guess_type(path.name)
    return mimetype or "application/octet-stream"


def _query_value(name: str) -> Optional[str]:
    return request.args.get(name)


def _require_query_value(name: str) -> str:
    value = _query_value(name)
    if not value:
        raise MissingParameterError(name)
    return value


def prune_auth_failures() -> int:
    return auth_failures.prune()


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.before_request
def enforce_gateway() -> Optional[Response]:
    if gateway is None:
        return None
    return gateway.check(request)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "same-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "img-src 'self' data: blob:; "
        "style-src 'self' 'unsafe-inline'; "
        "connect-src 'self';"
    )
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


# Registered after the gateway hook so unauthenticated traffic never counts.
limiter = Limiter(
    key_func=lambda: client_ip(request),
    app=app,
    default_limits=[],
    storage_uri="memory://",
)


@app.errorhandler(GatewayError)
def handle_gateway_error(error: GatewayError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s status=%d error=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(error.message),
        )
    else:
        lifecycle_logger.info(
            "request_rejected path=%s status=%d reason=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(error.message),
        )
    response = jsonify(error.to_payload())
    response.status_code = error.status_code
    if isinstance(error, GitTimeoutError):
        response.headers["Retry-After"] = str(error.retry_after)
    return response


@app.errorhandler(413)
def handle_file_too_large(error):
    return jsonify({"error": "File too large"}), 400


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.errorhandler(HTTPException)
def handle_http_exception(error: HTTPException):
    return jsonify({"error": error.description or error.name}), error.code or 500


@app.errorhandler(OSError)
def handle_filesystem_error(error: OSError):
    lifecycle_logger.warning(
        "filesystem_error path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
    )
    return jsonify({"error": "Filesystem operation failed"}), 400


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    lifecycle_logger.exception(
        "request_crashed path=%s", sanitize_log_value(request.path)
    )
    return jsonify({"error": "Unexpected server error"}), 500


def _stream_file(real_path: Path, mimetype: str) -> Response:
    return send_file(
        real_path,
        mimetype=mimetype,
        conditional=False,
        etag=False,
        max_age=None,
    )


def _serve_image(real_path: Path) -> Response:
    stats = os.stat(real_path)
    decision = caching.decide(request.headers, stats)
    if decision.not_modified:
        return caching.not_modified_response(decision.validators)
    response = _stream_file(real_path, guess_mimetype(real_path))
    return caching.apply_validators(response, decision.validators)


def _metadata_json(payload) -> Response:
    return caching.set_metadata_cache(jsonify(payload))


def _deleted() -> Response:
    response = Response(status=204)
    response.headers["Cache-Control"] = caching.NO_STORE_CACHE_CONTROL
    return response


@app.route("/health")
def health_check():
    return jsonify(
        {
            "status": "healthy",
            "root": settings.repo_root.name,
            "auth_enabled": settings.auth_enabled,
            "scheduler_running": bool(scheduler is not None and scheduler.running),
            "timestamp": time.time(),
        }
    )


@app.route("/api/tree")
def repository_tree():
    try:
        payload = build_repository_tree(visibility, settings.max_tree_entries)
    except GitCommandError as error:
        lifecycle_logger.warning(
            "tree_failed error=%s", sanitize_log_value(str(error))
        )
        raise InvalidInputError("Failed to build file tree") from error
    return _metadata_json(payload)


@app.route("/api/list")
def list_path():
    return _metadata_json(list_directory(_query_value("path"), visibility))


@app.route("/api/text")
def text_preview():
    raw_path = _require_query_value("path")
    return jsonify(read_text_preview(raw_path, visibility, settings.max_preview_bytes))


@app.route("/api/file")
def stream_file():
    raw_path = _require_query_value("path")
    real_path = ensure_file(resolve_repo_path(raw_path, settings.repo_root), visibility)
    mimetype = guess_mimetype(real_path)
    if mimetype.startswith("image/"):
        return _serve_image(real_path)
    return _stream_file(real_path, mimetype)


@app.route("/api/clipboard/list")
def clipboard_list():
    entries = list_image_directory(settings.clipboard_dir, visibility, create=True)
    return _metadata_json({"directory": CLIPBOARD_DIRECTORY_NAME, "entries": entries})


@app.route("/api/clipboard/file", methods=["GET"])
def clipboard_file():
    name = _require_query_value("name")
    real_path = locate_named_image(settings.clipboard_dir, name, visibility, create=True)
    return _serve_image(real_path)


@app.route("/api/clipboard/file", methods=["DELETE"])
def clipboard_delete():
    name = _require_query_value("name")
    delete_named_image(settings.clipboard_dir, name, visibility, create=True)
    return _deleted()


@app.route("/api/clipboard/upload", methods=["POST"])
@app.route("/api/upload", methods=["POST"])
@limiter.limit(lambda: settings.upload_rate_limit)
def clipboard_upload():
    requested_name = _require_query_value("name")
    upload = pick_upload(request.files)
    uploaded = store_upload(upload, requested_name, settings.clipboard_dir, visibility)
    lifecycle_logger.info(
        "clipboard_upload name=%s size=%d", uploaded["name"], uploaded["size"]
    )
    return jsonify({"directory": CLIPBOARD_DIRECTORY_NAME, "uploaded": [uploaded]})


@app.route("/api/screenshots/list")
def screenshots_list():
    entries = list_image_directory(settings.screenshots_dir, visibility)
    return _metadata_json({"directory": SCREENSHOTS_DIRECTORY_NAME, "entries": entries})


@app.route("/api/screenshots/file", methods=["GET"])
def screenshot_file():
    name = _require_query_value("name")
    real_path = locate_named_image(settings.screenshots_dir, name, visibility)
    return _serve_image(real_path)


@app.route("/api/screenshots/file", methods=["DELETE"])
def screenshot_delete():
    name = _require_query_value("name")
    delete_named_image(settings.screenshots_dir, name, visibility)
    return _deleted()


scheduler = BackgroundScheduler(daemon=True)
scheduler.add_job(
    func=prune_auth_failures,
    trigger="interval",
    minutes=1,
    id="prune_auth_failures",
    name="Prune expired authentication failure records",
    replace_existing=True,
)
scheduler.start()
atexit.register(lambda: scheduler.shutdown(wait=False))


def main() -> None:
    lifecycle_logger.info("server_starting root=%s", settings.repo_root)
    lifecycle_logger.info("server_listening url=http://%s:%d", settings.host, settings.port)
    if settings.auth_enabled:
        lifecycle_logger.info("basic_auth enabled=true")
    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
