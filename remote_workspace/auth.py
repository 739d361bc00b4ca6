"""Shared-secret gateway with per-IP failure tracking and origin checks.

The failure store is a soft deterrent against password guessing, not a hard
security boundary: it lives in memory, is bounded, and is cleared on restart.
Each read-modify-write on a record happens under a lock because the WSGI
server handles requests on parallel threads.
"""

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from secrets import compare_digest
from typing import Callable, Optional
from urllib.parse import urlsplit

from flask import Request, Response, make_response
from werkzeug.datastructures import Authorization

from .logs import get_logger, sanitize_log_value

logger = get_logger("remote_workspace.auth")

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
AUTH_REALM = 'Basic realm="remote-workspace", charset="UTF-8"'


@dataclass
class AuthFailureRecord:
    window_started_at: float
    failures: int = 0
    blocked_until: float = 0.0


class AuthFailureStore:
    """Track authentication failures per client IP."""

    def __init__(
        self,
        window_seconds: float,
        max_attempts: int,
        block_seconds: float,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_attempts = max(1, int(max_attempts))
        self.block_seconds = block_seconds
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._records: "OrderedDict[str, AuthFailureRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, ip: str) -> Optional[AuthFailureRecord]:
        with self._lock:
            return self._records.get(ip)

    def _seconds_until(self, deadline: float, now: float) -> int:
        return max(1, math.ceil(deadline - now))

    def retry_after(self, ip: str) -> Optional[int]:
        """Seconds the client must wait, or ``None`` when not blocked."""

        with self._lock:
            record = self._records.get(ip)
            now = self._clock()
            if record is None or record.blocked_until <= now:
                return None
            return self._seconds_until(record.blocked_until, now)

    def record_failure(self, ip: str) -> Optional[int]:
        """Count a failure; return the retry delay when it triggered a block."""

        with self._lock:
            now = self._clock()
            record = self._records.get(ip)
            if record is None or now - record.window_started_at >= self.window_seconds:
                record = AuthFailureRecord(window_started_at=now, failures=1)
                self._records[ip] = record
                self._records.move_to_end(ip)
                self._evict_overflow()
            else:
                record.failures += 1

            if record.failures >= self.max_attempts:
                record.blocked_until = now + self.block_seconds
                record.failures = 0
                record.window_started_at = now
                return self._seconds_until(record.blocked_until, now)
            return None

    def clear(self, ip: str) -> None:
        with self._lock:
            self._records.pop(ip, None)

    def prune(self) -> int:
        """Drop records whose window and block have both lapsed."""

        with self._lock:
            now = self._clock()
            stale = [
                ip
                for ip, record in self._records.items()
                if record.blocked_until <= now
                and now - record.window_started_at >= self.window_seconds
            ]
            for ip in stale:
                del self._records[ip]
        if stale:
            logger.debug("auth_failures_pruned removed=%d", len(stale))
        return len(stale)

    def _evict_overflow(self) -> None:
        while len(self._records) > self.max_entries:
            evicted_ip, _ = self._records.popitem(last=False)
            logger.warning("auth_failures_evicted ip=%s", sanitize_log_value(evicted_ip))


def extract_password(authorization: Optional[Authorization]) -> Optional[str]:
    """Password from Basic credentials; anything else counts as no credentials."""

    if authorization is None or authorization.type != "basic":
        return None
    return authorization.password


def passwords_match(supplied: str, expected: str) -> bool:
    actual = supplied.encode("utf-8")
    wanted = expected.encode("utf-8")
    # Only the length leaks; content comparison is constant time.
    if len(actual) != len(wanted):
        return False
    return compare_digest(actual, wanted)


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return request.remote_addr or "unknown"


def _normalize_authority(url: str) -> Optional[str]:
    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
        port = parsed.port
    except ValueError:
        return None
    if not parsed.scheme or not hostname:
        return None
    if port is None:
        port = 443 if parsed.scheme.lower() == "https" else 80
    return f"{hostname.lower()}:{port}"


def request_authority(request: Request) -> Optional[str]:
    host = request.headers.get("X-Forwarded-Host") or request.headers.get("Host")
    if not host:
        return None
    host = host.split(",")[0].strip()
    protocol = request.headers.get("X-Forwarded-Proto") or request.scheme or "http"
    scheme = "https" if protocol.lower().startswith("https") else "http"
    return _normalize_authority(f"{scheme}://{host}")


def is_same_origin_mutation(request: Request) -> bool:
    expected = request_authority(request)
    if not expected:
        return False

    origin = request.headers.get("Origin")
    if origin:
        return _normalize_authority(origin) == expected

    referer = request.headers.get("Referer")
    if referer:
        return _normalize_authority(referer) == expected

    return False


def _plain_response(message: str, status: int) -> Response:
    response = make_response(message, status)
    response.mimetype = "text/plain"
    return response


def rate_limited_response(retry_after: int) -> Response:
    response = _plain_response("Too many authentication failures", 429)
    response.headers["Retry-After"] = str(retry_after)
    return response


class Gateway:
    """Authenticate a request and vet mutating verbs for same-origin."""

    def __init__(self, password: str, failures: AuthFailureStore) -> None:
        if not password:
            raise ValueError("Gateway requires a non-empty password")
        self._password = password
        self.failures = failures

    def check(self, request: Request) -> Optional[Response]:
        """Return a rejection response, or ``None`` to let the request through."""

        ip = client_ip(request)
        retry_after = self.failures.retry_after(ip)
        if retry_after is not None:
            logger.warning(
                "auth_blocked ip=%s retry_after=%d", sanitize_log_value(ip), retry_after
            )
            return rate_limited_response(retry_after)

        supplied = extract_password(request.authorization)
        if supplied is not None and passwords_match(supplied, self._password):
            self.failures.clear(ip)
            if request.method in MUTATING_METHODS and not is_same_origin_mutation(request):
                logger.warning(
                    "origin_rejected ip=%s method=%s path=%s",
                    sanitize_log_value(ip),
                    request.method,
                    sanitize_log_value(request.path),
                )
                return _plain_response("Origin validation failed", 403)
            return None

        blocked_for = self.failures.record_failure(ip)
        if blocked_for is not None:
            logger.warning(
                "auth_block_started ip=%s retry_after=%d",
                sanitize_log_value(ip),
                blocked_for,
            )
            return rate_limited_response(blocked_for)

        logger.info(
            "auth_failed ip=%s path=%s",
            sanitize_log_value(ip),
            sanitize_log_value(request.path),
        )
        response = _plain_response("Authentication required", 401)
        response.headers["WWW-Authenticate"] = AUTH_REALM
        return response
