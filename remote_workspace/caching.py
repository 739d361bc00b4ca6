"""Conditional GET support built from file stat metadata.

Validators are weak: ``W/"<size>-<mtime ms>"`` identifies "probably the same
content" without hashing the bytes. ``Last-Modified`` only carries whole
seconds, so ``If-Modified-Since`` comparisons truncate the mtime to seconds.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from flask import Response
from werkzeug.http import http_date, parse_date

IMAGE_CACHE_CONTROL = "private, max-age=60, stale-while-revalidate=300"
METADATA_CACHE_CONTROL = "private, max-age=10, stale-while-revalidate=30"
NO_STORE_CACHE_CONTROL = "no-store"


@dataclass(frozen=True)
class CacheValidators:
    etag: str
    last_modified: str
    size: int
    modified_at_ms: int


@dataclass(frozen=True)
class CacheDecision:
    not_modified: bool
    validators: CacheValidators


def modified_at_millis(stats: os.stat_result) -> int:
    return stats.st_mtime_ns // 1_000_000


def build_weak_etag(size: int, modified_at_ms: int) -> str:
    return f'W/"{size}-{modified_at_ms}"'


def build_validators(stats: os.stat_result) -> CacheValidators:
    modified_ms = modified_at_millis(stats)
    return CacheValidators(
        etag=build_weak_etag(stats.st_size, modified_ms),
        last_modified=http_date(modified_ms // 1000),
        size=stats.st_size,
        modified_at_ms=modified_ms,
    )


def is_not_modified(headers: Mapping[str, str], validators: CacheValidators) -> bool:
    if_none_match = headers.get("If-None-Match")
    if if_none_match:
        candidates = [value.strip() for value in if_none_match.split(",")]
        if "*" in candidates or validators.etag in candidates:
            return True

    if_modified_since = headers.get("If-Modified-Since")
    if if_modified_since:
        since = parse_date(if_modified_since)
        if since is not None:
            last_modified_seconds = validators.modified_at_ms // 1000
            if since.timestamp() >= last_modified_seconds:
                return True
    return False


def decide(headers: Mapping[str, str], stats: os.stat_result) -> CacheDecision:
    validators = build_validators(stats)
    return CacheDecision(is_not_modified(headers, validators), validators)


def apply_validators(
    response: Response,
    validators: CacheValidators,
    cache_control: str = IMAGE_CACHE_CONTROL,
) -> Response:
    response.headers["Cache-Control"] = cache_control
    response.headers["ETag"] = validators.etag
    response.headers["Last-Modified"] = validators.last_modified
    return response


def not_modified_response(
    validators: CacheValidators, cache_control: str = IMAGE_CACHE_CONTROL
) -> Response:
    response = Response(status=304)
    # A 304 carries validators only; no entity headers.
    response.headers.pop("Content-Type", None)
    response.headers.pop("Content-Length", None)
    return apply_validators(response, validators, cache_control)


def set_metadata_cache(response: Response, cache_control: Optional[str] = None) -> Response:
    response.headers["Cache-Control"] = cache_control or METADATA_CACHE_CONTROL
    return response
