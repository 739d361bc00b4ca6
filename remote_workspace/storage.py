import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from werkzeug.datastructures import FileStorage

from .errors import (
    InvalidInputError,
    PathEscapeError,
    PathNotFoundError,
    ResourceNotFoundError,
)
from .sandbox import (
    VisibilityFilter,
    ensure_directory,
    ensure_file,
    is_hidden_path,
    is_within,
    resolve_repo_path,
    to_repo_relative,
)
from .uploads import (
    ALLOWED_IMAGE_EXTENSIONS,
    image_extension,
    require_valid_filename,
    resolve_named_image,
    write_upload,
)

logger = logging.getLogger("remote_workspace.storage")

BINARY_SNIFF_BYTE = b"\x00"
_DIGITS = re.compile(r"(\d+)")


def isoformat_utc(timestamp: float) -> str:
    return (
        datetime.fromtimestamp(timestamp, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def natural_key(name: str) -> List[Any]:
    """Case-insensitive sort key that orders ``img2`` before ``img10``."""

    return [int(part) if part.isdigit() else part for part in _DIGITS.split(name.casefold())]


def _entry_sort_key(entry: Dict[str, Any]):
    return (entry["type"] != "directory", natural_key(entry["name"]))


def _build_entry(name: str, repo_path: str, is_directory: bool, stats: os.stat_result) -> Dict[str, Any]:
    return {
        "name": name,
        "path": repo_path,
        "type": "directory" if is_directory else "file",
        "size": stats.st_size,
        "modifiedAt": isoformat_utc(stats.st_mtime),
    }


def list_directory(raw_path: Optional[str], visibility: VisibilityFilter) -> Dict[str, Any]:
    """List one directory, counting entries withheld from the client."""

    root = visibility.root
    directory = ensure_directory(resolve_repo_path(raw_path, root), visibility)

    candidates = []
    skipped_symlinks = 0
    skipped_hidden = 0
    with os.scandir(directory) as iterator:
        for dir_entry in iterator:
            if dir_entry.is_symlink():
                skipped_symlinks += 1
                continue
            child_path = directory / dir_entry.name
            child_repo_path = to_repo_relative(child_path, root)
            if is_hidden_path(child_repo_path):
                skipped_hidden += 1
                continue
            try:
                is_directory = dir_entry.is_dir(follow_symlinks=False)
                is_file = dir_entry.is_file(follow_symlinks=False)
            except OSError:
                continue
            if not is_directory and not is_file:
                continue
            candidates.append((dir_entry.name, child_path, child_repo_path, is_directory))

    ignored = visibility.ignored_subset(candidate[2] for candidate in candidates)

    entries: List[Dict[str, Any]] = []
    skipped_ignored = 0
    for name, child_path, child_repo_path, is_directory in candidates:
        if child_repo_path in ignored:
            skipped_ignored += 1
            continue
        try:
            stats = os.stat(child_path, follow_symlinks=False)
        except OSError:
            # Removed between scandir and stat.
            continue
        entries.append(_build_entry(name, child_repo_path, is_directory, stats))

    entries.sort(key=_entry_sort_key)
    current_path = to_repo_relative(directory, root)
    parent_path = to_repo_relative(directory.parent, root) if current_path else None
    return {
        "currentPath": current_path,
        "parentPath": parent_path,
        "entries": entries,
        "skippedSymlinks": skipped_symlinks,
        "skippedHidden": skipped_hidden,
        "skippedIgnored": skipped_ignored,
    }


def _sort_tree(node: Dict[str, Any]) -> None:
    children = node.get("children")
    if not children:
        return
    children.sort(key=_entry_sort_key)
    for child in children:
        _sort_tree(child)


def build_tree(file_paths: List[str]) -> Dict[str, Any]:
    root: Dict[str, Any] = {"name": "", "path": "", "type": "directory", "children": []}
    index: Dict[str, Dict[str, Any]] = {"": root}

    for file_path in file_paths:
        segments = file_path.split("/")
        parent = root
        for position, segment in enumerate(segments):
            current_path = "/".join(segments[: position + 1])
            is_file = position == len(segments) - 1
            node = index.get(current_path)
            if node is None:
                node = {
                    "name": segment,
                    "path": current_path,
                    "type": "file" if is_file else "directory",
                }
                if not is_file:
                    node["children"] = []
                parent["children"].append(node)
                index[current_path] = node
            elif not is_file and "children" not in node:
                node["type"] = "directory"
                node["children"] = []
            parent = node

    _sort_tree(root)
    return root


def build_repository_tree(visibility: VisibilityFilter, max_entries: int) -> Dict[str, Any]:
    all_paths = visibility.oracle.list_files()
    visible_paths = [path for path in all_paths if not is_hidden_path(path)]
    truncated = len(visible_paths) > max_entries
    paths = visible_paths[:max_entries] if truncated else visible_paths
    return {
        "root": build_tree(paths),
        "totalFiles": len(visible_paths),
        "truncated": truncated,
    }


def read_text_preview(
    raw_path: Optional[str], visibility: VisibilityFilter, max_bytes: int
) -> Dict[str, Any]:
    real = ensure_file(resolve_repo_path(raw_path, visibility.root), visibility)
    with open(real, "rb") as handle:
        size = os.fstat(handle.fileno()).st_size
        data = handle.read(min(size, max_bytes))

    payload: Dict[str, Any] = {
        "path": to_repo_relative(real, visibility.root),
        "binary": BINARY_SNIFF_BYTE in data,
        "truncated": size > len(data),
        "size": size,
    }
    if not payload["binary"]:
        payload["content"] = data.decode("utf-8", errors="replace")
    return payload


def ensure_image_directory(
    directory: Path, visibility: VisibilityFilter, create: bool = False
) -> Optional[Path]:
    """Return the real path of an image directory, or ``None`` if it is absent."""

    if create:
        directory.mkdir(parents=True, exist_ok=True)
    elif not directory.exists():
        return None
    return ensure_directory(directory, visibility, allow_hidden=True, allow_ignored=True)


def list_image_directory(
    directory: Path, visibility: VisibilityFilter, create: bool = False
) -> List[Dict[str, Any]]:
    real_directory = ensure_image_directory(directory, visibility, create=create)
    if real_directory is None:
        return []

    entries: List[Dict[str, Any]] = []
    with os.scandir(real_directory) as iterator:
        for dir_entry in iterator:
            if not dir_entry.is_file(follow_symlinks=False):
                continue
            if image_extension(dir_entry.name) not in ALLOWED_IMAGE_EXTENSIONS:
                continue
            try:
                stats = dir_entry.stat(follow_symlinks=False)
            except OSError:
                continue
            repo_path = to_repo_relative(directory / dir_entry.name, visibility.root)
            entries.append(_build_entry(dir_entry.name, repo_path, False, stats))

    entries.sort(key=lambda entry: entry["modifiedAt"], reverse=True)
    return entries


def locate_named_image(
    directory: Path, raw_name: Optional[str], visibility: VisibilityFilter, create: bool = False
) -> Path:
    """Resolve an image by name and return its real, contained path."""

    real_directory = ensure_image_directory(directory, visibility, create=create)
    if real_directory is None:
        raise PathNotFoundError()
    target = resolve_named_image(directory, raw_name)
    real = ensure_file(target, visibility, allow_hidden=True, allow_ignored=True)
    if not is_within(real, real_directory):
        raise PathEscapeError("Path escapes target directory")
    return real


def delete_named_image(
    directory: Path, raw_name: Optional[str], visibility: VisibilityFilter, create: bool = False
) -> None:
    real_directory = ensure_image_directory(directory, visibility, create=create)
    target = resolve_named_image(directory, raw_name)
    if real_directory is None:
        raise ResourceNotFoundError()
    try:
        os.unlink(real_directory / target.name)
    except FileNotFoundError as error:
        raise ResourceNotFoundError() from error
    except OSError as error:
        logger.warning("image_delete_failed name=%s error=%s", target.name, error)
        raise InvalidInputError("Unable to delete file") from error
    logger.info("image_deleted path=%s", to_repo_relative(directory / target.name, visibility.root))


def store_upload(
    upload: FileStorage,
    raw_name: Optional[str],
    directory: Path,
    visibility: VisibilityFilter,
) -> Dict[str, Any]:
    """Validate the requested name and persist *upload* into *directory*."""

    filename = require_valid_filename(raw_name)
    real_directory = ensure_image_directory(directory, visibility, create=True)
    stored = write_upload(upload, real_directory, filename)
    size = stored.stat().st_size
    repo_path = to_repo_relative(directory / filename, visibility.root)
    logger.info("upload_stored path=%s size=%d", repo_path, size)
    return {"name": filename, "path": repo_path, "size": size}
