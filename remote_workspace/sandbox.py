"""Repository sandbox: every filesystem access goes through this module.

Untrusted client paths are resolved against the repository root in two
stages. The lexical stage rejects traversal and absolute input before the
filesystem is touched; the real stage re-checks containment after symlink
resolution for targets that exist. Disclosure is then gated by the visibility
rules (dot-segments and git ignore rules).
"""

import enum
import logging
import os
import re
import stat
import subprocess
from pathlib import Path, PureWindowsPath
from typing import Iterable, List, Optional, Set

from .errors import (
    GitTimeoutError,
    HiddenPathError,
    IgnoredPathError,
    InvalidPathError,
    NullByteError,
    PathEscapeError,
    PathNotFoundError,
)

logger = logging.getLogger("remote_workspace.sandbox")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class GitCommandError(RuntimeError):
    """Raised when a git invocation fails; carries whatever stdout it produced."""

    def __init__(self, message: str, stdout: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout


class Visibility(enum.Enum):
    VISIBLE = "visible"
    HIDDEN_BLOCKED = "hidden"
    GITIGNORED_BLOCKED = "gitignored"


def is_within(path: os.PathLike, root: os.PathLike) -> bool:
    """Return True when *path* equals *root* or lies underneath it."""

    relative = os.path.relpath(os.fspath(path), os.fspath(root))
    if relative == os.curdir:
        return True
    if os.path.isabs(relative):
        return False
    return relative != os.pardir and not relative.startswith(os.pardir + os.sep)


def to_repo_relative(path: os.PathLike, root: os.PathLike) -> str:
    relative = os.path.relpath(os.fspath(path), os.fspath(root))
    if relative == os.curdir:
        return ""
    return relative.replace(os.sep, "/")


def is_hidden_path(repo_relative_path: str) -> bool:
    if not repo_relative_path:
        return False
    return any(segment.startswith(".") for segment in repo_relative_path.split("/"))


def resolve_repo_path(raw_path: Optional[str], root: Path) -> Path:
    """Lexically resolve an untrusted relative path inside *root*.

    Raises ``NullByteError`` for control characters and ``PathEscapeError``
    when the input is absolute or normalises to a location outside *root*.
    """

    candidate = (raw_path or "").strip()
    if _CONTROL_CHARS.search(candidate):
        raise NullByteError()
    if candidate.startswith(("/", "\\")) or PureWindowsPath(candidate).drive:
        raise PathEscapeError()

    resolved = Path(os.path.normpath(os.path.join(os.fspath(root), candidate)))
    if not is_within(resolved, root):
        raise PathEscapeError()
    return resolved


def real_path_within(path: Path, root: Path) -> Path:
    """Resolve symlinks for an existing *path* and re-check containment."""

    real = Path(os.path.realpath(path))
    if not is_within(real, root):
        raise PathEscapeError("Resolved path escapes repository root")
    return real


class GitRepository:
    """Ignore oracle backed by the git CLI of the repository root."""

    def __init__(self, root: Path, timeout_seconds: float, git_binary: str = "git") -> None:
        self.root = root
        self.timeout_seconds = timeout_seconds
        self.git_binary = git_binary

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        command = [
            self.git_binary,
            "-C",
            os.fspath(self.root),
            "-c",
            "core.quotePath=false",
            *args,
        ]
        try:
            return subprocess.run(
                command,
                capture_output=True,
                encoding="utf-8",
                errors="surrogateescape",
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            logger.error(
                "git_timeout command=%s timeout=%s", args[0], self.timeout_seconds
            )
            raise GitTimeoutError(self.timeout_seconds) from error
        except OSError as error:
            raise GitCommandError(f"git unavailable: {error}") from error

    @staticmethod
    def _lines(stdout: Optional[str]) -> List[str]:
        if not stdout:
            return []
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    def check_ignore(self, repo_relative_paths: Iterable[str]) -> Set[str]:
        """Return the subset of *repo_relative_paths* ignored by git."""

        paths = sorted({path for path in repo_relative_paths if path})
        if not paths:
            return set()
        completed = self._run("check-ignore", "--", *paths)
        # Exit status 1 means none of the paths are ignored.
        if completed.returncode not in (0, 1):
            raise GitCommandError(
                (completed.stderr or "").strip() or f"exit status {completed.returncode}",
                stdout=completed.stdout or "",
            )
        return set(self._lines(completed.stdout))

    def list_files(self) -> List[str]:
        """Tracked plus untracked, non-ignored files, repo-relative."""

        completed = self._run("ls-files", "--cached", "--others", "--exclude-standard")
        if completed.returncode != 0:
            raise GitCommandError(
                (completed.stderr or "").strip() or f"exit status {completed.returncode}",
                stdout=completed.stdout or "",
            )
        return self._lines(completed.stdout)


class VisibilityFilter:
    """Decide whether a resolved location may be disclosed to the client.

    Decisions are computed on every call; ignore rules may change between
    requests. Oracle failures are fail-open unless *fail_closed* is set.
    Timeouts are never fail-open and propagate as ``GitTimeoutError``.
    """

    def __init__(self, root: Path, oracle: GitRepository, fail_closed: bool = False) -> None:
        self.root = root
        self.oracle = oracle
        self.fail_closed = fail_closed

    def ignored_subset(self, repo_relative_paths: Iterable[str]) -> Set[str]:
        paths = {path for path in repo_relative_paths if path}
        if not paths:
            return set()
        try:
            return self.oracle.check_ignore(paths) & paths
        except GitCommandError as error:
            if self.fail_closed:
                logger.warning(
                    "ignore_oracle_failed policy=fail_closed paths=%d error=%s",
                    len(paths),
                    error,
                )
                return paths
            logger.warning(
                "ignore_oracle_failed policy=fail_open paths=%d error=%s",
                len(paths),
                error,
            )
            return set(GitRepository._lines(error.stdout)) & paths

    def classify(
        self,
        path: Path,
        allow_hidden: bool = False,
        allow_ignored: bool = False,
    ) -> Visibility:
        repo_relative_path = to_repo_relative(path, self.root)
        if not allow_hidden and is_hidden_path(repo_relative_path):
            return Visibility.HIDDEN_BLOCKED
        if not allow_ignored and repo_relative_path:
            if repo_relative_path in self.ignored_subset([repo_relative_path]):
                return Visibility.GITIGNORED_BLOCKED
        return Visibility.VISIBLE

    def assert_visible(
        self,
        path: Path,
        allow_hidden: bool = False,
        allow_ignored: bool = False,
    ) -> None:
        decision = self.classify(path, allow_hidden=allow_hidden, allow_ignored=allow_ignored)
        if decision is Visibility.HIDDEN_BLOCKED:
            raise HiddenPathError()
        if decision is Visibility.GITIGNORED_BLOCKED:
            raise IgnoredPathError()


def _ensure_kind(
    path: Path,
    visibility: VisibilityFilter,
    want_directory: bool,
    allow_hidden: bool,
    allow_ignored: bool,
) -> Path:
    real = real_path_within(path, visibility.root)
    try:
        stats = os.stat(real)
    except FileNotFoundError as error:
        raise PathNotFoundError() from error
    except OSError as error:
        raise InvalidPathError("Unable to access path") from error

    if want_directory and not stat.S_ISDIR(stats.st_mode):
        raise InvalidPathError("Target path is not a directory")
    if not want_directory and not stat.S_ISREG(stats.st_mode):
        raise InvalidPathError("Target path is not a file")

    visibility.assert_visible(real, allow_hidden=allow_hidden, allow_ignored=allow_ignored)
    return real


def ensure_directory(
    path: Path,
    visibility: VisibilityFilter,
    allow_hidden: bool = False,
    allow_ignored: bool = False,
) -> Path:
    """Verify *path* is a visible directory inside the root; return its real path."""

    return _ensure_kind(path, visibility, True, allow_hidden, allow_ignored)


def ensure_file(
    path: Path,
    visibility: VisibilityFilter,
    allow_hidden: bool = False,
    allow_ignored: bool = False,
) -> Path:
    """Verify *path* is a visible regular file inside the root; return its real path."""

    return _ensure_kind(path, visibility, False, allow_hidden, allow_ignored)
