"""Git helper utilities for resource checkouts.

Thin wrappers around git CLI commands via ``subprocess``.  ``clone`` and
``pull`` raise ``GitCommandError`` so the resource store can report which
resource failed; the read-only helpers return ``None`` or ``False`` instead.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    """A git command exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"{' '.join(args)} failed with exit code {returncode}: {detail}")
        self.returncode = returncode
        self.stderr = stderr


class GitBackend(Protocol):
    """The sync primitives the resource store needs."""

    def clone(self, url: str, branch: str, dest: Path) -> None: ...

    def pull(self, dest: Path, branch: str) -> None: ...


def _run(args: list[str], cwd: Path | None = None, timeout: float | None = None) -> None:
    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise GitCommandError(args, 127, "git executable not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitCommandError(args, -1, f"timed out after {timeout}s") from exc
    if result.returncode != 0:
        raise GitCommandError(args, result.returncode, result.stderr)


class SubprocessGit:
    """``GitBackend`` that shells out to the ``git`` executable."""

    def __init__(self, timeout: float | None = 600.0) -> None:
        self.timeout = timeout

    def clone(self, url: str, branch: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        _run(
            ["git", "clone", "--depth", "1", "--branch", branch, url, str(dest)],
            timeout=self.timeout,
        )

    def pull(self, dest: Path, branch: str) -> None:
        _run(["git", "pull", "--ff-only", "origin", branch], cwd=dest, timeout=self.timeout)


def get_current_commit(repo_root: Path) -> str | None:
    """Return the HEAD commit hash, or ``None`` if unavailable."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=repo_root,
            capture_output=True,
            text=True,
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except OSError:
        pass
    return None


def is_git_checkout(path: Path) -> bool:
    """Check whether *path* looks like the root of a git working tree."""
    return (path / ".git").exists()
