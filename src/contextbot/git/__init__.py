"""Git integration utilities."""

from .utils import (
    GitBackend,
    GitCommandError,
    SubprocessGit,
    get_current_commit,
    is_git_checkout,
)

__all__ = [
    "GitBackend",
    "GitCommandError",
    "SubprocessGit",
    "get_current_commit",
    "is_git_checkout",
]
