"""ResourceStore -- owns the on-disk checkout of every resource.

``ensure()`` clones a git resource the first time its name is referenced and
pulls it on every later reference.  Local resources are only validated.
Work on the same name is serialized with a per-name ``asyncio.Lock`` so a
pull can never race a clone; different names proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import ResourceError
from .git import GitBackend, GitCommandError, SubprocessGit, get_current_commit, is_git_checkout
from .models import ResourceCheckout, ResourceDefinition

logger = logging.getLogger(__name__)


@dataclass
class ResourceOutcome:
    """Result of syncing one resource in a batch."""

    name: str
    checkout: ResourceCheckout | None = None
    error: ResourceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResourceStore:
    """Clone-if-absent / pull-if-present store rooted at *resources_dir*.

    Parameters
    ----------
    resources_dir:
        Directory holding one checkout per git resource name.
    git:
        Sync primitives.  Defaults to the ``git`` executable; tests pass a fake.
    """

    def __init__(self, resources_dir: Path, git: GitBackend | None = None) -> None:
        self.resources_dir = resources_dir
        self._git = git if git is not None else SubprocessGit()
        self._locks: dict[str, asyncio.Lock] = {}
        self._checkouts: dict[str, ResourceCheckout] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def checkout_path(self, definition: ResourceDefinition) -> Path:
        """Where *definition*'s files live (whether or not they exist yet)."""
        if definition.kind == "local":
            return Path(definition.path or "").expanduser().resolve()
        return (self.resources_dir / definition.name).resolve()

    def get_checkout(self, name: str) -> ResourceCheckout | None:
        return self._checkouts.get(name)

    def is_valid(self, name: str, path: Path) -> bool:
        """True when *name* has been synced to *path* and the directory still exists."""
        checkout = self._checkouts.get(name)
        return checkout is not None and checkout.absolute_path == path and path.is_dir()

    async def ensure(self, definition: ResourceDefinition) -> Path:
        """Make sure *definition* is present and fresh on disk; return its path."""
        async with self._lock_for(definition.name):
            if definition.kind == "local":
                path = self.checkout_path(definition)
                if not path.is_dir():
                    raise ResourceError(definition.name, f"local path {path} does not exist")
            else:
                path = await self._sync_git(definition)

            self._checkouts[definition.name] = ResourceCheckout(
                name=definition.name,
                absolute_path=path,
                last_synced_at=datetime.now(timezone.utc).isoformat(),
            )
            return path

    async def _sync_git(self, definition: ResourceDefinition) -> Path:
        dest = self.checkout_path(definition)
        try:
            if dest.exists() and not is_git_checkout(dest):
                # Leftover from an interrupted clone.
                logger.warning("Removing incomplete checkout at %s", dest)
                await asyncio.to_thread(shutil.rmtree, dest)

            if dest.exists():
                logger.info("Pulling latest changes for %s", definition.name)
                await asyncio.to_thread(self._git.pull, dest, definition.branch)
            else:
                logger.info("Cloning %s (%s)", definition.name, definition.branch)
                self.resources_dir.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(
                    self._git.clone, definition.url or "", definition.branch, dest
                )
        except (GitCommandError, OSError) as exc:
            logger.warning("Sync failed for %s: %s", definition.name, exc)
            raise ResourceError(definition.name, str(exc)) from exc

        logger.info("Done with %s", definition.name)
        return dest

    async def ensure_many(
        self, definitions: list[ResourceDefinition]
    ) -> dict[str, ResourceOutcome]:
        """Sync every definition concurrently, reporting each outcome separately."""

        async def _one(definition: ResourceDefinition) -> ResourceOutcome:
            try:
                await self.ensure(definition)
            except ResourceError as exc:
                return ResourceOutcome(name=definition.name, error=exc)
            return ResourceOutcome(name=definition.name, checkout=self._checkouts[definition.name])

        outcomes = await asyncio.gather(*(_one(d) for d in definitions))
        return {o.name: o for o in outcomes}

    def revision(self, name: str) -> str | None:
        """HEAD commit of a synced git checkout, if any."""
        checkout = self._checkouts.get(name)
        if checkout is None or not is_git_checkout(checkout.absolute_path):
            return None
        return get_current_commit(checkout.absolute_path)
