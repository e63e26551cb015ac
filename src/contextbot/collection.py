"""CollectionBuilder -- one directory of symlinks per distinct resource set.

A collection lives at ``collections/<key>/`` where *key* is the sorted,
de-duplicated resource names joined by ``+``.  The directory holds nothing
but one symlink per member, each pointing at that member's checkout.
Collections are cached per key: asking again about the same set reuses the
directory without syncing or relinking anything.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Callable, Iterable
from pathlib import Path

from .errors import CollectionError, ResourceError
from .models import Collection, ResourceDefinition
from .resources import ResourceStore

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "+"

RESOURCE_NOTE = (
    "This resource is a read-only directory of source files. "
    "Search and read it to ground your answer instead of relying on memory."
)

_HEADER = "\n".join([
    "## Collection",
    "You are running inside the collection directory.",
    "Only use relative paths within '.' and never use '..' or absolute paths.",
    "Do not leave the collection directory.",
])


def collection_key(names: Iterable[str]) -> str:
    """Canonical key for a set of resource names (order and duplicates ignored)."""
    unique = sorted(set(names))
    if not unique:
        raise CollectionError("Cannot build a collection with no resources.")
    return KEY_SEPARATOR.join(unique)


def _resource_block(resource: ResourceDefinition) -> str:
    lines = [
        f"## Resource: {resource.name}",
        RESOURCE_NOTE,
        f"Path: ./{resource.name}",
    ]
    if resource.focus_subpath:
        lines.append(f"Focus: ./{resource.name}/{resource.focus_subpath.strip('/')}")
    if resource.note:
        lines.append(f"Notes: {resource.note}")
    return "\n".join(lines)


def build_instructions(members: list[ResourceDefinition]) -> str:
    """Header plus one block per member resource."""
    return "\n\n".join([_HEADER, *(_resource_block(m) for m in members)])


def _remove_entry(path: Path) -> None:
    """Delete whatever sits at *path*: a symlink, a file or a directory tree."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


class CollectionBuilder:
    """Assemble and cache collections.

    Parameters
    ----------
    collections_dir:
        Parent directory of every ``<key>/`` collection.
    store:
        Resource store used to sync each member before linking it.
    resolve:
        Maps a resource name to its definition; raises ``ResourceError`` for
        unknown names.
    """

    def __init__(
        self,
        collections_dir: Path,
        store: ResourceStore,
        resolve: Callable[[str], ResourceDefinition],
    ) -> None:
        self.collections_dir = collections_dir
        self.store = store
        self._resolve = resolve
        self._locks: dict[str, asyncio.Lock] = {}
        self._collections: dict[str, Collection] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def build(self, names: Iterable[str]) -> Collection:
        """Return the collection for *names*, building it only when needed."""
        key = collection_key(names)
        async with self._lock_for(key):
            cached = self._collections.get(key)
            if cached is not None and self._is_fresh(cached):
                logger.debug("Collection cache hit for %s", key)
                return cached

            self._collections.pop(key, None)
            collection = await self._assemble(key)
            self._collections[key] = collection
            return collection

    def _is_fresh(self, collection: Collection) -> bool:
        """All member links still point at valid checkouts and nothing else is present."""
        directory = collection.directory_path
        expected = {m.name for m in collection.members}
        try:
            present = {entry.name for entry in directory.iterdir()}
        except OSError:
            return False
        if present != expected:
            return False
        for member in collection.members:
            link = directory / member.name
            if not link.is_symlink():
                return False
            target = Path(os.readlink(link))
            if not self.store.is_valid(member.name, target):
                return False
        return True

    async def _assemble(self, key: str) -> Collection:
        names = key.split(KEY_SEPARATOR)

        members: list[ResourceDefinition] = []
        for name in names:
            try:
                members.append(self._resolve(name))
            except ResourceError as exc:
                raise CollectionError(
                    f"Failed to load resource {name}: {exc.message}", resource=name
                ) from exc

        outcomes = await self.store.ensure_many(members)
        failed = [outcomes[m.name] for m in members if not outcomes[m.name].ok]
        if failed:
            first = failed[0]
            detail = "; ".join(o.error.message for o in failed if o.error is not None)
            raise CollectionError(
                f"Failed to load resource {first.name}: {detail}", resource=first.name
            ) from first.error

        directory = self.collections_dir / key
        try:
            await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise CollectionError(f"Failed to create collection directory {directory}: {exc}") from exc

        await asyncio.to_thread(self._link_members, directory, members, outcomes)

        logger.info("Built collection %s with %d resource(s)", key, len(members))
        return Collection(
            key=key,
            directory_path=directory,
            members=members,
            instructions=build_instructions(members),
        )

    def _link_members(self, directory: Path, members: list[ResourceDefinition], outcomes: dict) -> None:
        member_names = {m.name for m in members}
        for entry in list(directory.iterdir()):
            if entry.name not in member_names:
                try:
                    _remove_entry(entry)
                except OSError as exc:
                    raise CollectionError(
                        f"Failed to remove stray entry {entry.name}: {exc}"
                    ) from exc

        for member in members:
            target = outcomes[member.name].checkout.absolute_path
            link = directory / member.name
            try:
                if link.is_symlink() or link.exists():
                    _remove_entry(link)
            except OSError as exc:
                raise CollectionError(
                    f"Failed to remove existing entry for {member.name}: {exc}",
                    resource=member.name,
                ) from exc
            try:
                link.symlink_to(target, target_is_directory=True)
            except OSError as exc:
                raise CollectionError(
                    f"Failed to create symlink for {member.name}: {exc}",
                    resource=member.name,
                ) from exc

    def cached_keys(self) -> list[str]:
        return sorted(self._collections)
