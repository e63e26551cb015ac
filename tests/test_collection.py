from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from conftest import FakeGit, git_resource
from contextbot.collection import CollectionBuilder, build_instructions, collection_key
from contextbot.errors import CollectionError, ResourceError
from contextbot.models import ResourceDefinition
from contextbot.resources import ResourceStore


def _builder(tmp_path: Path, git: FakeGit, resources: list[ResourceDefinition]) -> CollectionBuilder:
    by_name = {r.name: r for r in resources}

    def resolve(name: str) -> ResourceDefinition:
        if name not in by_name:
            raise ResourceError(name, "not found in config")
        return by_name[name]

    store = ResourceStore(tmp_path / "resources", git=git)
    return CollectionBuilder(tmp_path / "collections", store, resolve)


def test_key_ignores_order_and_duplicates() -> None:
    assert collection_key(["beta", "alpha", "beta"]) == "alpha+beta"
    assert collection_key(["alpha", "beta"]) == collection_key(["beta", "alpha"])


def test_key_of_nothing_is_an_error() -> None:
    with pytest.raises(CollectionError, match="no resources"):
        collection_key([])


def test_instructions_list_every_member() -> None:
    text = build_instructions([
        git_resource("alpha", focus_subpath="docs/", note="Docs site."),
        git_resource("beta"),
    ])
    assert text.startswith("## Collection")
    assert "never use '..' or absolute paths" in text
    assert "## Resource: alpha" in text
    assert "Path: ./alpha" in text
    assert "Focus: ./alpha/docs" in text
    assert "Notes: Docs site." in text
    assert "## Resource: beta" in text
    assert "Focus: ./beta" not in text


def test_build_links_members(tmp_path: Path, fake_git: FakeGit) -> None:
    builder = _builder(tmp_path, fake_git, [git_resource("alpha"), git_resource("beta")])

    collection = asyncio.run(builder.build(["beta", "alpha"]))

    assert collection.key == "alpha+beta"
    assert collection.directory_path == tmp_path / "collections" / "alpha+beta"
    assert [m.name for m in collection.members] == ["alpha", "beta"]
    for name in ("alpha", "beta"):
        link = collection.directory_path / name
        assert link.is_symlink()
        assert Path(os.readlink(link)) == (tmp_path / "resources" / name).resolve()
        assert (link / "README.md").is_file()
    assert sorted(p.name for p in collection.directory_path.iterdir()) == ["alpha", "beta"]


def test_same_set_is_served_from_cache(tmp_path: Path, fake_git: FakeGit) -> None:
    builder = _builder(tmp_path, fake_git, [git_resource("alpha"), git_resource("beta")])

    async def main():
        first = await builder.build(["alpha", "beta"])
        second = await builder.build(["beta", "alpha", "alpha"])
        return first, second

    first, second = asyncio.run(main())

    assert second is first
    assert sorted(fake_git.clones) == ["alpha", "beta"]
    assert fake_git.pulls == []
    assert builder.cached_keys() == ["alpha+beta"]


def test_concurrent_builds_of_one_set_share_the_result(tmp_path: Path, fake_git: FakeGit) -> None:
    builder = _builder(tmp_path, fake_git, [git_resource("alpha"), git_resource("beta")])

    async def main():
        return await asyncio.gather(builder.build(["alpha", "beta"]), builder.build(["beta", "alpha"]))

    first, second = asyncio.run(main())

    assert second is first
    assert sorted(fake_git.clones) == ["alpha", "beta"]
    assert fake_git.pulls == []


def test_stray_entries_are_removed_on_rebuild(tmp_path: Path, fake_git: FakeGit) -> None:
    builder = _builder(tmp_path, fake_git, [git_resource("alpha")])
    collection = asyncio.run(builder.build(["alpha"]))
    (collection.directory_path / "stray.txt").write_text("x", encoding="utf-8")
    (collection.directory_path / "olddir").mkdir()

    rebuilt = asyncio.run(builder.build(["alpha"]))

    assert sorted(p.name for p in rebuilt.directory_path.iterdir()) == ["alpha"]
    assert fake_git.pulls == ["alpha"]


def test_existing_link_is_replaced(tmp_path: Path, fake_git: FakeGit) -> None:
    directory = tmp_path / "collections" / "alpha"
    directory.mkdir(parents=True)
    wrong = tmp_path / "wrong"
    wrong.mkdir()
    (directory / "alpha").symlink_to(wrong, target_is_directory=True)
    builder = _builder(tmp_path, fake_git, [git_resource("alpha")])

    collection = asyncio.run(builder.build(["alpha"]))

    assert Path(os.readlink(collection.directory_path / "alpha")) == (tmp_path / "resources" / "alpha").resolve()
    assert wrong.is_dir()


def test_removed_checkout_triggers_resync(tmp_path: Path, fake_git: FakeGit) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    local = ResourceDefinition(name="docs", kind="local", path=str(docs))
    builder = _builder(tmp_path, fake_git, [local])
    asyncio.run(builder.build(["docs"]))

    docs.rmdir()

    with pytest.raises(CollectionError, match="Failed to load resource docs"):
        asyncio.run(builder.build(["docs"]))


def test_other_collections_are_untouched(tmp_path: Path, fake_git: FakeGit) -> None:
    builder = _builder(tmp_path, fake_git, [git_resource("alpha"), git_resource("beta")])

    async def main():
        solo = await builder.build(["alpha"])
        await builder.build(["alpha", "beta"])
        return solo

    solo = asyncio.run(main())

    assert sorted(p.name for p in solo.directory_path.iterdir()) == ["alpha"]
    assert builder.cached_keys() == ["alpha", "alpha+beta"]


def test_failed_member_fails_the_collection(tmp_path: Path) -> None:
    git = FakeGit(fail_urls={"https://example.com/broken.git"})
    builder = _builder(tmp_path, git, [git_resource("alpha"), git_resource("broken")])

    with pytest.raises(CollectionError) as excinfo:
        asyncio.run(builder.build(["alpha", "broken"]))

    assert excinfo.value.resource == "broken"
    assert "Failed to load resource broken" in excinfo.value.message
    assert not (tmp_path / "collections" / "alpha+broken").exists()
    # The healthy sibling was still synced.
    assert (tmp_path / "resources" / "alpha" / ".git").is_dir()


def test_unknown_member_fails_the_collection(tmp_path: Path, fake_git: FakeGit) -> None:
    builder = _builder(tmp_path, fake_git, [git_resource("alpha")])

    with pytest.raises(CollectionError, match="Failed to load resource nope") as excinfo:
        asyncio.run(builder.build(["alpha", "nope"]))

    assert excinfo.value.resource == "nope"
    assert fake_git.clones == []


def test_empty_set_fails(tmp_path: Path, fake_git: FakeGit) -> None:
    builder = _builder(tmp_path, fake_git, [git_resource("alpha")])
    with pytest.raises(CollectionError):
        asyncio.run(builder.build([]))
