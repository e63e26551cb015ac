from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import FakeGit, git_resource
from contextbot.errors import ResourceError
from contextbot.models import ResourceDefinition
from contextbot.resources import ResourceStore


def test_ensure_clones_then_pulls(tmp_path: Path, fake_git: FakeGit) -> None:
    store = ResourceStore(tmp_path / "resources", git=fake_git)
    definition = git_resource("alpha")

    first = asyncio.run(store.ensure(definition))
    second = asyncio.run(store.ensure(definition))

    assert first == second == (tmp_path / "resources" / "alpha").resolve()
    assert fake_git.clones == ["alpha"]
    assert fake_git.pulls == ["alpha"]
    assert store.get_checkout("alpha").absolute_path == first
    assert store.is_valid("alpha", first)


def test_incomplete_checkout_is_replaced(tmp_path: Path, fake_git: FakeGit) -> None:
    leftover = tmp_path / "resources" / "alpha"
    leftover.mkdir(parents=True)
    (leftover / "partial.txt").write_text("x", encoding="utf-8")
    store = ResourceStore(tmp_path / "resources", git=fake_git)

    asyncio.run(store.ensure(git_resource("alpha")))

    assert fake_git.clones == ["alpha"]
    assert not (leftover / "partial.txt").exists()
    assert (leftover / ".git").is_dir()


def test_clone_failure_raises_resource_error(tmp_path: Path) -> None:
    git = FakeGit(fail_urls={"https://example.com/broken.git"})
    store = ResourceStore(tmp_path / "resources", git=git)

    with pytest.raises(ResourceError) as excinfo:
        asyncio.run(store.ensure(git_resource("broken")))

    assert excinfo.value.name == "broken"
    assert "repository not found" in excinfo.value.message
    assert store.get_checkout("broken") is None


def test_ensure_many_reports_each_resource(tmp_path: Path) -> None:
    git = FakeGit(fail_urls={"https://example.com/broken.git"})
    store = ResourceStore(tmp_path / "resources", git=git)

    outcomes = asyncio.run(store.ensure_many([git_resource("alpha"), git_resource("broken")]))

    assert outcomes["alpha"].ok
    assert outcomes["alpha"].checkout.absolute_path.is_dir()
    assert not outcomes["broken"].ok
    assert outcomes["broken"].error.name == "broken"


def test_same_resource_is_synced_one_at_a_time(tmp_path: Path, fake_git: FakeGit) -> None:
    store = ResourceStore(tmp_path / "resources", git=fake_git)
    definition = git_resource("alpha")

    async def main() -> None:
        await asyncio.gather(store.ensure(definition), store.ensure(definition))

    asyncio.run(main())

    # The second caller waits for the clone and then pulls.
    assert fake_git.clones == ["alpha"]
    assert fake_git.pulls == ["alpha"]


def test_local_resource_needs_existing_directory(tmp_path: Path, fake_git: FakeGit) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    store = ResourceStore(tmp_path / "resources", git=fake_git)

    path = asyncio.run(store.ensure(ResourceDefinition(name="docs", kind="local", path=str(docs))))
    assert path == docs.resolve()

    missing = ResourceDefinition(name="gone", kind="local", path=str(tmp_path / "gone"))
    with pytest.raises(ResourceError, match="does not exist"):
        asyncio.run(store.ensure(missing))

    assert fake_git.clones == [] and fake_git.pulls == []


def test_checkout_no_longer_valid_once_removed(tmp_path: Path, fake_git: FakeGit) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    store = ResourceStore(tmp_path / "resources", git=fake_git)
    path = asyncio.run(store.ensure(ResourceDefinition(name="docs", kind="local", path=str(docs))))

    docs.rmdir()

    assert not store.is_valid("docs", path)
    assert not store.is_valid("other", path)
