from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from contextbot.config import CONFIG_FILENAME, LoadedConfig
from contextbot.git import GitCommandError
from contextbot.models import ContextbotConfig, ResourceDefinition


class FakeGit:
    """In-memory stand-in for ``SubprocessGit`` that records every call."""

    def __init__(self, fail_urls: set[str] | None = None) -> None:
        self.fail_urls = set(fail_urls or ())
        self.clones: list[str] = []
        self.pulls: list[str] = []

    def clone(self, url: str, branch: str, dest: Path) -> None:
        self.clones.append(dest.name)
        if url in self.fail_urls:
            raise GitCommandError(["git", "clone", url], 128, "fatal: repository not found")
        dest.mkdir(parents=True)
        (dest / ".git").mkdir()
        (dest / "README.md").write_text(f"# {dest.name}\n", encoding="utf-8")

    def pull(self, dest: Path, branch: str) -> None:
        self.pulls.append(dest.name)


class ScriptedSource:
    """Generation source that replays a fixed list of events."""

    def __init__(self, events: list) -> None:
        self.events = list(events)
        self.questions: list[str] = []
        self.collections: list = []

    async def stream(self, question, collection):
        self.questions.append(question)
        self.collections.append(collection)
        for event in self.events:
            yield event


class BlockingSource:
    """Yields its events, then waits forever for more."""

    def __init__(self, events: list) -> None:
        self.events = list(events)
        self.closed = False

    async def stream(self, question, collection):
        try:
            for event in self.events:
                yield event
            await asyncio.Event().wait()
        finally:
            self.closed = True


def git_resource(name: str, **kwargs) -> ResourceDefinition:
    return ResourceDefinition(name=name, url=f"https://example.com/{name}.git", **kwargs)


def make_loaded(tmp_path: Path, resources: list[ResourceDefinition]) -> LoadedConfig:
    return LoadedConfig(
        config=ContextbotConfig(resources=resources),
        config_path=tmp_path / CONFIG_FILENAME,
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()
