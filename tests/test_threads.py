from __future__ import annotations

from pathlib import Path

import pytest

from contextbot.models import TextChunk, ThreadMessage, ToolChunk
from contextbot.threads import ThreadStore, extract_mentions, format_history, merge_resources


def test_extract_mentions() -> None:
    assert extract_mentions("how does @svelte compare to @react? ask @svelte.") == ["svelte", "react"]


def test_merge_resources_keeps_order() -> None:
    assert merge_resources(["a", "b"], ["c", "a"]) == ["a", "b", "c"]


def test_history_is_just_the_question_when_empty() -> None:
    assert format_history([], "What is a rune?") == "What is a rune?"


def test_history_block() -> None:
    messages = [
        ThreadMessage(role="user", content="@svelte what are runes?"),
        ThreadMessage(role="assistant", content=[
            ToolChunk(id="c1", tool_name="grep"),
            TextChunk(text="Runes are compiler hints."),
        ]),
        ThreadMessage(role="user", content="and stores?"),
        ThreadMessage(role="assistant", content=[TextChunk(text="half an answer")], canceled=True),
        ThreadMessage(role="system", content="Error: something"),
    ]

    text = format_history(messages, "Show an example")

    assert text == (
        "=== CONVERSATION HISTORY ===\n"
        "User: what are runes?\n\n"
        "Assistant: Runes are compiler hints.\n\n"
        "User: and stores?\n"
        "=== END HISTORY ===\n\n"
        "Current question: Show an example"
    )


def test_store_round_trip_and_listing(tmp_path: Path) -> None:
    store = ThreadStore(tmp_path / "threads")
    older = store.create("older")
    older.resources = ["svelte"]
    older.messages.append(ThreadMessage(role="assistant", content=[TextChunk(text="hi")]))
    store.save(older)
    newer = store.create("newer")
    store.save(newer)

    loaded = store.load("older")

    assert loaded.resources == ["svelte"]
    assert loaded.messages[0].content == [TextChunk(text="hi")]
    assert [t.id for t in store.list_threads()] == ["newer", "older"]
    assert store.load("missing") is None


def test_load_or_create_keeps_requested_id(tmp_path: Path) -> None:
    store = ThreadStore(tmp_path / "threads")
    assert store.load_or_create("fresh").id == "fresh"
    assert store.load_or_create(None).id


def test_thread_ids_cannot_escape(tmp_path: Path) -> None:
    store = ThreadStore(tmp_path / "threads")
    with pytest.raises(ValueError):
        store.load("../etc/passwd")


def test_corrupt_thread_file_is_skipped(tmp_path: Path) -> None:
    directory = tmp_path / "threads"
    directory.mkdir()
    (directory / "bad.json").write_text("{not json", encoding="utf-8")
    store = ThreadStore(directory)
    assert store.load("bad") is None
    assert store.list_threads() == []
