from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from contextbot.cli import app
from contextbot.config import CONFIG_FILENAME, load_config

runner = CliRunner()


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init", "--no-defaults"])
    assert result.exit_code == 0, result.output
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "guide.md").write_text("# Guide\n", encoding="utf-8")
    result = runner.invoke(app, ["resources", "add", "docs", "--path", str(docs), "--note", "Local docs."])
    assert result.exit_code == 0, result.output
    return tmp_path


def test_init_is_idempotent(project: Path) -> None:
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert "Already initialised" in result.output


def test_resources_add_list_remove(project: Path) -> None:
    result = runner.invoke(app, ["resources", "list"])
    assert result.exit_code == 0
    assert "docs" in result.output

    dup = runner.invoke(app, ["resources", "add", "docs", "--url", "https://example.com/x.git"])
    assert dup.exit_code == 1
    assert "already exists" in dup.output

    bad = runner.invoke(app, ["resources", "add", "a+b", "--url", "https://example.com/x.git"])
    assert bad.exit_code == 1

    removed = runner.invoke(app, ["resources", "remove", "docs"])
    assert removed.exit_code == 0
    assert load_config(project / CONFIG_FILENAME).resources == []


def test_resources_add_needs_one_location(project: Path) -> None:
    result = runner.invoke(app, ["resources", "add", "x"])
    assert result.exit_code == 1
    assert "exactly one" in result.output


def test_config_get_and_set(project: Path) -> None:
    result = runner.invoke(app, ["config", "model", "openai/gpt-4o-mini"])
    assert result.exit_code == 0
    assert load_config(project / CONFIG_FILENAME).model == "openai/gpt-4o-mini"

    shown = runner.invoke(app, ["config"])
    assert "openai/gpt-4o-mini" in shown.output

    unknown = runner.invoke(app, ["config", "resources"])
    assert unknown.exit_code == 1
    assert "Unknown config key" in unknown.output


def test_sync(project: Path) -> None:
    result = runner.invoke(app, ["sync"])
    assert result.exit_code == 0, result.output
    assert "Synced" in result.output

    missing = runner.invoke(app, ["sync", "ghost"])
    assert missing.exit_code == 1
    assert "Failed" in missing.output


def test_ask_with_replay_saves_thread(project: Path) -> None:
    log = project / "events.jsonl"
    log.write_text(
        "\n".join(json.dumps(e) for e in [
            {"type": "tool.updated", "callID": "c1", "tool": "read_file", "state": {"status": "completed"}},
            {"type": "text.delta", "delta": "Hello, "},
            {"type": "text.delta", "delta": "world!"},
            {"type": "done"},
        ]),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["ask", "What is in @docs?", "--replay", str(log)])

    assert result.exit_code == 0, result.output
    assert "Hello, world!" in result.output
    assert "Thread" in result.output

    listed = runner.invoke(app, ["threads", "list"])
    assert listed.exit_code == 0
    assert "No saved threads" not in listed.output

    thread_file = next((project / ".contextbot" / "threads").glob("*.json"))
    shown = runner.invoke(app, ["threads", "show", thread_file.stem])
    assert shown.exit_code == 0
    assert "What is in @docs?" in shown.output
    assert "read_file" in shown.output


def test_ask_reports_collection_errors(project: Path) -> None:
    log = project / "events.jsonl"
    log.write_text(json.dumps({"type": "done"}), encoding="utf-8")

    result = runner.invoke(app, ["ask", "q", "-r", "ghost", "--replay", str(log)])

    assert result.exit_code == 1
    assert "Failed to load resource ghost" in result.output


def test_ask_without_api_key(project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    result = runner.invoke(app, ["ask", "q"])
    assert result.exit_code == 1
    assert "OPENROUTER_API_KEY" in result.output
