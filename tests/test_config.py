from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from contextbot.config import (
    CONFIG_FILENAME,
    GLOBAL_DATA_DIR,
    PROJECT_DATA_DIR,
    load_config,
    load_dotenv,
    parse_jsonc,
    resolve_config,
    save_config,
    strip_comments,
    strip_trailing_commas,
)
from contextbot.errors import ConfigError, ResourceError
from contextbot.models import ContextbotConfig, ResourceDefinition

SAMPLE = """\
{
  // model used for answers
  "$schema": "https://contextbot.dev/contextbot.schema.json",
  "model": "anthropic/claude-haiku-4.5", /* inline */
  "resources": [
    {
      "name": "svelte",
      "url": "https://github.com/sveltejs/svelte.dev", // not a comment start inside the url
      "focus_subpath": "apps/svelte.dev",
    },
  ],
}
"""


def test_strip_comments_keeps_slashes_inside_strings() -> None:
    text = '{"url": "https://example.com/a//b"} // trailing\n/* block */'
    stripped = strip_comments(text)
    assert '"https://example.com/a//b"' in stripped
    assert "trailing" not in stripped
    assert "block" not in stripped


def test_strip_comments_keeps_line_breaks() -> None:
    text = '{\n  // one\n  "a": 1\n}'
    assert strip_comments(text).count("\n") == text.count("\n")


def test_strip_trailing_commas_before_closers_only() -> None:
    assert json.loads(strip_trailing_commas('{"a": [1, 2,], "b": 3,\n}')) == {"a": [1, 2], "b": 3}


def test_strip_trailing_commas_ignores_commas_in_strings() -> None:
    assert json.loads(strip_trailing_commas('{"a": "x,]", "b": "y,}",}')) == {"a": "x,]", "b": "y,}"}


def test_parse_jsonc_sample() -> None:
    data = parse_jsonc(SAMPLE)
    assert data["model"] == "anthropic/claude-haiku-4.5"
    assert data["resources"][0]["url"] == "https://github.com/sveltejs/svelte.dev"


def test_load_config_validates(tmp_path: Path) -> None:
    path = tmp_path / CONFIG_FILENAME
    path.write_text(SAMPLE, encoding="utf-8")
    config = load_config(path)
    assert config.schema_url == "https://contextbot.dev/contextbot.schema.json"
    assert config.resource_names() == ["svelte"]
    assert config.resources[0].branch == "main"


def test_load_config_rejects_bad_json(tmp_path: Path) -> None:
    path = tmp_path / CONFIG_FILENAME
    path.write_text('{"model": }', encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse"):
        load_config(path)


def test_load_config_rejects_duplicate_names(tmp_path: Path) -> None:
    path = tmp_path / CONFIG_FILENAME
    path.write_text(
        json.dumps({"resources": [
            {"name": "a", "url": "https://example.com/a"},
            {"name": "a", "url": "https://example.com/b"},
        ]}),
        encoding="utf-8",
    )
    with pytest.raises(ConfigError, match="Invalid config"):
        load_config(path)


def test_resource_names_must_be_path_components() -> None:
    for bad in ("", "..", "a/b", "a+b"):
        with pytest.raises(ValueError):
            ResourceDefinition(name=bad, url="https://example.com/x")


def test_local_resource_needs_path() -> None:
    with pytest.raises(ValueError):
        ResourceDefinition(name="docs", kind="local")


def test_save_config_keeps_schema_alias(tmp_path: Path) -> None:
    path = tmp_path / CONFIG_FILENAME
    save_config(path, ContextbotConfig(schema_url="https://x/schema.json", model="m"))
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["$schema"] == "https://x/schema.json"
    assert load_config(path).model == "m"


def test_project_config_wins(tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    save_config(project / CONFIG_FILENAME, ContextbotConfig(model="project-model"))
    global_dir = tmp_path / "global"
    save_config(global_dir / CONFIG_FILENAME, ContextbotConfig(model="global-model"))

    loaded = resolve_config(project, global_dir=global_dir)

    assert loaded.config.model == "project-model"
    assert loaded.config_path == project.resolve() / CONFIG_FILENAME
    assert loaded.data_dir == project.resolve() / PROJECT_DATA_DIR
    assert loaded.collections_dir == loaded.data_dir / "collections"


def test_missing_config_writes_global_default(tmp_path: Path) -> None:
    global_dir = tmp_path / "global"

    loaded = resolve_config(tmp_path, global_dir=global_dir)

    assert (global_dir / CONFIG_FILENAME).is_file()
    assert loaded.config.resource_names() == ["svelte", "tailwindcss", "nextjs"]
    assert loaded.data_dir == GLOBAL_DATA_DIR.expanduser()


def test_data_dir_override(tmp_path: Path) -> None:
    save_config(tmp_path / CONFIG_FILENAME, ContextbotConfig(data_dir=str(tmp_path / "elsewhere")))
    loaded = resolve_config(tmp_path, global_dir=tmp_path / "global")
    assert loaded.data_dir == tmp_path / "elsewhere"


def test_require_resource_unknown(tmp_path: Path) -> None:
    save_config(tmp_path / CONFIG_FILENAME, ContextbotConfig())
    loaded = resolve_config(tmp_path, global_dir=tmp_path / "global")
    with pytest.raises(ResourceError, match="not found in config"):
        loaded.require_resource("nope")


def test_load_dotenv_does_not_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text(
        "# comment\nCONTEXTBOT_TEST_A='from-file'\nCONTEXTBOT_TEST_B=from-file\n",
        encoding="utf-8",
    )
    monkeypatch.delenv("CONTEXTBOT_TEST_A", raising=False)
    monkeypatch.setenv("CONTEXTBOT_TEST_B", "from-env")

    load_dotenv(tmp_path)

    assert os.environ["CONTEXTBOT_TEST_A"] == "from-file"
    assert os.environ["CONTEXTBOT_TEST_B"] == "from-env"
