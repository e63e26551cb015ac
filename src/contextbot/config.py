"""Config discovery and JSONC loading.

A project-level ``contextbot.config.jsonc`` in the working directory wins over
the global one in ``~/.config/contextbot/``.  When neither exists a default
global config is written.  The file is JSON with ``//`` / ``/* */`` comments
and trailing commas allowed; both extensions are removed by small pure
functions before ``json.loads`` and pydantic validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from .errors import ConfigError, ResourceError
from .models import ContextbotConfig, ResourceDefinition

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "contextbot.config.jsonc"
CONFIG_SCHEMA_URL = "https://contextbot.dev/contextbot.schema.json"
GLOBAL_CONFIG_DIR = Path("~/.config/contextbot")
GLOBAL_DATA_DIR = Path("~/.local/share/contextbot")
PROJECT_DATA_DIR = ".contextbot"

DEFAULT_RESOURCES: list[ResourceDefinition] = [
    ResourceDefinition(
        name="svelte",
        kind="git",
        url="https://github.com/sveltejs/svelte.dev",
        branch="main",
        focus_subpath="apps/svelte.dev",
        note=(
            "This is the svelte docs website repo, not the actual svelte repo. "
            "Focus on the content directory, it has all the markdown files for the docs."
        ),
    ),
    ResourceDefinition(
        name="tailwindcss",
        kind="git",
        url="https://github.com/tailwindlabs/tailwindcss.com",
        branch="main",
        focus_subpath="src/docs",
        note=(
            "This is the tailwindcss docs website repo, not the actual tailwindcss repo. "
            "Use the docs to answer questions about tailwindcss."
        ),
    ),
    ResourceDefinition(
        name="nextjs",
        kind="git",
        url="https://github.com/vercel/next.js",
        branch="canary",
        focus_subpath="docs",
        note=(
            "These are the docs for the next.js framework, not the actual next.js repo. "
            "Use the docs to answer questions about next.js."
        ),
    ),
]


# ---------------------------------------------------------------------------
# JSONC
# ---------------------------------------------------------------------------


def _scan_string(text: str, start: int) -> int:
    """Return the index just past the string literal opening at *start*."""
    quote = text[start]
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    return len(text)


def strip_comments(text: str) -> str:
    """Remove ``//`` line comments and ``/* */`` block comments outside strings.

    Line comments keep their terminating newline so line numbers in later
    parse errors still match the source file.
    """
    out: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        nxt = text[i + 1] if i + 1 < len(text) else ""
        if ch == '"':
            end = _scan_string(text, i)
            out.append(text[i:end])
            i = end
        elif ch == "/" and nxt == "/":
            newline = text.find("\n", i)
            i = len(text) if newline == -1 else newline
        elif ch == "/" and nxt == "*":
            close = text.find("*/", i + 2)
            i = len(text) if close == -1 else close + 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def strip_trailing_commas(text: str) -> str:
    """Drop commas that are followed only by whitespace and ``]`` or ``}``."""
    out: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '"':
            end = _scan_string(text, i)
            out.append(text[i:end])
            i = end
            continue
        if ch == ",":
            j = i + 1
            while j < len(text) and text[j].isspace():
                j += 1
            if j < len(text) and text[j] in "]}":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def parse_jsonc(text: str) -> object:
    """Parse JSON-with-comments text into plain Python data."""
    return json.loads(strip_trailing_commas(strip_comments(text)).strip())


# ---------------------------------------------------------------------------
# Loading / saving
# ---------------------------------------------------------------------------


def load_config(path: Path) -> ContextbotConfig:
    """Read and validate the config at *path*, raising ``ConfigError`` on failure."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc

    try:
        data = parse_jsonc(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse config {path}: {exc}") from exc

    try:
        return ContextbotConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc


def save_config(path: Path, config: ContextbotConfig) -> None:
    """Write *config* to *path* as formatted JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = config.model_dump(mode="json", by_alias=True, exclude_none=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def default_config() -> ContextbotConfig:
    return ContextbotConfig(schema_url=CONFIG_SCHEMA_URL, resources=list(DEFAULT_RESOURCES))


@dataclass(frozen=True)
class LoadedConfig:
    """A validated config plus the directories derived from where it was found."""

    config: ContextbotConfig
    config_path: Path
    data_dir: Path

    @property
    def resources_dir(self) -> Path:
        return self.data_dir / "resources"

    @property
    def collections_dir(self) -> Path:
        return self.data_dir / "collections"

    @property
    def threads_dir(self) -> Path:
        return self.data_dir / "threads"

    def require_resource(self, name: str) -> ResourceDefinition:
        definition = self.config.get_resource(name)
        if definition is None:
            raise ResourceError(name, "not found in config")
        return definition


def resolve_config(cwd: Path | None = None, *, global_dir: Path | None = None) -> LoadedConfig:
    """Locate, load (or create) the effective config for *cwd*."""
    cwd = (cwd or Path.cwd()).resolve()

    project_path = cwd / CONFIG_FILENAME
    if project_path.is_file():
        config = load_config(project_path)
        data_dir = Path(config.data_dir).expanduser() if config.data_dir else cwd / PROJECT_DATA_DIR
        return LoadedConfig(config=config, config_path=project_path, data_dir=data_dir)

    config_dir = (global_dir or GLOBAL_CONFIG_DIR).expanduser()
    global_path = config_dir / CONFIG_FILENAME
    if global_path.is_file():
        config = load_config(global_path)
    else:
        logger.info("No config found; writing defaults to %s", global_path)
        config = default_config()
        try:
            save_config(global_path, config)
        except OSError as exc:
            raise ConfigError(f"Failed to write default config {global_path}: {exc}") from exc

    data_dir = Path(config.data_dir).expanduser() if config.data_dir else GLOBAL_DATA_DIR.expanduser()
    return LoadedConfig(config=config, config_path=global_path, data_dir=data_dir)


def load_dotenv(start_dir: Path) -> None:
    """Load a .env file from *start_dir* (or parents) into os.environ.

    Only sets vars that are not already present in the environment.
    Handles KEY=VALUE lines, ignores comments and blank lines.
    """
    search = start_dir.resolve()
    for d in [search, *search.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            try:
                for line in candidate.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, _, value = line.partition("=")
                    key = key.strip()
                    value = value.strip().strip("\"'")
                    if key and key not in os.environ:
                        os.environ[key] = value
            except OSError:
                logger.warning("Could not read %s", candidate)
            return  # stop after the first .env found
