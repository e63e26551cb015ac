"""Pydantic models for contextbot's resources, collections and answers."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

class ResourceDefinition(BaseModel):
    """A named git repository or local directory the answerer may read."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: Literal["git", "local"] = "git"
    url: str | None = None
    branch: str = "main"
    path: str | None = None
    """Filesystem directory for ``local`` resources."""

    focus_subpath: str | None = None
    """Sub-directory the answerer should concentrate on."""

    note: str | None = None
    """Free text passed through to the answerer's instructions."""

    @field_validator("name")
    @classmethod
    def _name_is_path_component(cls, value: str) -> str:
        value = value.strip()
        if not value or value in (".", "..") or "/" in value or "\\" in value or "+" in value:
            raise ValueError(f"invalid resource name {value!r}")
        return value

    @model_validator(mode="after")
    def _location_matches_kind(self) -> "ResourceDefinition":
        if self.kind == "git" and not self.url:
            raise ValueError(f"git resource '{self.name}' needs a url")
        if self.kind == "local" and not self.path:
            raise ValueError(f"local resource '{self.name}' needs a path")
        return self


class ResourceCheckout(BaseModel):
    """A resource's on-disk copy, owned by the ResourceStore."""

    name: str
    absolute_path: Path
    last_synced_at: str


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------

class Collection(BaseModel):
    """A directory of member symlinks plus the instructions that go with it."""

    key: str
    directory_path: Path
    members: list[ResourceDefinition]
    instructions: str


# ---------------------------------------------------------------------------
# Chunks
# ---------------------------------------------------------------------------

TEXT_CHUNK_ID = "__text__"
REASONING_CHUNK_ID = "__reasoning__"


class ToolStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"

    @property
    def rank(self) -> int:
        return _TOOL_STATUS_ORDER.index(self)


_TOOL_STATUS_ORDER = [ToolStatus.pending, ToolStatus.running, ToolStatus.completed]


class TextChunk(BaseModel):
    type: Literal["text"] = "text"
    id: str = TEXT_CHUNK_ID
    text: str = ""


class ReasoningChunk(BaseModel):
    type: Literal["reasoning"] = "reasoning"
    id: str = REASONING_CHUNK_ID
    text: str = ""


class ToolChunk(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["tool"] = "tool"
    id: str
    tool_name: str = Field(alias="toolName")
    status: ToolStatus = ToolStatus.pending


class FileChunk(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["file"] = "file"
    id: str
    file_path: str = Field(alias="filePath")


Chunk = Annotated[
    Union[TextChunk, ReasoningChunk, ToolChunk, FileChunk],
    Field(discriminator="type"),
]

chunk_adapter: TypeAdapter[Chunk] = TypeAdapter(Chunk)


class SessionState(str, Enum):
    idle = "idle"
    streaming = "streaming"
    canceling = "canceling"
    canceled = "canceled"
    done = "done"
    errored = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.done, SessionState.canceled, SessionState.errored)


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------

class ThreadMessage(BaseModel):
    """One turn of a saved conversation.

    Assistant turns store their chunk list; user and system turns store text.
    """

    role: Literal["user", "assistant", "system"]
    content: str | list[Chunk] = ""
    canceled: bool = False
    created_at: str | None = None


class Thread(BaseModel):
    """A saved conversation, persisted as ``threads/<id>.json``."""

    id: str
    created_at: str
    last_activity_at: str
    resources: list[str] = Field(default_factory=list)
    """Resource names accumulated across every question in the thread."""

    messages: list[ThreadMessage] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ContextbotConfig(BaseModel):
    """User configuration stored in ``contextbot.config.jsonc``.

    CLI flags override these values for a single invocation.
    Precedence: CLI flag > project config > global config > default.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_url: str | None = Field(default=None, alias="$schema")

    resources: list[ResourceDefinition] = Field(default_factory=list)
    """Every resource a question may reference by name."""

    model: str = "anthropic/claude-haiku-4.5"
    """Model ID handed to the generation provider."""

    provider: str = "openrouter"
    """Generation provider name."""

    data_dir: str | None = None
    """Override for the directory holding resources/, collections/ and threads/."""

    @model_validator(mode="after")
    def _unique_resource_names(self) -> "ContextbotConfig":
        seen: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ValueError(f"duplicate resource name '{resource.name}'")
            seen.add(resource.name)
        return self

    def get_resource(self, name: str) -> ResourceDefinition | None:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None

    def resource_names(self) -> list[str]:
        return [r.name for r in self.resources]
