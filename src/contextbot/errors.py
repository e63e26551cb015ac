"""Error taxonomy shared by the store, the builder and the stream layers."""

from __future__ import annotations


class ContextbotError(Exception):
    """Base class for every error contextbot raises on purpose."""

    tag = "ContextbotError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "tag": self.tag}


class ConfigError(ContextbotError):
    """The config file is unreadable, unparsable or fails validation."""

    tag = "ConfigError"


class ResourceError(ContextbotError):
    """Syncing a single resource failed.

    Non-fatal to sibling resources in the same batch, fatal to any
    collection that needs this resource.
    """

    tag = "ResourceError"

    def __init__(self, name: str, message: str) -> None:
        super().__init__(f"Resource '{name}': {message}")
        self.name = name


class CollectionError(ContextbotError):
    """A collection could not be assembled (empty set or filesystem failure)."""

    tag = "CollectionError"

    def __init__(self, message: str, *, resource: str | None = None) -> None:
        super().__init__(message)
        self.resource = resource


class StreamParseError(ContextbotError):
    """A single message on the event wire is malformed."""

    tag = "StreamParseError"

    def __init__(self, raw: str, message: str) -> None:
        super().__init__(message)
        self.raw = raw


class ConcurrentStreamError(ContextbotError):
    """A second generation was requested on a thread that is still streaming."""

    tag = "ConcurrentStreamError"

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"Thread '{thread_id}' already has an answer streaming.")
        self.thread_id = thread_id


class RemoteError(ContextbotError):
    """A contextbot server answered a request with an error status."""

    tag = "RemoteError"

    def __init__(self, status_code: int, message: str, *, remote_tag: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.remote_tag = remote_tag
