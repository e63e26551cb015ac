"""Contextbot - answer questions over collections of source repositories."""

__version__ = "0.1.0"

from .aggregator import ChunkAggregator, apply_delta  # noqa: E402
from .errors import (  # noqa: E402,F401 -- public re-exports
    CollectionError,
    ConcurrentStreamError,
    ConfigError,
    ContextbotError,
    ResourceError,
    StreamParseError,
)
from .models import (  # noqa: E402,F401 -- public re-exports
    Chunk,
    Collection,
    ContextbotConfig,
    ResourceDefinition,
    Thread,
)

__all__ = [
    "ChunkAggregator",
    "apply_delta",
    "CollectionError",
    "ConcurrentStreamError",
    "ConfigError",
    "ContextbotError",
    "ResourceError",
    "StreamParseError",
    "Chunk",
    "Collection",
    "ContextbotConfig",
    "ResourceDefinition",
    "Thread",
]
