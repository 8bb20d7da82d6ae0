"""collab-sim: in-process real-time collaboration test harness."""

__version__ = "0.1.0"

from .exceptions import (
    ChannelNotInitializedError,
    ChannelNotOpenError,
    CollabSimError,
    ConfigError,
    ConsistencyError,
    DuplicateConnectionError,
    NavigationError,
    NotStartedError,
    SessionCountError,
    SetupError,
    TransportError,
    UserIndexError,
)

__all__ = [
    "__version__",
    "CollabSimError",
    "SetupError",
    "NotStartedError",
    "SessionCountError",
    "UserIndexError",
    "DuplicateConnectionError",
    "TransportError",
    "ChannelNotOpenError",
    "ChannelNotInitializedError",
    "NavigationError",
    "ConsistencyError",
    "ConfigError",
]
