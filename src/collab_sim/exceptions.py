"""Custom exception hierarchy for collab-sim.

All collab-sim exceptions inherit from CollabSimError, so scenarios can
catch broad or specific errors:

    try:
        await simulator.perform_concurrent_actions(actions)
    except SessionCountError as e:
        print(f"Scenario wiring problem: {e}")
    except CollabSimError as e:
        print(f"collab-sim error: {e}")

Expected adverse conditions (dropped or offline deliveries) are never
raised; they show up only as the absence of a delivery.
"""

from __future__ import annotations


class CollabSimError(Exception):
    """Base exception for all collab-sim errors."""


class SetupError(CollabSimError):
    """Raised when a scenario wires the harness incorrectly."""


class NotStartedError(SetupError):
    """Raised when a connection is requested from a broker that is not started."""


class SessionCountError(SetupError):
    """Raised when the number of actions does not match the number of sessions."""


class UserIndexError(SetupError, IndexError):
    """Raised when a session index is out of range."""


class DuplicateConnectionError(SetupError):
    """Raised when a connection id is registered twice and duplicates are rejected."""


class TransportError(CollabSimError):
    """Raised when a send fails at the transport level."""


class ChannelNotOpenError(TransportError):
    """Raised when sending on a socket that is not open."""


class ChannelNotInitializedError(TransportError):
    """Raised when a channel is used before initialize() or after close()."""


class NavigationError(CollabSimError):
    """Raised when one or more sessions fail to navigate."""


class ConsistencyError(CollabSimError):
    """Raised when sessions disagree on state that should be synchronized."""


class ConfigError(CollabSimError):
    """Raised when configuration is invalid or missing."""
