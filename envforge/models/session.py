"""Session lifecycle states — Created -> Active -> Deactivated (terminal)."""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """Lifecycle state of a Session."""

    CREATED = "created"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


# Valid state transitions, enforced by Session.
# DEACTIVATED is terminal; a fresh Session must be created instead.
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.CREATED: {SessionState.ACTIVE},
    SessionState.ACTIVE: {SessionState.DEACTIVATED},
    SessionState.DEACTIVATED: set(),  # terminal
}
