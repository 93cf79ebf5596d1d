"""
Session role enumeration.

Roles are orthogonal to phases:
- Phase answers: "How far has the session come?"
- Role answers:  "Which side of the room is this device?"
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """
    NONE:
        No session (IDLE).

    HOST:
        Shares a local service port and issues the invite code.

    GUEST:
        Joins a room from an invite code and forwards a local port to it.
    """

    NONE = "NONE"
    HOST = "HOST"
    GUEST = "GUEST"
