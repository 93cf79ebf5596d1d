"""
Failure taxonomy surfaced on FAILED sessions.

Every lower-level error (engine status, socket error, discovery error,
TUN error) is folded into one of these before it leaves the orchestrator.
"""

from __future__ import annotations

from enum import Enum


class FailReason(str, Enum):
    # bad inputs, discovery failure, engine rejected config, fd hand-off failed
    START_FAILED = "START_FAILED"
    # boot deadline passed before arming
    TIMEOUT = "TIMEOUT"
    # reachability streak threshold reached while armed
    CONNECTION_LOST = "CONNECTION_LOST"
    # liveness probe failed while armed
    ENGINE_CRASHED = "ENGINE_CRASHED"
