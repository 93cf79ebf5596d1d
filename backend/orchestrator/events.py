"""
Unified event definitions for the orchestrator reducer.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- All reducer decisions are based on these events.
- No clocks, no timers, no async, no side effects.

Everything produced on behalf of a running session (probe results, timer
expiry, engine callbacks) carries session_id for stale gating.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from protocol.invite_code import RoomDescriptor


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the reducer.

    Every (phase, event_type) pair must be explicitly handled
    or explicitly ignored by the reducer.
    """

    # ------------------------------------------------------------------
    # Caller requests
    # ------------------------------------------------------------------
    HOST_START_REQUESTED = "HOST_START_REQUESTED"
    GUEST_START_REQUESTED = "GUEST_START_REQUESTED"
    STOP_REQUESTED = "STOP_REQUESTED"

    # ------------------------------------------------------------------
    # Discovery / invite (host only)
    # ------------------------------------------------------------------
    PORT_DISCOVERED = "PORT_DISCOVERED"
    DISCOVERY_FAILED = "DISCOVERY_FAILED"
    INVITE_ISSUED = "INVITE_ISSUED"
    INVITE_FAILED = "INVITE_FAILED"

    # ------------------------------------------------------------------
    # Engine
    # ------------------------------------------------------------------
    ENGINE_STARTED = "ENGINE_STARTED"
    ENGINE_START_FAILED = "ENGINE_START_FAILED"

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------
    REACHABILITY_RESULT = "REACHABILITY_RESULT"
    LIVENESS_RESULT = "LIVENESS_RESULT"

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------
    TUN_HANDOFF_SUCCEEDED = "TUN_HANDOFF_SUCCEEDED"
    TUN_HANDOFF_FAILED = "TUN_HANDOFF_FAILED"

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    BOOT_DEADLINE_EXPIRED = "BOOT_DEADLINE_EXPIRED"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class Event:
    """
    Base event type.

    All events must specify:
    - event_type: discriminant
    - ts_ms: timestamp provided by the source (or fake in tests)
    """

    event_type: EventType
    ts_ms: int


@dataclass(frozen=True)
class SessionEvent(Event):
    """
    Base class for events scoped to one session.

    The reducer MUST ignore events whose session_id does not match the
    current session.
    """

    session_id: str


# =============================================================================
# Caller Requests
# =============================================================================

@dataclass(frozen=True)
class HostStartRequested(SessionEvent):
    """
    Caller asked to host.

    port None means the local service port must be discovered first
    (SCANNING). With a port, the invite was already built by the caller.
    """
    port: int | None = None
    invite_code: str | None = None
    room: RoomDescriptor | None = None


@dataclass(frozen=True)
class GuestStartRequested(SessionEvent):
    """Caller asked to join the room behind an already-decoded invite."""
    invite_code: str
    room: RoomDescriptor


@dataclass(frozen=True)
class StopRequested(Event):
    """Caller asked to stop whatever session is active."""


# =============================================================================
# Discovery / Invite
# =============================================================================

@dataclass(frozen=True)
class PortDiscovered(SessionEvent):
    """Discovery collaborator found the local service port."""
    port: int


@dataclass(frozen=True)
class DiscoveryFailed(SessionEvent):
    """Discovery collaborator gave up or could not listen."""
    reason: str


@dataclass(frozen=True)
class InviteIssued(SessionEvent):
    """Invite code built for the discovered port."""
    invite_code: str
    room: RoomDescriptor


@dataclass(frozen=True)
class InviteFailed(SessionEvent):
    """Invite code could not be built for the discovered port."""
    reason: str


# =============================================================================
# Engine
# =============================================================================

@dataclass(frozen=True)
class EngineStarted(SessionEvent):
    """
    Engine accepted the config and is running the instance.

    probe_port is what the reachability probe must target from now on.
    """
    instance_name: str
    probe_port: int
    backup_endpoint: str | None = None


@dataclass(frozen=True)
class EngineStartFailed(SessionEvent):
    """Engine rejected the config or could not be loaded."""
    reason: str


# =============================================================================
# Probes
# =============================================================================

@dataclass(frozen=True)
class ReachabilityResult(SessionEvent):
    """One reachability probe completed."""
    ok: bool


@dataclass(frozen=True)
class LivenessResult(SessionEvent):
    """One liveness probe completed."""
    ok: bool


# =============================================================================
# Arming
# =============================================================================

@dataclass(frozen=True)
class TunHandoffSucceeded(SessionEvent):
    """Engine took ownership of the local tunnel fd."""


@dataclass(frozen=True)
class TunHandoffFailed(SessionEvent):
    """Opening the tunnel device or handing its fd to the engine failed."""
    reason: str


# =============================================================================
# Timers
# =============================================================================

@dataclass(frozen=True)
class BootDeadlineExpired(SessionEvent):
    """Boot deadline fired before the session armed."""
