"""
Side-effect command definitions for the orchestrator.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by the runtime.
- No behavior, no async, no I/O, no clocks.
- Reducer logic remains pure and deterministic.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
    - Commands are immutable value objects emitted by the reducer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from orchestrator.enums.role import Role
from orchestrator.events import EventType
from protocol.invite_code import RoomDescriptor
from session.snapshot import ConnectionSnapshot

# =============================================================================
# Command Type Enumeration
# =============================================================================

class CommandType(str, Enum):
    """
    Canonical command types emitted by the reducer.

    These are stable discriminants used for logging, replay,
    and runtime dispatch.
    """

    # Host bootstrap
    START_DISCOVERY = "START_DISCOVERY"
    ISSUE_INVITE = "ISSUE_INVITE"

    # Engine
    START_ENGINE = "START_ENGINE"
    START_PROBES = "START_PROBES"
    HAND_OFF_TUN_FD = "HAND_OFF_TUN_FD"
    TEARDOWN = "TEARDOWN"

    # Timers
    START_TIMER = "START_TIMER"
    CANCEL_TIMER = "CANCEL_TIMER"

    # Observers
    EMIT_SNAPSHOT = "EMIT_SNAPSHOT"
    SURFACE_INVITE_CODE = "SURFACE_INVITE_CODE"

    # Observability
    LOG_EVENT = "LOG_EVENT"


# =============================================================================
# Base Command
# =============================================================================

class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


# =============================================================================
# Host Bootstrap Commands
# =============================================================================

@dataclass(frozen=True)
class StartDiscovery(Command):
    """
    Locate the local service port.

    The runtime must answer with exactly one PortDiscovered or
    DiscoveryFailed for this session.
    """
    session_id: str
    command_type: CommandType = CommandType.START_DISCOVERY


@dataclass(frozen=True)
class IssueInvite(Command):
    """Build an invite code for the discovered port (InviteIssued / InviteFailed)."""
    session_id: str
    port: int
    command_type: CommandType = CommandType.ISSUE_INVITE


# =============================================================================
# Engine Commands
# =============================================================================

@dataclass(frozen=True)
class StartEngine(Command):
    """
    Build the role's tunnel config and submit it to the engine.

    The runtime must answer with exactly one EngineStarted or
    EngineStartFailed for this session.
    """
    session_id: str
    role: Role
    room: RoomDescriptor
    command_type: CommandType = CommandType.START_ENGINE


@dataclass(frozen=True)
class StartProbes(Command):
    """Start the reachability and liveness loops for this session."""
    session_id: str
    probe_port: int
    command_type: CommandType = CommandType.START_PROBES


@dataclass(frozen=True)
class HandOffTunFd(Command):
    """
    Open the tunnel device and hand its fd to the engine instance.

    Issued at most once per session.
    """
    session_id: str
    instance_name: str
    command_type: CommandType = CommandType.HAND_OFF_TUN_FD


@dataclass(frozen=True)
class Teardown(Command):
    """
    Cancel probes and timers, drain workers, stop the engine, release fds.

    Idempotent.
    """
    session_id: str
    reason: str
    command_type: CommandType = CommandType.TEARDOWN


# =============================================================================
# Timer Commands
# =============================================================================

@dataclass(frozen=True)
class StartTimer(Command):
    """
    Request to start a named timer.

    On expiration, the runtime must inject the specified timeout event.
    """
    timer_id: str
    session_id: str
    duration_ms: int
    timeout_event_type: EventType
    command_type: CommandType = CommandType.START_TIMER


@dataclass(frozen=True)
class CancelTimer(Command):
    """Request to cancel a previously scheduled timer."""
    timer_id: str
    command_type: CommandType = CommandType.CANCEL_TIMER


# =============================================================================
# Observer Commands
# =============================================================================

@dataclass(frozen=True)
class EmitSnapshot(Command):
    """Deliver a transition snapshot to every registered observer."""
    snapshot: ConnectionSnapshot
    command_type: CommandType = CommandType.EMIT_SNAPSHOT


@dataclass(frozen=True)
class SurfaceInviteCode(Command):
    """One-shot: the host's invite code is ready to be copied."""
    invite_code: str
    command_type: CommandType = CommandType.SURFACE_INVITE_CODE


# =============================================================================
# Observability Commands
# =============================================================================

@dataclass(frozen=True)
class LogEvent(Command):
    """Request to emit a structured observability event."""
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT
