"""
Authoritative orchestrator state container.

Rules:
- This dataclass is a pure data model.
- It contains ALL state the reducer may ever need.
- No behavior, no helpers, no derived logic.
"""
from __future__ import annotations

from dataclasses import dataclass

from orchestrator.enums.fail_reason import FailReason
from orchestrator.enums.phase import Phase
from orchestrator.enums.role import Role
from protocol.invite_code import RoomDescriptor


@dataclass(frozen=True)
class ConnectionSession:
    """Immutable snapshot of all orchestrator-owned state."""

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    # Events carrying another session_id are stale and ignored.
    session_id: str | None = None

    # ------------------------------------------------------------------
    # Control state
    # ------------------------------------------------------------------
    role: Role = Role.NONE
    phase: Phase = Phase.IDLE

    # Set only in FAILED
    fail_reason: FailReason | None = None

    # Last human-readable outcome (failure detail or "manual_stop")
    message: str | None = None

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------
    reachable: bool = False
    alive: bool = False

    # Reset to 0 on any reachability success; fatal at threshold once ARMED
    consecutive_reachability_failures: int = 0

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------
    # True once the fd hand-off was requested; gates a second request
    arm_requested: bool = False

    # True once the hand-off succeeded; never reset within a session
    armed_once: bool = False

    # ------------------------------------------------------------------
    # Room / endpoints
    # ------------------------------------------------------------------
    room: RoomDescriptor | None = None

    # Host: issued code. Guest: the code that was joined.
    invite_code: str | None = None

    # Host: the shared local service port
    service_port: int | None = None

    # Port the reachability probe targets (host: service, guest: local forward)
    probe_port: int | None = None

    # Guest: "127.0.0.1:<local forward port>"
    backup_endpoint: str | None = None

    # Engine instance owning the tunnel
    instance_name: str | None = None
