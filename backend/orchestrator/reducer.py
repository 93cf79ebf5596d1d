"""
Pure orchestrator reducer.

(state, event) -> (new_state, commands)

Rules:
- Pure: no side effects, no IO, no clocks, no randomness.
- Deterministic: output depends only on inputs.
- Total: every (state, event) pair is handled or explicitly ignored (logged).
"""

# Reducer owns timer semantics; runtime must not cancel timers implicitly.

from __future__ import annotations

from dataclasses import replace
from typing import Any

from orchestrator.commands import (
    CancelTimer,
    Command,
    EmitSnapshot,
    HandOffTunFd,
    IssueInvite,
    LogEvent,
    StartDiscovery,
    StartEngine,
    StartProbes,
    StartTimer,
    SurfaceInviteCode,
    Teardown,
)
from orchestrator.enums.fail_reason import FailReason
from orchestrator.enums.phase import Phase
from orchestrator.enums.role import Role
from orchestrator.events import (
    BootDeadlineExpired,
    DiscoveryFailed,
    EngineStarted,
    EngineStartFailed,
    Event,
    EventType,
    GuestStartRequested,
    HostStartRequested,
    InviteFailed,
    InviteIssued,
    LivenessResult,
    PortDiscovered,
    ReachabilityResult,
    SessionEvent,
    StopRequested,
    TunHandoffFailed,
    TunHandoffSucceeded,
)
from orchestrator.state_dataclass import ConnectionSession
from session.snapshot import ConnectionSnapshot
from spec import (
    BOOT_DEADLINE_MS,
    MSG_BOOT_TIMEOUT,
    MSG_CONNECTION_LOST,
    MSG_ENGINE_CRASHED,
    MSG_ENGINE_START_FAILED,
    MSG_INVITE_BUILD_ERROR,
    MSG_MANUAL_STOP,
    MSG_SCAN_FAILED,
    MSG_TUN_HANDOFF_FAILED,
    REACHABILITY_FAILURE_THRESHOLD,
)


# =============================================================================
# Session invariants
# =============================================================================
# - At most one session is live; start is accepted only from IDLE or FAILED
# - Events carrying another session_id are stale and ignored
# - HandOffTunFd is requested at most once per session (arm_requested)
# - armed_once is set only by a successful hand-off and never cleared
# - Every phase change emits exactly one EmitSnapshot

# =============================================================================
# Timer IDs
# =============================================================================

TIMER_BOOT_DEADLINE = "boot_deadline"

_LIVE_PHASES = (Phase.SCANNING, Phase.PROBING, Phase.ARMED)


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    state: ConnectionSession,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "session_id": state.session_id,
            "phase": state.phase.value,
            "role": state.role.value,
            "event_type": event.event_type.value,
            "decision": decision,
            "details": details or {},
        }
    )


def _logs_last(commands: tuple[Command, ...]) -> tuple[Command, ...]:
    non_logs: list[Command] = []
    logs: list[Command] = []
    state_change_logs: list[Command] = []

    for command in commands:
        if isinstance(command, LogEvent):
            if command.event.get("decision") == "state_changed":
                state_change_logs.append(command)
            else:
                logs.append(command)
        else:
            non_logs.append(command)

    return tuple(non_logs + logs + state_change_logs)


def _ignore(
    state: ConnectionSession, event: Event, reason: str
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    return state, (_log(state, event, "ignore", {"reason": reason}),)


def _state_changed(
    old: ConnectionSession,
    new: ConnectionSession,
    event: Event,
    source: str,
) -> LogEvent:
    return _log(
        new,
        event,
        "state_changed",
        {
            "from_phase": old.phase.value,
            "to_phase": new.phase.value,
            "source": source,
        },
    )


def _snapshot(state: ConnectionSession, ts_ms: int) -> ConnectionSnapshot:
    """Role-specific payload: invite code for the host, backup endpoint for the guest."""
    return ConnectionSnapshot(
        session_id=state.session_id,
        role=state.role,
        phase=state.phase,
        reason=state.fail_reason,
        message=state.message,
        invite_code=state.invite_code if state.role is Role.HOST else None,
        backup_endpoint=state.backup_endpoint if state.role is Role.GUEST else None,
        armed=state.armed_once,
        timestamp_ms=ts_ms,
    )


def _transition(
    old: ConnectionSession,
    new: ConnectionSession,
    event: Event,
    source: str,
    commands: tuple[Command, ...] = (),
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    """Apply a phase change: side effects, one snapshot, then the logs."""
    return new, _logs_last(
        commands
        + (
            EmitSnapshot(snapshot=_snapshot(new, event.ts_ms)),
            _state_changed(old, new, event, source),
        )
    )


def _boot_deadline(session_id: str) -> StartTimer:
    return StartTimer(
        timer_id=TIMER_BOOT_DEADLINE,
        session_id=session_id,
        duration_ms=BOOT_DEADLINE_MS,
        timeout_event_type=EventType.BOOT_DEADLINE_EXPIRED,
    )


def _enter_probing(
    old: ConnectionSession,
    primed: ConnectionSession,
    event: Event,
    source: str,
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    """Submit the tunnel config and arm the boot deadline."""
    assert primed.session_id is not None and primed.room is not None
    new_state = replace(primed, phase=Phase.PROBING)
    return _transition(
        old,
        new_state,
        event,
        source,
        (
            _boot_deadline(primed.session_id),
            StartEngine(
                session_id=primed.session_id,
                role=primed.role,
                room=primed.room,
            ),
        ),
    )


def _enter_failed(
    state: ConnectionSession,
    event: Event,
    reason: FailReason,
    message: str,
    details: dict[str, Any] | None = None,
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    """
    Fold a fatal condition into FAILED.

    Probes, timers and the engine instance are released by Teardown before
    the snapshot reaches observers. Role and room stay for reporting.
    """
    new_state = replace(
        state,
        phase=Phase.FAILED,
        fail_reason=reason,
        message=message,
    )
    assert state.session_id is not None
    _, commands = _transition(
        state,
        new_state,
        event,
        "enter_failed",
        (
            CancelTimer(timer_id=TIMER_BOOT_DEADLINE),
            Teardown(session_id=state.session_id, reason=message),
        ),
    )
    return new_state, _logs_last(
        commands
        + (
            _log(
                new_state,
                event,
                "session_failed",
                {"reason": reason.value, "message": message, **(details or {})},
            ),
        )
    )


def _is_stale(state: ConnectionSession, event: SessionEvent) -> bool:
    return state.session_id is None or event.session_id != state.session_id


# =============================================================================
# Start / stop
# =============================================================================

def _start_host(
    state: ConnectionSession, event: HostStartRequested
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    fresh = ConnectionSession(session_id=event.session_id, role=Role.HOST)

    if event.port is None:
        new_state = replace(fresh, phase=Phase.SCANNING)
        return _transition(
            state,
            new_state,
            event,
            "host_start_scanning",
            (StartDiscovery(session_id=event.session_id),),
        )

    if event.room is None or event.invite_code is None:
        return _ignore(state, event, "host_start_missing_invite")

    primed = replace(
        fresh,
        room=event.room,
        invite_code=event.invite_code,
        service_port=event.port,
    )
    return _enter_probing(state, primed, event, "host_start_with_port")


def _start_guest(
    state: ConnectionSession, event: GuestStartRequested
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    primed = ConnectionSession(
        session_id=event.session_id,
        role=Role.GUEST,
        room=event.room,
        invite_code=event.invite_code,
    )
    return _enter_probing(state, primed, event, "guest_start")


def _stop(
    state: ConnectionSession, event: StopRequested
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    if state.phase is Phase.IDLE:
        return state, (_log(state, event, "stop_noop_in_idle"),)

    new_state = ConnectionSession(
        session_id=state.session_id,
        message=MSG_MANUAL_STOP,
    )

    if state.phase is Phase.FAILED:
        # Already torn down on entry to FAILED
        return _transition(state, new_state, event, "stop_after_failure")

    assert state.session_id is not None
    return _transition(
        state,
        new_state,
        event,
        "manual_stop",
        (
            CancelTimer(timer_id=TIMER_BOOT_DEADLINE),
            Teardown(session_id=state.session_id, reason=MSG_MANUAL_STOP),
        ),
    )


# =============================================================================
# Probing / arming
# =============================================================================

def _maybe_arm(
    state: ConnectionSession, event: Event, commands: tuple[Command, ...]
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    """
    Request the fd hand-off the first time both probes hold at once.

    arm_requested makes this a one-shot even while the hand-off is pending.
    """
    if (
        state.phase is Phase.PROBING
        and state.reachable
        and state.alive
        and not state.arm_requested
        and state.instance_name is not None
    ):
        assert state.session_id is not None
        new_state = replace(state, arm_requested=True)
        return new_state, _logs_last(
            commands
            + (
                HandOffTunFd(
                    session_id=state.session_id,
                    instance_name=state.instance_name,
                ),
                _log(new_state, event, "arm_requested"),
            )
        )
    return state, commands


def _on_reachability(
    state: ConnectionSession, event: ReachabilityResult
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    if state.phase is Phase.PROBING:
        new_state = replace(
            state,
            reachable=event.ok,
            consecutive_reachability_failures=0,
        )
        return _maybe_arm(
            new_state,
            event,
            (_log(new_state, event, "reachability_probe", {"ok": event.ok}),),
        )

    if state.phase is Phase.ARMED:
        if event.ok:
            new_state = replace(
                state,
                reachable=True,
                consecutive_reachability_failures=0,
            )
            return new_state, (
                _log(new_state, event, "reachability_probe", {"ok": True}),
            )

        streak = state.consecutive_reachability_failures + 1
        new_state = replace(
            state,
            reachable=False,
            consecutive_reachability_failures=streak,
        )
        if streak >= REACHABILITY_FAILURE_THRESHOLD:
            return _enter_failed(
                new_state,
                event,
                FailReason.CONNECTION_LOST,
                MSG_CONNECTION_LOST,
                {"streak": streak},
            )
        return new_state, (
            _log(new_state, event, "reachability_probe", {"ok": False, "streak": streak}),
        )

    return _ignore(state, event, "reachability_outside_probing")


def _on_liveness(
    state: ConnectionSession, event: LivenessResult
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    if state.phase is Phase.PROBING:
        new_state = replace(state, alive=event.ok)
        return _maybe_arm(
            new_state,
            event,
            (_log(new_state, event, "liveness_probe", {"ok": event.ok}),),
        )

    if state.phase is Phase.ARMED:
        if not event.ok:
            return _enter_failed(
                replace(state, alive=False),
                event,
                FailReason.ENGINE_CRASHED,
                MSG_ENGINE_CRASHED,
            )
        return state, (_log(state, event, "liveness_probe", {"ok": True}),)

    return _ignore(state, event, "liveness_outside_probing")


def _on_handoff_succeeded(
    state: ConnectionSession, event: TunHandoffSucceeded
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    if state.phase is not Phase.PROBING or not state.arm_requested:
        return _ignore(state, event, "handoff_not_requested")

    new_state = replace(
        state,
        phase=Phase.ARMED,
        armed_once=True,
        consecutive_reachability_failures=0,
    )
    commands: tuple[Command, ...] = (CancelTimer(timer_id=TIMER_BOOT_DEADLINE),)
    new_state, out = _transition(state, new_state, event, "armed", commands)
    if state.role is Role.HOST and state.invite_code:
        out = _logs_last(out + (SurfaceInviteCode(invite_code=state.invite_code),))
    return new_state, out


# =============================================================================
# Reducer entrypoint
# =============================================================================

def reduce(
    state: ConnectionSession, event: Event
) -> tuple[ConnectionSession, tuple[Command, ...]]:
    """
    Pure reducer for the connection state machine.

    Given the current session state and a single event, returns:
    - the next state
    - a tuple of commands describing required side effects

    Properties:
    - Deterministic: no IO, clocks, or randomness
    - Total: every (state, event) pair is handled or explicitly ignored
    - Session-safe: ignores events from superseded sessions
    """
    # ------------------------------------------------------------------
    # Caller requests
    # ------------------------------------------------------------------
    if isinstance(event, (HostStartRequested, GuestStartRequested)):
        if state.phase in _LIVE_PHASES:
            return _ignore(state, event, "session_active")
        if isinstance(event, HostStartRequested):
            return _start_host(state, event)
        return _start_guest(state, event)

    if isinstance(event, StopRequested):
        return _stop(state, event)

    if not isinstance(event, SessionEvent):
        return _ignore(state, event, "unknown_event")

    # ------------------------------------------------------------------
    # Session gating
    # ------------------------------------------------------------------
    if _is_stale(state, event):
        return _ignore(state, event, "stale_session")

    if state.phase not in _LIVE_PHASES:
        return _ignore(state, event, "session_not_live")

    # ============================
    # SCANNING
    # ============================
    if state.phase is Phase.SCANNING:
        if isinstance(event, PortDiscovered):
            new_state = replace(state, service_port=event.port)
            return new_state, (
                IssueInvite(session_id=event.session_id, port=event.port),
                _log(new_state, event, "port_discovered", {"port": event.port}),
            )

        if isinstance(event, InviteIssued):
            if state.service_port is None:
                return _ignore(state, event, "invite_before_port")
            primed = replace(state, invite_code=event.invite_code, room=event.room)
            return _enter_probing(state, primed, event, "invite_issued")

        if isinstance(event, DiscoveryFailed):
            return _enter_failed(
                state, event, FailReason.START_FAILED, MSG_SCAN_FAILED,
                {"detail": event.reason},
            )

        if isinstance(event, InviteFailed):
            return _enter_failed(
                state, event, FailReason.START_FAILED, MSG_INVITE_BUILD_ERROR,
                {"detail": event.reason},
            )

        return _ignore(state, event, "scanning_unhandled")

    # ============================
    # PROBING / ARMED
    # ============================
    if isinstance(event, EngineStarted):
        if state.phase is not Phase.PROBING or state.instance_name is not None:
            return _ignore(state, event, "engine_already_started")
        new_state = replace(
            state,
            instance_name=event.instance_name,
            probe_port=event.probe_port,
            backup_endpoint=event.backup_endpoint,
        )
        return new_state, (
            StartProbes(session_id=event.session_id, probe_port=event.probe_port),
            _log(
                new_state,
                event,
                "engine_started",
                {
                    "instance_name": event.instance_name,
                    "probe_port": event.probe_port,
                },
            ),
        )

    if isinstance(event, EngineStartFailed):
        if state.phase is not Phase.PROBING:
            return _ignore(state, event, "engine_failure_after_arming")
        return _enter_failed(
            state, event, FailReason.START_FAILED, MSG_ENGINE_START_FAILED,
            {"detail": event.reason},
        )

    if isinstance(event, ReachabilityResult):
        return _on_reachability(state, event)

    if isinstance(event, LivenessResult):
        return _on_liveness(state, event)

    if isinstance(event, TunHandoffSucceeded):
        return _on_handoff_succeeded(state, event)

    if isinstance(event, TunHandoffFailed):
        if state.phase is not Phase.PROBING or not state.arm_requested:
            return _ignore(state, event, "handoff_not_requested")
        return _enter_failed(
            state, event, FailReason.START_FAILED, MSG_TUN_HANDOFF_FAILED,
            {"detail": event.reason},
        )

    if isinstance(event, BootDeadlineExpired):
        if state.phase is not Phase.PROBING:
            return _ignore(state, event, "deadline_after_arming")
        return _enter_failed(state, event, FailReason.TIMEOUT, MSG_BOOT_TIMEOUT)

    return _ignore(state, event, f"{state.phase.value.lower()}_unhandled")
