"""
Public connection orchestrator.

Explicitly constructed, explicitly shut down. Owns one Runtime and the
observer list; everything stateful lives in the Runtime.

Per call:
- start_host / start_guest validate their inputs first, so codec errors
  reach the caller before any session begins
- stop is valid in any phase and never reports a failure
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

from adapters.easytier import EasyTierEngine, EngineUnavailableError
from adapters import tun_device
from config import AppConfig
from discovery.lan_scanner import LanDiscovery
from observability.logger import log_event
from orchestrator.enums.phase import Phase
from orchestrator.events import (
    EventType,
    GuestStartRequested,
    HostStartRequested,
    StopRequested,
)
from orchestrator.runtime import Runtime
from orchestrator.runtime_context import (
    DiscoveryProtocol,
    ProbeTiming,
    RuntimeExecutionContext,
    TunDeviceProtocol,
    TunnelEngineProtocol,
)
from protocol.invite_code import (
    decode_invite_code,
    encode_invite_code,
    parse_invite_code,
)
from session.snapshot import ConnectionSnapshot, SnapshotListener
from tunnel.address import (
    device_has_ipv4,
    load_or_create_device_id,
    pick_local_forward_port,
)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _new_session_id() -> str:
    return str(uuid.uuid4())


class ConnectionOrchestrator:
    """Single-session host/guest orchestrator with snapshot observers."""

    def __init__(
        self,
        *,
        engine_factory: Callable[[], TunnelEngineProtocol],
        open_tun: Callable[[str], TunDeviceProtocol],
        discovery_factory: Callable[[], DiscoveryProtocol],
        device_id: str,
        tun_device_name: str,
        timing: ProbeTiming | None = None,
        pick_local_port: Callable[[], int] = pick_local_forward_port,
        has_ipv4: Callable[[], bool] = device_has_ipv4,
    ) -> None:
        self._listeners: list[SnapshotListener] = []
        self._runtime = Runtime(
            context=RuntimeExecutionContext(
                engine_factory=engine_factory,
                open_tun=open_tun,
                discovery_factory=discovery_factory,
                device_id=device_id,
                tun_device_name=tun_device_name,
                on_snapshot=self._dispatch_snapshot,
                on_copy_invite_code=self._dispatch_copy_invite_code,
                timing=timing,
                pick_local_port=pick_local_port,
                has_ipv4=has_ipv4,
            )
        )
        self._closed = False

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: SnapshotListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _dispatch_snapshot(self, snapshot: ConnectionSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_state_changed(snapshot)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._log_observer_error("on_state_changed", exc)

    def _dispatch_copy_invite_code(self, invite_code: str) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_copy_invite_code(invite_code)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self._log_observer_error("on_copy_invite_code", exc)

    @staticmethod
    def _log_observer_error(callback: str, exc: Exception) -> None:
        log_event({
            "event_type": "OBSERVER_ERROR",
            "callback": callback,
            "error": repr(exc),
        })

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def snapshot(self) -> ConnectionSnapshot:
        return self._runtime.last_snapshot

    def _session_active(self) -> bool:
        return self._runtime.state.phase in (Phase.SCANNING, Phase.PROBING, Phase.ARMED)

    async def start_host(self, port: int | None = None) -> bool:
        """
        Host the local service.

        Without a port the service is located by LAN discovery first.

        Returns:
            False if a session is already active.

        Raises:
            InviteBuildError if port is given but not in 1..65535.
        """
        invite_code = None
        room = None
        if port is not None:
            invite_code = encode_invite_code(port)
            room = decode_invite_code(invite_code)

        if self._closed or self._session_active():
            return False

        session_id = _new_session_id()
        await self._runtime.handle_event(HostStartRequested(
            event_type=EventType.HOST_START_REQUESTED,
            ts_ms=_now_ms(),
            session_id=session_id,
            port=port,
            invite_code=invite_code,
            room=room,
        ))
        return self._runtime.state.session_id == session_id

    async def start_guest(self, invite_code: str) -> bool:
        """
        Join the room behind an invite code.

        Returns:
            False if a session is already active.

        Raises:
            InviteParseError if the code is neither Terracotta nor Compact.
        """
        room = parse_invite_code(invite_code)

        if self._closed or self._session_active():
            return False

        session_id = _new_session_id()
        await self._runtime.handle_event(GuestStartRequested(
            event_type=EventType.GUEST_START_REQUESTED,
            ts_ms=_now_ms(),
            session_id=session_id,
            invite_code=invite_code.strip(),
            room=room,
        ))
        return self._runtime.state.session_id == session_id

    async def stop(self) -> None:
        await self._runtime.handle_event(StopRequested(
            event_type=EventType.STOP_REQUESTED,
            ts_ms=_now_ms(),
        ))

    async def shutdown(self) -> None:
        """Stop any session and release the worker pool. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.stop()
        await self._runtime.shutdown()


# ---------------------------------------------------------------------
# Production wiring
# ---------------------------------------------------------------------

def build_orchestrator(
    config: AppConfig,
    *,
    timing: ProbeTiming | None = None,
) -> ConnectionOrchestrator:
    """Wire the real engine, TUN device and LAN discovery from config."""

    def engine_factory() -> TunnelEngineProtocol:
        if config.easytier_lib_path is None:
            raise EngineUnavailableError("EASYTIER_LIB_PATH is not set")
        return EasyTierEngine(config.easytier_lib_path)

    def discovery_factory() -> DiscoveryProtocol:
        return LanDiscovery(
            group_v4=config.lan_multicast_group,
            port=config.lan_multicast_port,
            timeout_s=config.lan_scan_timeout_s,
        )

    return ConnectionOrchestrator(
        engine_factory=engine_factory,
        open_tun=tun_device.open_tun,
        discovery_factory=discovery_factory,
        device_id=load_or_create_device_id(config.device_id_path),
        tun_device_name=config.tun_device_name,
        timing=timing,
    )
