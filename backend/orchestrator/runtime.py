"""
Runtime execution shell for the connection orchestrator.

Responsibilities:
- Own orchestrator state
- Call pure reducer
- Execute commands with side effects (engine, TUN, discovery, observers)
- Run the probe loops and the boot deadline timer
- Convert collaborator results and timer expiry into events
"""

from __future__ import annotations

import asyncio
import collections
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Callable

from observability.logger import log_event
from observability.metrics import timed
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
from orchestrator.enums.phase import Phase
from orchestrator.enums.role import Role
from orchestrator.events import (
    BootDeadlineExpired,
    DiscoveryFailed,
    EngineStarted,
    EngineStartFailed,
    Event,
    EventType,
    InviteFailed,
    InviteIssued,
    LivenessResult,
    PortDiscovered,
    ReachabilityResult,
    TunHandoffFailed,
    TunHandoffSucceeded,
)
from orchestrator.reducer import reduce
from orchestrator.state_dataclass import ConnectionSession
from probes.health import check_liveness, check_reachability
from protocol.invite_code import InviteBuildError, decode_invite_code, encode_invite_code
from session.snapshot import IDLE_SNAPSHOT, ConnectionSnapshot
from spec import ENGINE_WORKER_THREADS, PROBE_TARGET_HOST
from tunnel.address import pick_guest_ipv4
from tunnel.config_builder import build_guest_config, build_host_config, render_toml

if TYPE_CHECKING:
    from orchestrator.runtime_context import (
        RuntimeExecutionContext,
        TunDeviceProtocol,
        TunnelEngineProtocol,
    )


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class _DrainableExecutor(ThreadPoolExecutor):
    """ThreadPoolExecutor that can report the work it still has in flight."""

    def __init__(self, max_workers: int, thread_name_prefix: str) -> None:
        super().__init__(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._in_flight: set[Future[Any]] = set()
        self._in_flight_lock = threading.Lock()

    def submit(self, fn, /, *args, **kwargs):  # type: ignore[override]
        future = super().submit(fn, *args, **kwargs)
        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future[Any]) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(future)

    def in_flight(self) -> list[Future[Any]]:
        with self._in_flight_lock:
            return list(self._in_flight)


class Runtime:
    """
    Runtime execution boundary for the connection orchestrator.

    Responsibilities:
    - Own the authoritative session state
    - Act as the universal event sink (caller requests, collaborator
      results, probe results, timer events)
    - Invoke the pure reducer deterministically
    - Execute emitted commands with side effects

    Guarantees:
    - Reducer is always called exactly once per event
    - Transitions are serialized by a single asyncio.Lock; events produced
      while executing commands are queued and reduced under the same hold
    - All side effects occur *after* state has been updated
    - Collaborator errors are folded into events and never escape
    - Observers are called after the transition, off the transition path
    """

    def __init__(
        self,
        *,
        context: RuntimeExecutionContext,
        initial_state: ConnectionSession | None = None,
    ) -> None:
        self._state = initial_state or ConnectionSession()
        self._ctx = context
        self._lock = asyncio.Lock()
        self._pending: collections.deque[Event] = collections.deque()

        self._timers: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._executor = _DrainableExecutor(
            max_workers=ENGINE_WORKER_THREADS,
            thread_name_prefix="engine",
        )

        self._engine: TunnelEngineProtocol | None = None
        self._tun: TunDeviceProtocol | None = None
        self._last_snapshot: ConnectionSnapshot = IDLE_SNAPSHOT
        self._closed = False

    @property
    def state(self) -> ConnectionSession:
        """
        Return the current immutable session state.

        Consumers must never modify this state directly.
        """
        return self._state

    @property
    def last_snapshot(self) -> ConnectionSnapshot:
        """Last snapshot emitted; sticky until a new transition."""
        return self._last_snapshot

    async def handle_event(self, event: Event) -> None:
        """
        Process a single event through the orchestration pipeline.

        Processing steps:
        1. Pass the current state and event to the pure reducer
        2. Swap in the new state
        3. Execute all emitted commands sequentially
        4. Reduce any follow-up events the commands produced

        This method is the *only* entry point for events affecting
        orchestrator state. It is safe to call concurrently from probe
        loops, timers and callers.
        """
        async with self._lock:
            self._pending.append(event)
            while self._pending:
                next_event = self._pending.popleft()
                new_state, commands = reduce(self._state, next_event)
                self._state = new_state

                for cmd in commands:
                    await self._execute_command(cmd)

    async def shutdown(self) -> None:
        """
        Clean shutdown of runtime.

        Tears down whatever is still running and releases the worker pool.
        Idempotent.
        """
        if self._closed:
            return
        self._closed = True

        async with self._lock:
            await self._teardown(session_id=self._state.session_id, reason="shutdown")

        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Command execution (side effects)
    # ------------------------------------------------------------------

    def _inject(self, event: Event) -> None:
        """Queue a follow-up event; only valid during command execution."""
        self._pending.append(event)

    async def _execute_command(self, cmd: Command) -> None:
        """Execute a single command with side effects."""

        if isinstance(cmd, LogEvent):
            log_event(cmd.event)

        elif isinstance(cmd, StartDiscovery):
            self._spawn(self._discovery_task(cmd.session_id), "discovery")

        elif isinstance(cmd, IssueInvite):
            self._issue_invite(cmd)

        elif isinstance(cmd, StartEngine):
            await self._start_engine(cmd)

        elif isinstance(cmd, StartProbes):
            self._spawn(
                self._reachability_loop(cmd.session_id, cmd.probe_port),
                "reachability_probe",
            )
            self._spawn(self._liveness_loop(cmd.session_id), "liveness_probe")

        elif isinstance(cmd, HandOffTunFd):
            await self._hand_off_tun_fd(cmd)

        elif isinstance(cmd, StartTimer):
            self._start_timer(
                timer_id=cmd.timer_id,
                session_id=cmd.session_id,
                duration_ms=self._ctx.timing.boot_deadline_ms or cmd.duration_ms,
                timeout_event_type=cmd.timeout_event_type,
            )

        elif isinstance(cmd, CancelTimer):
            self._cancel_timer(cmd.timer_id)

        elif isinstance(cmd, Teardown):
            await self._teardown(session_id=cmd.session_id, reason=cmd.reason)

        elif isinstance(cmd, EmitSnapshot):
            self._last_snapshot = cmd.snapshot
            self._notify(self._ctx.on_snapshot, cmd.snapshot)

        elif isinstance(cmd, SurfaceInviteCode):
            self._notify(self._ctx.on_copy_invite_code, cmd.invite_code)

        else:
            raise RuntimeError(f"Unhandled command: {cmd}")

    def _notify(self, callback: Callable[[Any], None], payload: Any) -> None:
        asyncio.get_running_loop().call_soon(self._call_observer, callback, payload)

    @staticmethod
    def _call_observer(callback: Callable[[Any], None], payload: Any) -> None:
        try:
            callback(payload)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "OBSERVER_ERROR",
                "error": repr(exc),
            })

    async def _run_blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._report_task_failure)

    def _report_task_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "TASK_FAILED",
            "session_id": self._state.session_id,
            "phase": self._state.phase.value,
            "task": task.get_name(),
            "error": repr(exc),
        })

    def _is_current(self, session_id: str, *phases: Phase) -> bool:
        return self._state.session_id == session_id and self._state.phase in phases

    # ------------------------------------------------------------------
    # Host bootstrap
    # ------------------------------------------------------------------

    async def _discovery_task(self, session_id: str) -> None:
        event: Event
        try:
            port = await self._ctx.discovery_factory().discover()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "DISCOVERY_FAILED",
                "session_id": session_id,
                "error": str(exc),
            })
            event = DiscoveryFailed(
                event_type=EventType.DISCOVERY_FAILED,
                ts_ms=_now_ms(),
                session_id=session_id,
                reason=str(exc),
            )
        else:
            event = PortDiscovered(
                event_type=EventType.PORT_DISCOVERED,
                ts_ms=_now_ms(),
                session_id=session_id,
                port=port,
            )
        await self.handle_event(event)

    def _issue_invite(self, cmd: IssueInvite) -> None:
        try:
            code = encode_invite_code(cmd.port)
        except InviteBuildError as exc:
            self._inject(InviteFailed(
                event_type=EventType.INVITE_FAILED,
                ts_ms=_now_ms(),
                session_id=cmd.session_id,
                reason=str(exc),
            ))
            return

        self._inject(InviteIssued(
            event_type=EventType.INVITE_ISSUED,
            ts_ms=_now_ms(),
            session_id=cmd.session_id,
            invite_code=code,
            room=decode_invite_code(code),
        ))

    # ------------------------------------------------------------------
    # Engine
    # ------------------------------------------------------------------

    def _engine_or_load(self) -> TunnelEngineProtocol:
        if self._engine is None:
            self._engine = self._ctx.engine_factory()
        return self._engine

    async def _start_engine(self, cmd: StartEngine) -> None:
        """
        Build the role's config and submit it to the engine.

        Runs under the transition lock so a stop cannot interleave with a
        half-started instance.
        """
        room = cmd.room
        backup_endpoint: str | None = None
        try:
            engine = self._engine_or_load()
            if cmd.role is Role.HOST:
                config = build_host_config(room)
                probe_port = room.port
            else:
                local_port = self._ctx.pick_local_port()
                config = build_guest_config(
                    room,
                    guest_ipv4=pick_guest_ipv4(self._ctx.device_id, room),
                    local_port=local_port,
                    has_ipv4=self._ctx.has_ipv4(),
                )
                probe_port = local_port
                backup_endpoint = f"{PROBE_TARGET_HOST}:{local_port}"

            with timed("engine_start", session_id=cmd.session_id, phase=self._state.phase.value):
                await self._run_blocking(engine.start, render_toml(config))

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "ENGINE_START_FAILED",
                "session_id": cmd.session_id,
                "role": cmd.role.value,
                "error": str(exc),
            })
            self._inject(EngineStartFailed(
                event_type=EventType.ENGINE_START_FAILED,
                ts_ms=_now_ms(),
                session_id=cmd.session_id,
                reason=str(exc),
            ))
            return

        log_event({
            "event_type": "ENGINE_STARTED",
            "session_id": cmd.session_id,
            "role": cmd.role.value,
            "instance_name": config.instance_name,
            "ipv4": config.ipv4,
            "peers": len(config.peers),
            "port_forwards": len(config.port_forwards),
        })
        self._inject(EngineStarted(
            event_type=EventType.ENGINE_STARTED,
            ts_ms=_now_ms(),
            session_id=cmd.session_id,
            instance_name=config.instance_name,
            probe_port=probe_port,
            backup_endpoint=backup_endpoint,
        ))

    async def _hand_off_tun_fd(self, cmd: HandOffTunFd) -> None:
        tun: TunDeviceProtocol | None = None
        try:
            engine = self._engine_or_load()
            with timed("tun_handoff", session_id=cmd.session_id):
                tun = await self._run_blocking(self._ctx.open_tun, self._ctx.tun_device_name)
                await self._run_blocking(engine.set_tun_fd, cmd.instance_name, tun.fd)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            if tun is not None:
                tun.close()
            log_event({
                "event_type": "TUN_HANDOFF_FAILED",
                "session_id": cmd.session_id,
                "instance_name": cmd.instance_name,
                "error": str(exc),
            })
            self._inject(TunHandoffFailed(
                event_type=EventType.TUN_HANDOFF_FAILED,
                ts_ms=_now_ms(),
                session_id=cmd.session_id,
                reason=str(exc),
            ))
            return

        self._tun = tun
        log_event({
            "event_type": "TUN_HANDOFF_EXECUTED",
            "session_id": cmd.session_id,
            "instance_name": cmd.instance_name,
            "device": self._ctx.tun_device_name,
        })
        self._inject(TunHandoffSucceeded(
            event_type=EventType.TUN_HANDOFF_SUCCEEDED,
            ts_ms=_now_ms(),
            session_id=cmd.session_id,
        ))

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    async def _reachability_loop(self, session_id: str, port: int) -> None:
        timing = self._ctx.timing
        while self._is_current(session_id, Phase.PROBING, Phase.ARMED):
            ok = await check_reachability(
                port,
                timeout_s=timing.reachability_timeout_s,
                host=timing.probe_host,
            )
            if not self._is_current(session_id, Phase.PROBING, Phase.ARMED):
                return
            await self.handle_event(ReachabilityResult(
                event_type=EventType.REACHABILITY_RESULT,
                ts_ms=_now_ms(),
                session_id=session_id,
                ok=ok,
            ))
            await asyncio.sleep(timing.reachability_interval_s)

    async def _liveness_loop(self, session_id: str) -> None:
        timing = self._ctx.timing
        while self._is_current(session_id, Phase.PROBING, Phase.ARMED):
            engine = self._engine
            ok = engine is not None and await check_liveness(engine, executor=self._executor)
            if not self._is_current(session_id, Phase.PROBING, Phase.ARMED):
                return
            await self.handle_event(LivenessResult(
                event_type=EventType.LIVENESS_RESULT,
                ts_ms=_now_ms(),
                session_id=session_id,
                ok=ok,
            ))
            await asyncio.sleep(timing.liveness_interval_s)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown(self, *, session_id: str | None, reason: str) -> None:
        """
        Release everything a session holds, in order:

        1. cancel probe loops, discovery and timers, and wait for them
        2. drain the worker pool
        3. await the engine stop
        4. close the TUN descriptor

        Idempotent. The calling task (a probe loop or timer that triggered
        the failure) is never awaited on itself.
        """
        current = asyncio.current_task()
        tasks = [
            task
            for task in (*self._tasks, *self._timers.values())
            if task is not current and not task.done()
        ]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        in_flight = self._executor.in_flight()
        if in_flight:
            await asyncio.gather(
                *(asyncio.wrap_future(f) for f in in_flight),
                return_exceptions=True,
            )

        if self._engine is not None:
            try:
                with timed("teardown", session_id=session_id):
                    await self._run_blocking(self._engine.stop_all)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "TEARDOWN_ERROR",
                    "session_id": session_id,
                    "error": str(exc),
                })

        if self._tun is not None:
            try:
                self._tun.close()
            except OSError as exc:
                log_event({
                    "event_type": "TEARDOWN_ERROR",
                    "session_id": session_id,
                    "error": str(exc),
                })
            self._tun = None

        log_event({
            "event_type": "TEARDOWN_EXECUTED",
            "session_id": session_id,
            "reason": reason,
            "cancelled_tasks": len(tasks),
            "drained_jobs": len(in_flight),
        })

    # ------------------------------------------------------------------
    # Timer management
    # ------------------------------------------------------------------

    def _start_timer(
        self,
        *,
        timer_id: str,
        session_id: str,
        duration_ms: int,
        timeout_event_type: EventType,
    ) -> None:
        """
        Start or replace a timer that emits a timeout event.

        Timer tasks re-enter handle_event() when they expire,
        maintaining the single event entry point invariant.
        """
        # Cancel existing timer if present (idempotent)
        self._cancel_timer(timer_id)

        async def _timer_task() -> None:
            try:
                await asyncio.sleep(duration_ms / 1000.0)
                event = self._construct_timeout_event(
                    session_id=session_id,
                    timeout_event_type=timeout_event_type,
                )
                await self.handle_event(event)

            except asyncio.CancelledError:
                # Timer was cancelled - this is normal
                return

        self._timers[timer_id] = asyncio.create_task(_timer_task(), name=timer_id)

    def _cancel_timer(self, timer_id: str) -> None:
        """
        Cancel an in-flight timer if it exists.

        Idempotent: safe to call even if timer doesn't exist.
        """
        task = self._timers.pop(timer_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _construct_timeout_event(
        self,
        *,
        session_id: str,
        timeout_event_type: EventType,
    ) -> Event:
        ts = _now_ms()

        if timeout_event_type is EventType.BOOT_DEADLINE_EXPIRED:
            return BootDeadlineExpired(
                event_type=EventType.BOOT_DEADLINE_EXPIRED,
                ts_ms=ts,
                session_id=session_id,
            )

        raise RuntimeError(f"Unknown timeout event type: {timeout_event_type}")
