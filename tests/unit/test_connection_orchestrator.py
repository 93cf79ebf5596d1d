# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import json
import threading

import pytest

from adapters.easytier import EngineError, EngineUnavailableError
from observability import logger
from orchestrator.enums.fail_reason import FailReason
from orchestrator.enums.phase import Phase
from orchestrator.enums.role import Role
from orchestrator.runtime_context import ProbeTiming
from protocol.invite_code import InviteBuildError, InviteParseError, encode_invite_code
from session.connection_orchestrator import ConnectionOrchestrator


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------

HEALTHY = [
    ("running", "true"),
    ("my_node_info.virtual_ipv4", "10.144.144.1/24"),
    ("error_msg", ""),
]

NOT_RUNNING = [
    ("running", "false"),
    ("my_node_info.virtual_ipv4", ""),
    ("error_msg", ""),
]


class FakeEngine:
    def __init__(self, infos=None, start_error: Exception | None = None) -> None:
        self.infos = HEALTHY if infos is None else infos
        self.start_error = start_error
        self.started: list[str] = []
        self.tun_fds: list[tuple[str, int]] = []
        self.stop_calls = 0
        self._lock = threading.Lock()

    def start(self, config_text: str) -> None:
        with self._lock:
            self.started.append(config_text)
        if self.start_error is not None:
            raise self.start_error

    def set_tun_fd(self, instance_name: str, fd: int) -> None:
        with self._lock:
            self.tun_fds.append((instance_name, fd))

    def collect_infos(self, max_entries: int = 512):
        return list(self.infos)[:max_entries]

    def retain(self, names) -> None:
        if not names:
            self.stop_all()

    def stop_all(self) -> None:
        with self._lock:
            self.stop_calls += 1


class FakeTun:
    def __init__(self, fd: int = 99) -> None:
        self.fd = fd
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeDiscovery:
    def __init__(self, port: int | None = None, error: Exception | None = None) -> None:
        self.port = port
        self.error = error

    async def discover(self) -> int:
        if self.error is not None:
            raise self.error
        assert self.port is not None
        return self.port


class Recorder:
    def __init__(self) -> None:
        self.snapshots = []
        self.copied: list[str] = []

    def on_state_changed(self, snapshot) -> None:
        self.snapshots.append(snapshot)

    def on_copy_invite_code(self, invite_code: str) -> None:
        self.copied.append(invite_code)

    def phases(self):
        return [s.phase for s in self.snapshots]


class Exploding:
    def on_state_changed(self, snapshot) -> None:
        raise RuntimeError("observer bug")

    def on_copy_invite_code(self, invite_code: str) -> None:
        raise RuntimeError("observer bug")


FAST = ProbeTiming(
    reachability_interval_s=0.01,
    reachability_timeout_s=0.2,
    liveness_interval_s=0.02,
)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

class ProbeServer:
    """Answers the reachability sentinel while healthy; hangs up otherwise."""

    def __init__(self) -> None:
        self.healthy = True
        self.server: asyncio.AbstractServer | None = None
        self.port = 0

    async def start(self) -> "ProbeServer":
        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await reader.read(1)
            if self.healthy:
                writer.write(b"\xff")
                await writer.drain()
            writer.close()

        self.server = await asyncio.start_server(handler, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def close(self) -> None:
        assert self.server is not None
        self.server.close()
        await self.server.wait_closed()


def build(
    engine: FakeEngine | None = None,
    tun: FakeTun | None = None,
    discovery: FakeDiscovery | None = None,
    timing: ProbeTiming = FAST,
    local_port: int = 35781,
    engine_factory=None,
):
    engine = engine or FakeEngine()
    tun = tun or FakeTun()
    discovery = discovery or FakeDiscovery(error=RuntimeError("no discovery in this test"))
    orchestrator = ConnectionOrchestrator(
        engine_factory=engine_factory or (lambda: engine),
        open_tun=lambda name: tun,
        discovery_factory=lambda: discovery,
        device_id="device-under-test",
        tun_device_name="enchant-test0",
        timing=timing,
        pick_local_port=lambda: local_port,
        has_ipv4=lambda: True,
    )
    recorder = Recorder()
    orchestrator.add_listener(recorder)
    return orchestrator, engine, tun, recorder


async def wait_for_phase(orchestrator: ConnectionOrchestrator, phase: Phase, timeout: float = 3.0) -> None:
    async def _poll() -> None:
        while orchestrator.snapshot().phase is not phase:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)
    # let call_soon observer deliveries run
    await asyncio.sleep(0.01)


@pytest.fixture
def captured_logs(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    lines: list[str] = []
    monkeypatch.setattr(logger, "_print", lines.append)
    return lines


def event_types(lines: list[str]) -> list[str]:
    return [json.loads(line).get("event_type") for line in lines]


# ---------------------------------------------------------------------
# Host scenarios
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_host_arms_once_then_loses_connection(captured_logs):
    server = await ProbeServer().start()
    orchestrator, engine, tun, recorder = build()
    try:
        assert await orchestrator.start_host(server.port) is True
        await wait_for_phase(orchestrator, Phase.ARMED)

        snap = orchestrator.snapshot()
        assert snap.role is Role.HOST
        assert snap.armed is True
        assert snap.invite_code
        assert recorder.copied == [snap.invite_code]
        assert len(engine.started) == 1
        assert "10.144.144.1/24" in engine.started[0]
        [(instance_name, fd)] = engine.tun_fds
        assert fd == 99
        assert instance_name.startswith("EnchantNet-Host-")

        server.healthy = False
        await wait_for_phase(orchestrator, Phase.FAILED)

        snap = orchestrator.snapshot()
        assert snap.reason is FailReason.CONNECTION_LOST
        assert snap.message == "connection_lost"
        assert recorder.phases().count(Phase.ARMED) == 1
        assert recorder.phases()[-1] is Phase.FAILED
        assert engine.stop_calls == 1
        assert tun.closed is True
        assert len(engine.tun_fds) == 1
        assert "TEARDOWN_EXECUTED" in event_types(captured_logs)
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_boot_deadline_fails_with_timeout(captured_logs):
    server = await ProbeServer().start()
    orchestrator, engine, tun, recorder = build(
        engine=FakeEngine(infos=NOT_RUNNING),
        timing=ProbeTiming(
            reachability_interval_s=0.01,
            reachability_timeout_s=0.2,
            liveness_interval_s=0.02,
            boot_deadline_ms=150,
        ),
    )
    try:
        assert await orchestrator.start_host(server.port) is True
        await wait_for_phase(orchestrator, Phase.FAILED)

        snap = orchestrator.snapshot()
        assert snap.reason is FailReason.TIMEOUT
        assert snap.armed is False
        assert Phase.ARMED not in recorder.phases()
        assert engine.tun_fds == []
        assert recorder.copied == []
        assert engine.stop_calls == 1
        assert tun.closed is False
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_liveness_loss_while_armed_is_engine_crash(captured_logs):
    server = await ProbeServer().start()
    orchestrator, engine, _, _ = build()
    try:
        await orchestrator.start_host(server.port)
        await wait_for_phase(orchestrator, Phase.ARMED)

        engine.infos = NOT_RUNNING
        await wait_for_phase(orchestrator, Phase.FAILED)
        assert orchestrator.snapshot().reason is FailReason.ENGINE_CRASHED
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_malformed_engine_status_while_armed_is_engine_crash(captured_logs):
    server = await ProbeServer().start()
    orchestrator, engine, _, _ = build()
    try:
        await orchestrator.start_host(server.port)
        await wait_for_phase(orchestrator, Phase.ARMED)

        engine.infos = [("running", "true"), ("virtual_ipv4",)]
        await wait_for_phase(orchestrator, Phase.FAILED)
        assert orchestrator.snapshot().reason is FailReason.ENGINE_CRASHED
        assert "TASK_FAILED" not in event_types(captured_logs)
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_crashed_background_task_is_logged(captured_logs):
    orchestrator, _, _, _ = build()

    async def broken() -> None:
        raise RuntimeError("loop died")

    try:
        orchestrator._runtime._spawn(broken(), "liveness_probe")  # pylint: disable=protected-access
        await asyncio.sleep(0.01)

        failures = [
            json.loads(line) for line in captured_logs
            if json.loads(line).get("event_type") == "TASK_FAILED"
        ]
        assert len(failures) == 1
        assert failures[0]["task"] == "liveness_probe"
        assert "loop died" in failures[0]["error"]
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_stop_while_armed_reports_clean_stop(captured_logs):
    server = await ProbeServer().start()
    orchestrator, engine, tun, recorder = build()
    try:
        await orchestrator.start_host(server.port)
        await wait_for_phase(orchestrator, Phase.ARMED)

        await orchestrator.stop()
        await asyncio.sleep(0.01)

        snap = orchestrator.snapshot()
        assert snap.phase is Phase.IDLE
        assert snap.reason is None
        assert snap.message == "manual_stop"
        assert Phase.FAILED not in recorder.phases()
        assert engine.stop_calls == 1
        assert tun.closed is True

        # second stop is a no-op
        count = len(recorder.snapshots)
        await orchestrator.stop()
        await asyncio.sleep(0.01)
        assert len(recorder.snapshots) == count
        assert engine.stop_calls == 1
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_stop_while_idle_is_noop(captured_logs):
    orchestrator, engine, _, recorder = build()
    try:
        await orchestrator.stop()
        await asyncio.sleep(0.01)
        assert orchestrator.snapshot().phase is Phase.IDLE
        assert recorder.snapshots == []
        assert engine.stop_calls == 0
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_host_without_port_discovers_it(captured_logs):
    server = await ProbeServer().start()
    orchestrator, _, _, recorder = build(discovery=FakeDiscovery(port=server.port))
    try:
        assert await orchestrator.start_host() is True
        await wait_for_phase(orchestrator, Phase.ARMED)
        assert recorder.phases()[:3] == [Phase.SCANNING, Phase.PROBING, Phase.ARMED]
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_discovery_failure_fails_start(captured_logs):
    orchestrator, _, _, _ = build(discovery=FakeDiscovery(error=OSError("no multicast")))
    try:
        assert await orchestrator.start_host() is True
        await wait_for_phase(orchestrator, Phase.FAILED)
        snap = orchestrator.snapshot()
        assert snap.reason is FailReason.START_FAILED
        assert snap.message == "scan_failed"
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_engine_rejecting_config_fails_start(captured_logs):
    orchestrator, _, _, _ = build(
        engine=FakeEngine(start_error=EngineError("run_network_instance", -1, "bad config")),
    )
    try:
        assert await orchestrator.start_host(25565) is True
        snap = orchestrator.snapshot()
        assert snap.phase is Phase.FAILED
        assert snap.reason is FailReason.START_FAILED
        assert snap.message == "engine_start_failed"
        assert "ENGINE_START_FAILED" in event_types(captured_logs)
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_missing_engine_library_fails_start(captured_logs):
    def unavailable():
        raise EngineUnavailableError("EASYTIER_LIB_PATH is not set")

    orchestrator, _, _, _ = build(engine_factory=unavailable)
    try:
        assert await orchestrator.start_host(25565) is True
        assert orchestrator.snapshot().reason is FailReason.START_FAILED
    finally:
        await orchestrator.shutdown()


# ---------------------------------------------------------------------
# Guest scenarios
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_guest_arms_through_local_forward(captured_logs):
    server = await ProbeServer().start()
    orchestrator, engine, _, recorder = build(local_port=server.port)
    code = encode_invite_code(25565, room_id=0xDEADBEEF)
    try:
        assert await orchestrator.start_guest(code.lower()) is True
        await wait_for_phase(orchestrator, Phase.ARMED)

        snap = orchestrator.snapshot()
        assert snap.role is Role.GUEST
        assert snap.backup_endpoint == f"127.0.0.1:{server.port}"
        assert snap.invite_code is None
        assert recorder.copied == []

        config_text = engine.started[0]
        assert "port_forward" in config_text
        assert "10.144.144.1:25565" in config_text
        assert f"[::]:{server.port}" in config_text
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_guest_rejects_invalid_code_before_session(captured_logs):
    orchestrator, engine, _, recorder = build()
    try:
        with pytest.raises(InviteParseError):
            await orchestrator.start_guest("not-a-code")
        assert orchestrator.snapshot().phase is Phase.IDLE
        assert recorder.snapshots == []
        assert engine.started == []
    finally:
        await orchestrator.shutdown()


# ---------------------------------------------------------------------
# Facade contract
# ---------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("port", [0, -1, 65536])
async def test_host_rejects_bad_port_before_session(captured_logs, port):
    orchestrator, _, _, recorder = build()
    try:
        with pytest.raises(InviteBuildError):
            await orchestrator.start_host(port)
        assert recorder.snapshots == []
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_second_start_is_rejected_while_active(captured_logs):
    server = await ProbeServer().start()
    orchestrator, engine, _, _ = build()
    try:
        assert await orchestrator.start_host(server.port) is True
        assert await orchestrator.start_host(server.port) is False
        assert await orchestrator.start_guest(encode_invite_code(25565)) is False
        assert len(engine.started) == 1
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_new_session_after_failure(captured_logs):
    orchestrator, _, _, _ = build(
        engine=FakeEngine(start_error=EngineError("parse_config", -1, "nope")),
    )
    try:
        await orchestrator.start_host(25565)
        first = orchestrator.snapshot()
        assert first.phase is Phase.FAILED

        assert await orchestrator.start_host(25565) is True
        second = orchestrator.snapshot()
        assert second.session_id != first.session_id
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_raising_observer_does_not_break_state_machine(captured_logs):
    server = await ProbeServer().start()
    orchestrator, _, _, recorder = build()
    orchestrator.add_listener(Exploding())
    try:
        await orchestrator.start_host(server.port)
        await wait_for_phase(orchestrator, Phase.ARMED)
        assert Phase.ARMED in recorder.phases()
        assert "OBSERVER_ERROR" in event_types(captured_logs)
    finally:
        await orchestrator.shutdown()
        await server.close()


@pytest.mark.asyncio
async def test_removed_listener_stops_receiving(captured_logs):
    orchestrator, _, _, recorder = build()
    orchestrator.remove_listener(recorder)
    try:
        await orchestrator.start_host(25565)
        await asyncio.sleep(0.01)
        assert recorder.snapshots == []
    finally:
        await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_shutdown_is_idempotent_and_blocks_new_sessions(captured_logs):
    orchestrator, _, _, _ = build()
    await orchestrator.shutdown()
    await orchestrator.shutdown()
    assert await orchestrator.start_host(25565) is False
