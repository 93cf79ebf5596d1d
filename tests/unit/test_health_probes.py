# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import socket

import pytest

from probes.health import check_liveness, check_reachability, is_alive


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

async def serve(reply: bytes | None):
    """Local server that answers the sentinel with `reply` (None = stay silent)."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await reader.read(1)
        if reply is None:
            # hold the connection until the client gives up
            await reader.read()
        else:
            writer.write(reply)
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port


def closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class FakeEngine:
    def __init__(self, infos=None, error: Exception | None = None) -> None:
        self.infos = infos or []
        self.error = error

    def collect_infos(self, max_entries: int = 512):
        if self.error is not None:
            raise self.error
        return self.infos[:max_entries]


HEALTHY = [
    ("running", "true"),
    ("my_node_info.virtual_ipv4", "10.144.144.1/24"),
    ("error_msg", ""),
]


# ---------------------------------------------------------------------
# Reachability
# ---------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reachability_accepts_sentinel_response():
    server, port = await serve(b"\xff")
    async with server:
        assert await check_reachability(port, timeout_s=1.0) is True


@pytest.mark.asyncio
async def test_reachability_rejects_wrong_byte():
    server, port = await serve(b"\x00")
    async with server:
        assert await check_reachability(port, timeout_s=1.0) is False


@pytest.mark.asyncio
async def test_reachability_rejects_eof():
    server, port = await serve(b"")
    async with server:
        assert await check_reachability(port, timeout_s=1.0) is False


@pytest.mark.asyncio
async def test_reachability_times_out():
    server, port = await serve(None)
    async with server:
        assert await check_reachability(port, timeout_s=0.05) is False


@pytest.mark.asyncio
async def test_reachability_refused_connection():
    assert await check_reachability(closed_port(), timeout_s=0.5) is False


# ---------------------------------------------------------------------
# Liveness predicate
# ---------------------------------------------------------------------

def test_is_alive_healthy_status():
    assert is_alive(HEALTHY) is True


def test_is_alive_accepts_dotted_keys_and_case():
    infos = [
        ("Instance.Running", "1"),
        ("node.VIRTUAL_IPV4", "10.144.144.9"),
        ("instance.error_msg", "null"),
    ]
    assert is_alive(infos) is True


@pytest.mark.parametrize("infos", [
    [],
    None,
    [("running", "false"), ("virtual_ipv4", "10.0.0.1")],
    [("running", "true")],
    [("running", "true"), ("virtual_ipv4", "null")],
    [("running", "true"), ("virtual_ipv4", "  ")],
    [("running", "true"), ("virtual_ipv4", "10.0.0.1"), ("error_msg", "tun closed")],
    [("running", "maybe"), ("virtual_ipv4", "10.0.0.1")],
])
def test_is_alive_rejects_unhealthy_status(infos):
    assert is_alive(infos) is False


@pytest.mark.asyncio
async def test_check_liveness_queries_engine():
    assert await check_liveness(FakeEngine(HEALTHY)) is True
    assert await check_liveness(FakeEngine([("running", "false")])) is False


@pytest.mark.asyncio
async def test_check_liveness_folds_engine_errors():
    assert await check_liveness(FakeEngine(error=RuntimeError("boom"))) is False


def test_is_alive_skips_malformed_entries():
    infos = [
        ("running", "true"),
        ("virtual_ipv4",),
        (None, "x"),
        ("error_msg", 3),
        "garbage",
        ("my_node_info.virtual_ipv4", "10.144.144.1/24"),
    ]
    assert is_alive(infos) is True


@pytest.mark.asyncio
async def test_check_liveness_folds_malformed_status():
    engine = FakeEngine([("running", "true"), ("virtual_ipv4",)])
    assert await check_liveness(engine) is False


@pytest.mark.asyncio
async def test_check_liveness_folds_non_iterable_status():
    class NumberStatusEngine:
        def collect_infos(self, max_entries: int = 512):
            return 42

    engine = NumberStatusEngine()
    assert await check_liveness(engine) is False
