"""
Health probes.

Two independent checks, each a predicate with no effect on session state:

- Reachability: connect to the forwarded/local port, write 0xFE, require
  the first byte read back to be 0xFF within the timeout.
- Liveness: the engine status reports running, an assigned virtual
  address and no error message.

Every failure mode (refused, timeout, EOF, wrong byte, engine error,
unparseable status) folds into False. Probes never raise.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, Protocol

from spec import (
    ENGINE_STATUS_MAX_ENTRIES,
    ENGINE_STATUS_NULL_LITERAL,
    ENGINE_STATUS_TRUE_VALUES,
    PROBE_SENTINEL_REQUEST,
    PROBE_SENTINEL_RESPONSE,
    PROBE_TARGET_HOST,
)


class EngineStatusSource(Protocol):
    def collect_infos(self, max_entries: int = ...) -> list[tuple[str, str]]: ...


# ---------------------------------------------------------------------
# Reachability
# ---------------------------------------------------------------------

async def _sentinel_exchange(host: str, port: int) -> bool:
    reader, writer = await asyncio.open_connection(host, port)
    try:
        writer.write(bytes((PROBE_SENTINEL_REQUEST,)))
        await writer.drain()
        reply = await reader.read(1)
        return len(reply) == 1 and reply[0] == PROBE_SENTINEL_RESPONSE
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


async def check_reachability(
    port: int,
    *,
    timeout_s: float,
    host: str = PROBE_TARGET_HOST,
) -> bool:
    """Application-level handshake against host:port."""
    try:
        return await asyncio.wait_for(_sentinel_exchange(host, port), timeout=timeout_s)
    except (OSError, asyncio.TimeoutError, ValueError):
        return False


# ---------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------

def _is_nullish(value: str) -> bool:
    v = value.strip()
    return v == "" or v.lower() == ENGINE_STATUS_NULL_LITERAL


def _key_matches(key: str, name: str) -> bool:
    return key == name or key.endswith("." + name)


def _as_pair(entry: object) -> tuple[str, str] | None:
    """Lower-cased key and value, or None for entries that are not (str, str | None)."""
    if not isinstance(entry, tuple) or len(entry) != 2:
        return None
    key, value = entry
    if not isinstance(key, str) or not isinstance(value, (str, type(None))):
        return None
    return key.lower(), value or ""


def is_alive(infos: Iterable[tuple[str, str]] | None) -> bool:
    """
    Evaluate flattened engine status pairs.

    Keys are matched case-insensitively:
    - "running" (or "*.running") must parse as true
    - any key containing "virtual_ipv4" must carry a non-null value
    - "error_msg" (or "*.error_msg") must be empty or null

    Malformed entries are skipped.
    """
    if not infos:
        return False

    running: bool | None = None
    virtual_ip = ""
    error_msg = ""

    for entry in infos:
        pair = _as_pair(entry)
        if pair is None:
            continue
        k, v = pair

        if _key_matches(k, "running"):
            running = v.strip().lower() in ENGINE_STATUS_TRUE_VALUES

        if "virtual_ipv4" in k and not _is_nullish(v):
            virtual_ip = v.strip()

        if _key_matches(k, "error_msg"):
            error_msg = v.strip()

    if not running:
        return False
    if _is_nullish(virtual_ip):
        return False
    return _is_nullish(error_msg)


async def check_liveness(
    engine: EngineStatusSource,
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    executor=None,
) -> bool:
    """Query engine status off the event loop and apply is_alive()."""
    loop = loop or asyncio.get_running_loop()
    try:
        infos = await loop.run_in_executor(
            executor, engine.collect_infos, ENGINE_STATUS_MAX_ENTRIES
        )
        return is_alive(infos)
    except Exception:  # pylint: disable=broad-exception-caught
        return False
