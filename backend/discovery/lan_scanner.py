"""
LAN game discovery.

Listens on the LAN multicast group for announcements of the form

    [MOTD]<anything>[/MOTD][AD]<port>[/AD]

and resolves with the first advertised port. This is the default discovery
collaborator consumed by the orchestrator while a host session is Scanning.
"""

from __future__ import annotations

import asyncio
import socket
import struct

from observability.logger import log_event
from spec import (
    LAN_AD_CLOSE,
    LAN_AD_OPEN,
    LAN_MULTICAST_GROUP_V4,
    LAN_MULTICAST_GROUP_V6,
    LAN_MULTICAST_PORT,
    PORT_MAX,
)


class DiscoveryError(Exception):
    """Raised when discovery cannot listen or gives up."""


def parse_advertised_port(payload: bytes) -> int | None:
    """Port between the first [AD] and [/AD] markers, if it is a valid port."""
    msg = payload.decode("utf-8", errors="replace")
    start = msg.find(LAN_AD_OPEN)
    end = msg.find(LAN_AD_CLOSE)
    if start < 0 or end <= start + len(LAN_AD_OPEN):
        return None

    raw = msg[start + len(LAN_AD_OPEN):end].strip()
    try:
        port = int(raw)
    except ValueError:
        return None
    if 0 < port <= PORT_MAX:
        return port
    return None


class _AdvertisementProtocol(asyncio.DatagramProtocol):
    def __init__(self, found: asyncio.Future[int]) -> None:
        self._found = found

    def datagram_received(self, data: bytes, addr) -> None:
        port = parse_advertised_port(data)
        if port is not None and not self._found.done():
            log_event({
                "event_type": "LAN_ADVERTISEMENT_SEEN",
                "port": port,
                "source": str(addr[0]) if addr else None,
            })
            self._found.set_result(port)

    def error_received(self, exc: Exception) -> None:
        if not self._found.done():
            self._found.set_exception(DiscoveryError(f"socket error: {exc}"))


def _open_v4(group: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("", port))
        mreq = struct.pack("4sl", socket.inet_aton(group), socket.INADDR_ANY)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def _open_v6(group: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("::", port))
        mreq = struct.pack("16sI", socket.inet_pton(socket.AF_INET6, group), 0)
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_JOIN_GROUP, mreq)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class LanDiscovery:
    """
    One-shot discovery of the locally hosted game's port.

    IPv6 is joined best-effort; failing to join any group is an error.
    """

    def __init__(
        self,
        *,
        group_v4: str = LAN_MULTICAST_GROUP_V4,
        group_v6: str | None = LAN_MULTICAST_GROUP_V6,
        port: int = LAN_MULTICAST_PORT,
        timeout_s: float | None = None,
    ) -> None:
        self._group_v4 = group_v4
        self._group_v6 = group_v6
        self._port = port
        self._timeout_s = timeout_s

    def _open_sockets(self) -> list[socket.socket]:
        socks: list[socket.socket] = []
        errors: list[str] = []
        try:
            socks.append(_open_v4(self._group_v4, self._port))
        except OSError as exc:
            errors.append(f"v4: {exc}")
        if self._group_v6:
            try:
                socks.append(_open_v6(self._group_v6, self._port))
            except OSError as exc:
                errors.append(f"v6: {exc}")
        if not socks:
            raise DiscoveryError("no multicast group joined (" + "; ".join(errors) + ")")
        return socks

    async def discover(self) -> int:
        """
        Wait for the first advertisement.

        Raises:
            DiscoveryError on socket failure or when timeout_s elapses.
        """
        loop = asyncio.get_running_loop()
        found: asyncio.Future[int] = loop.create_future()
        transports: list[asyncio.BaseTransport] = []

        try:
            for sock in self._open_sockets():
                transport, _ = await loop.create_datagram_endpoint(
                    lambda: _AdvertisementProtocol(found), sock=sock
                )
                transports.append(transport)

            try:
                return await asyncio.wait_for(found, timeout=self._timeout_s)
            except asyncio.TimeoutError as exc:
                raise DiscoveryError(f"no advertisement within {self._timeout_s}s") from exc
        finally:
            for transport in transports:
                transport.close()
