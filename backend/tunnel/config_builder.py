"""
Tunnel engine configuration.

Builds the structured descriptor handed verbatim to the tunnel engine and
renders it into the engine's TOML dialect.

Rules:
- Pure: the only inputs are the room, the chosen addresses and ports.
- Building never fails for inputs the codec already accepted; malformed
  inputs (empty credentials, non-positive ports) raise ValueError.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable

import toml

from protocol.invite_code import RoomDescriptor, RoomKind
from spec import (
    COMPACT_EXTRA_PEER,
    COMPACT_HOST_IPV4,
    DEFAULT_BOOTSTRAP_PEERS,
    FORWARD_BIND_IPV4,
    FORWARD_BIND_IPV6,
    FORWARD_PROTO,
    GUEST_INSTANCE_PREFIX,
    HOST_INSTANCE_PREFIX,
    HOST_VIRTUAL_IPV4,
    PORT_MAX,
    TUNNEL_LISTENERS,
    TUNNEL_RPC_PORTAL,
    VIRTUAL_PREFIX_LEN,
)


@dataclass(frozen=True)
class PortForward:
    """Engine-side TCP forward from a local bind address to the host."""
    bind_addr: str
    dst_addr: str
    proto: str = FORWARD_PROTO


@dataclass(frozen=True)
class TunnelConfig:
    """Complete engine configuration for one instance."""

    instance_name: str
    instance_id: str
    ipv4: str  # CIDR
    network_name: str
    network_secret: str
    peers: tuple[str, ...]
    listeners: tuple[str, ...] = TUNNEL_LISTENERS
    rpc_portal: str = TUNNEL_RPC_PORTAL
    dhcp: bool = False
    latency_first: bool = True
    enable_kcp_proxy: bool = True
    port_forwards: tuple[PortForward, ...] = ()


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

def _require_credentials(room: RoomDescriptor) -> None:
    if not room.network_name:
        raise ValueError("network_name must be non-empty")
    if not room.network_secret:
        raise ValueError("network_secret must be non-empty")


def _require_port(name: str, port: int) -> None:
    if not 0 < port <= PORT_MAX:
        raise ValueError(f"{name} out of range: {port}")


def _cidr(address: str) -> str:
    return f"{address}/{VIRTUAL_PREFIX_LEN}"


def host_ip_for(kind: RoomKind) -> str:
    """Virtual address of the hosting peer for a room kind."""
    return HOST_VIRTUAL_IPV4 if kind is RoomKind.TERRACOTTA else COMPACT_HOST_IPV4


def host_instance_name(room: RoomDescriptor) -> str:
    return HOST_INSTANCE_PREFIX + room.network_secret


def guest_instance_name(room: RoomDescriptor) -> str:
    return GUEST_INSTANCE_PREFIX + room.network_secret


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------

def build_host_config(
    room: RoomDescriptor,
    *,
    new_instance_id: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> TunnelConfig:
    """Host: fixed address, default peers, no forwards."""
    _require_credentials(room)
    _require_port("port", room.port)

    return TunnelConfig(
        instance_name=host_instance_name(room),
        instance_id=new_instance_id(),
        ipv4=_cidr(HOST_VIRTUAL_IPV4),
        network_name=room.network_name,
        network_secret=room.network_secret,
        peers=DEFAULT_BOOTSTRAP_PEERS,
    )


def build_guest_config(
    room: RoomDescriptor,
    *,
    guest_ipv4: str,
    local_port: int,
    has_ipv4: bool,
    new_instance_id: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> TunnelConfig:
    """
    Guest: derived address plus a forward of local_port to the host's
    service port.

    The IPv4 forward is only added when the device has an IPv4 interface,
    otherwise the engine fails to bind it. Compact rooms get one extra
    bootstrap peer ahead of the defaults.
    """
    _require_credentials(room)
    _require_port("port", room.port)
    _require_port("local_port", local_port)

    dst_addr = f"{host_ip_for(room.kind)}:{room.port}"
    forwards = [PortForward(bind_addr=f"{FORWARD_BIND_IPV6}:{local_port}", dst_addr=dst_addr)]
    if has_ipv4:
        forwards.append(
            PortForward(bind_addr=f"{FORWARD_BIND_IPV4}:{local_port}", dst_addr=dst_addr)
        )

    peers = DEFAULT_BOOTSTRAP_PEERS
    if room.kind is RoomKind.COMPACT:
        peers = (COMPACT_EXTRA_PEER,) + peers

    return TunnelConfig(
        instance_name=guest_instance_name(room),
        instance_id=new_instance_id(),
        ipv4=_cidr(guest_ipv4),
        network_name=room.network_name,
        network_secret=room.network_secret,
        peers=peers,
        port_forwards=tuple(forwards),
    )


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------

def to_document(config: TunnelConfig) -> dict[str, Any]:
    """Engine document layout: top-level keys, then tables, then arrays of tables."""
    doc: dict[str, Any] = {
        "instance_name": config.instance_name,
        "instance_id": config.instance_id,
        "ipv4": config.ipv4,
        "dhcp": config.dhcp,
        "listeners": list(config.listeners),
        "rpc_portal": config.rpc_portal,
        "network_identity": {
            "network_name": config.network_name,
            "network_secret": config.network_secret,
        },
        "flags": {
            "latency_first": config.latency_first,
            "enable_kcp_proxy": config.enable_kcp_proxy,
        },
    }
    if config.port_forwards:
        doc["port_forward"] = [
            {"proto": f.proto, "bind_addr": f.bind_addr, "dst_addr": f.dst_addr}
            for f in config.port_forwards
        ]
    doc["peer"] = [{"uri": uri} for uri in config.peers]
    return doc


def render_toml(config: TunnelConfig) -> str:
    return toml.dumps(to_document(config))
