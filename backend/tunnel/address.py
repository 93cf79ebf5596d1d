"""
Virtual address assignment and local identity helpers.

pick_guest_octet() is a pure function: the same device, room kind, network
name and secret always map to the same host octet, so repeated joins of the
same room land on the same virtual address.
"""

from __future__ import annotations

import hashlib
import os
import socket
import uuid

import psutil

from protocol.invite_code import RoomDescriptor, RoomKind
from spec import (
    ADDRESS_KIND_LABELS,
    COMPACT_RESERVED_OCTET,
    COMPACT_RESERVED_REMAP,
    COMPACT_SUBNET_BASE,
    GUEST_OCTET_MIN,
    GUEST_OCTET_SPAN,
    LOCAL_FORWARD_PORT_FALLBACK,
    TERRACOTTA_RESERVED_OCTET,
    TERRACOTTA_RESERVED_REMAP,
    TERRACOTTA_SUBNET_BASE,
)


def subnet_base(kind: RoomKind) -> str:
    """First three octets of the virtual /24 for a room kind."""
    return TERRACOTTA_SUBNET_BASE if kind is RoomKind.TERRACOTTA else COMPACT_SUBNET_BASE


def pick_guest_octet(
    device_id: str,
    kind: RoomKind,
    network_name: str,
    network_secret: str,
) -> int:
    """
    Derive the guest host octet in [2, 254].

    sha256("device|KIND|name|secret|base")[0] mod 253 + 2, then the
    kind-specific reserved octet (host address) is remapped.
    """
    base = subnet_base(kind)
    label = ADDRESS_KIND_LABELS.get(kind.value, kind.value)
    seed = "|".join((device_id, label, network_name, network_secret, base))

    first_byte = hashlib.sha256(seed.encode("utf-8")).digest()[0]
    octet = (first_byte % GUEST_OCTET_SPAN) + GUEST_OCTET_MIN

    if kind is RoomKind.TERRACOTTA and octet == TERRACOTTA_RESERVED_OCTET:
        octet = TERRACOTTA_RESERVED_REMAP
    if kind is RoomKind.COMPACT and octet == COMPACT_RESERVED_OCTET:
        octet = COMPACT_RESERVED_REMAP
    return octet


def pick_guest_ipv4(device_id: str, room: RoomDescriptor) -> str:
    octet = pick_guest_octet(device_id, room.kind, room.network_name, room.network_secret)
    return f"{subnet_base(room.kind)}.{octet}"


def load_or_create_device_id(path: str) -> str:
    """
    Return the persisted per-device UUID, creating it on first use.

    The id only feeds address derivation; losing it changes the guest
    address for every room, nothing else.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            saved = fh.read().strip()
        if saved:
            return saved
    except FileNotFoundError:
        pass

    device_id = str(uuid.uuid4())
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(device_id + "\n")
    return device_id


def pick_local_forward_port() -> int:
    """Ask the kernel for a free TCP port for the guest-side forward."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("0.0.0.0", 0))
            return sock.getsockname()[1]
    except OSError:
        return LOCAL_FORWARD_PORT_FALLBACK


def device_has_ipv4() -> bool:
    """True if any non-loopback interface that is up carries an IPv4 address."""
    stats = psutil.net_if_stats()
    for name, addrs in psutil.net_if_addrs().items():
        nic = stats.get(name)
        if nic is None or not nic.isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            if addr.address.startswith("127."):
                continue
            return True
    return False
