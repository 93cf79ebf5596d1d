# pylint: disable=missing-module-docstring,missing-function-docstring

import hashlib
import socket
from collections import namedtuple

import pytest

import tunnel.address as address_mod
from protocol.invite_code import RoomDescriptor, RoomKind
from tunnel.address import (
    device_has_ipv4,
    load_or_create_device_id,
    pick_guest_ipv4,
    pick_guest_octet,
    pick_local_forward_port,
)


def terracotta_room() -> RoomDescriptor:
    return RoomDescriptor(
        kind=RoomKind.TERRACOTTA,
        room_id=1,
        port=25565,
        network_name="terracotta-mc-abcde12345fghjk",
        network_secret="mnpqr67890",
    )


def expected_octet(seed: str) -> int:
    return hashlib.sha256(seed.encode()).digest()[0] % 253 + 2


# ---------------------------------------------------------------------
# Octet derivation
# ---------------------------------------------------------------------

def test_octet_matches_digest_formula():
    octet = pick_guest_octet("dev-1", RoomKind.TERRACOTTA, "name", "secret")
    assert octet == expected_octet("dev-1|TERRACOTTA|name|secret|10.144.144")


def test_compact_kind_uses_legacy_label_and_subnet():
    octet = pick_guest_octet("dev-1", RoomKind.COMPACT, "name", "secret")
    raw = expected_octet("dev-1|PCL2CE|name|secret|10.114.51")
    assert octet == (42 if raw == 41 else raw)


def test_octet_is_idempotent_and_in_range():
    for i in range(300):
        device = f"device-{i}"
        first = pick_guest_octet(device, RoomKind.TERRACOTTA, "n", "s")
        second = pick_guest_octet(device, RoomKind.TERRACOTTA, "n", "s")
        assert first == second
        assert 2 <= first <= 254


def test_compact_never_returns_host_octet():
    hits = 0
    for i in range(5_000):
        device = f"device-{i}"
        raw = expected_octet(f"{device}|PCL2CE|n|s|10.114.51")
        octet = pick_guest_octet(device, RoomKind.COMPACT, "n", "s")
        assert octet != 41
        if raw == 41:
            hits += 1
            assert octet == 42
    assert hits > 0


def test_pick_guest_ipv4_uses_room_subnet():
    ip = pick_guest_ipv4("dev-1", terracotta_room())
    assert ip.startswith("10.144.144.")
    assert ip == pick_guest_ipv4("dev-1", terracotta_room())


# ---------------------------------------------------------------------
# Device id persistence
# ---------------------------------------------------------------------

def test_device_id_is_created_once(tmp_path):
    path = tmp_path / "nested" / "device_id"

    first = load_or_create_device_id(str(path))
    second = load_or_create_device_id(str(path))

    assert first == second
    assert path.read_text(encoding="utf-8").strip() == first


def test_device_id_reuses_existing_value(tmp_path):
    path = tmp_path / "device_id"
    path.write_text("fixed-id\n", encoding="utf-8")
    assert load_or_create_device_id(str(path)) == "fixed-id"


# ---------------------------------------------------------------------
# Local forward port / interfaces
# ---------------------------------------------------------------------

def test_pick_local_forward_port_returns_usable_port():
    port = pick_local_forward_port()
    assert 0 < port <= 65535


def test_pick_local_forward_port_falls_back(monkeypatch: pytest.MonkeyPatch):
    class BrokenSocket:
        def __init__(self, *args, **kwargs):
            raise OSError("no sockets")

    monkeypatch.setattr(address_mod.socket, "socket", BrokenSocket)
    assert pick_local_forward_port() == 35781


Addr = namedtuple("Addr", "family address")
Stats = namedtuple("Stats", "isup")


def test_device_has_ipv4_ignores_loopback_and_down(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(address_mod.psutil, "net_if_addrs", lambda: {
        "lo": [Addr(socket.AF_INET, "127.0.0.1")],
        "eth0": [Addr(socket.AF_INET, "192.168.1.5")],
        "wlan0": [Addr(socket.AF_INET6, "fe80::1")],
    })
    monkeypatch.setattr(address_mod.psutil, "net_if_stats", lambda: {
        "lo": Stats(True),
        "eth0": Stats(False),
        "wlan0": Stats(True),
    })
    assert device_has_ipv4() is False


def test_device_has_ipv4_detects_up_interface(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(address_mod.psutil, "net_if_addrs", lambda: {
        "eth0": [Addr(socket.AF_INET, "192.168.1.5")],
    })
    monkeypatch.setattr(address_mod.psutil, "net_if_stats", lambda: {
        "eth0": Stats(True),
    })
    assert device_has_ipv4() is True
