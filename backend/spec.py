"""
SPEC-AS-CONSTANTS
-----------------
Single source of truth for all behavioral invariants in the system.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Health Probes
# =============================================================================

REACHABILITY_PROBE_INTERVAL_MS: Final[int] = 200
REACHABILITY_PROBE_TIMEOUT_MS: Final[int] = 200
LIVENESS_PROBE_INTERVAL_MS: Final[int] = 1_000

# Fatal only once the tunnel is armed
REACHABILITY_FAILURE_THRESHOLD: Final[int] = 3

PROBE_TARGET_HOST: Final[str] = "127.0.0.1"
PROBE_SENTINEL_REQUEST: Final[int] = 0xFE
PROBE_SENTINEL_RESPONSE: Final[int] = 0xFF

# Engine status values treated as "true" / "absent"
ENGINE_STATUS_TRUE_VALUES: Final[Tuple[str, ...]] = ("true", "1", "yes")
ENGINE_STATUS_NULL_LITERAL: Final[str] = "null"
ENGINE_STATUS_MAX_ENTRIES: Final[int] = 512

# =============================================================================
# Session Timing
# =============================================================================

BOOT_DEADLINE_MS: Final[int] = 10_000

# Blocking engine calls run on this many worker threads
ENGINE_WORKER_THREADS: Final[int] = 3

# =============================================================================
# Invite Codes: Terracotta format
# =============================================================================

# Digits + uppercase letters without I and O
TERRACOTTA_ALPHABET: Final[str] = "0123456789ABCDEFGHJKLMNPQRSTUVWXYZ"
TERRACOTTA_BASE: Final[int] = 34
TERRACOTTA_DIGIT_COUNT: Final[int] = 25
TERRACOTTA_PAYLOAD_DIGITS: Final[int] = 24
TERRACOTTA_GROUP_SIZE: Final[int] = 5
TERRACOTTA_GROUP_SEPARATOR: Final[str] = "-"
TERRACOTTA_BYTE_COUNT: Final[int] = 15
TERRACOTTA_NAME_DIGITS: Final[int] = 15
TERRACOTTA_NAME_PREFIX: Final[str] = "terracotta-mc-"

# Glyphs folded before alphabet lookup
TERRACOTTA_FOLDED_GLYPHS: Final[Tuple[Tuple[str, str], ...]] = (
    ("I", "1"),
    ("O", "0"),
)

ROOM_ID_BITS: Final[int] = 64
PORT_MAX: Final[int] = 0xFFFF

# =============================================================================
# Invite Codes: Compact format
# =============================================================================

COMPACT_ALPHABET: Final[str] = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
COMPACT_BITS_PER_CHAR: Final[int] = 5
COMPACT_MAX_LEN: Final[int] = 10
COMPACT_VALUE_LIMIT: Final[int] = 999_999_999_965_536

# decimal length -> port modulus
COMPACT_PORT_MODULI: Final[dict[int, int]] = {
    14: 10_000,
    15: 100_000,
}

COMPACT_NAME_PREFIX: Final[str] = "PCLCELobby"
COMPACT_SECRET_PREFIX: Final[str] = "PCLCEETLOBBY2025"
COMPACT_NAME_SLICE: Final[Tuple[int, int]] = (0, 8)
COMPACT_SECRET_SLICE: Final[Tuple[int, int]] = (8, 10)

# =============================================================================
# Virtual Addressing
# =============================================================================

TERRACOTTA_SUBNET_BASE: Final[str] = "10.144.144"
COMPACT_SUBNET_BASE: Final[str] = "10.114.51"
VIRTUAL_PREFIX_LEN: Final[int] = 24

HOST_VIRTUAL_IPV4: Final[str] = "10.144.144.1"
COMPACT_HOST_IPV4: Final[str] = "10.114.51.41"

GUEST_OCTET_MIN: Final[int] = 2
GUEST_OCTET_SPAN: Final[int] = 253  # octets 2..254

TERRACOTTA_RESERVED_OCTET: Final[int] = 1
TERRACOTTA_RESERVED_REMAP: Final[int] = 2
COMPACT_RESERVED_OCTET: Final[int] = 41
COMPACT_RESERVED_REMAP: Final[int] = 42

# Kind labels mixed into the address digest
ADDRESS_KIND_LABELS: Final[dict[str, str]] = {
    "TERRACOTTA": "TERRACOTTA",
    "COMPACT": "PCL2CE",
}

# =============================================================================
# Tunnel Engine Configuration
# =============================================================================

DEFAULT_BOOTSTRAP_PEERS: Final[Tuple[str, ...]] = (
    "tcp://public.easytier.top:11010",
    "tcp://ah.nkbpal.cn:11010",
    "tcp://turn.hb.629957.xyz:11010",
    "tcp://turn.js.629957.xyz:11012",
    "tcp://sh.993555.xyz:11010",
    "tcp://turn.bj.629957.xyz:11010",
    "tcp://et.sh.suhoan.cn:11010",
    "tcp://et-hk.clickor.click:11010",
    "tcp://et.01130328.xyz:11010",
    "tcp://et.gbc.moe:11011",
)
COMPACT_EXTRA_PEER: Final[str] = "tcp://43.139.42.188:11010"

TUNNEL_LISTENERS: Final[Tuple[str, ...]] = (
    "tcp://0.0.0.0:11010",
    "udp://0.0.0.0:11010",
    "wg://0.0.0.0:11010",
)
TUNNEL_RPC_PORTAL: Final[str] = "0.0.0.0:0"

HOST_INSTANCE_PREFIX: Final[str] = "EnchantNet-Host-"
GUEST_INSTANCE_PREFIX: Final[str] = "EnchantNet-Guest-"

FORWARD_BIND_IPV6: Final[str] = "[::]"
FORWARD_BIND_IPV4: Final[str] = "0.0.0.0"
FORWARD_PROTO: Final[str] = "tcp"

# Used when the kernel refuses an ephemeral port
LOCAL_FORWARD_PORT_FALLBACK: Final[int] = 35781

# =============================================================================
# TUN Device (Linux)
# =============================================================================

TUN_CLONE_DEVICE: Final[str] = "/dev/net/tun"
TUNSETIFF: Final[int] = 0x400454CA
IFF_TUN: Final[int] = 0x0001
IFF_NO_PI: Final[int] = 0x1000
IFNAMSIZ: Final[int] = 16

# =============================================================================
# LAN Discovery
# =============================================================================

LAN_MULTICAST_GROUP_V4: Final[str] = "224.0.2.60"
LAN_MULTICAST_GROUP_V6: Final[str] = "ff75:230::60"
LAN_MULTICAST_PORT: Final[int] = 4445
LAN_AD_OPEN: Final[str] = "[AD]"
LAN_AD_CLOSE: Final[str] = "[/AD]"

# =============================================================================
# Failure Messages
# =============================================================================

MSG_MANUAL_STOP: Final[str] = "manual_stop"
MSG_SCAN_FAILED: Final[str] = "scan_failed"
MSG_INVITE_BUILD_ERROR: Final[str] = "invite_build_error"
MSG_ENGINE_START_FAILED: Final[str] = "engine_start_failed"
MSG_TUN_HANDOFF_FAILED: Final[str] = "tun_handoff_failed"
MSG_BOOT_TIMEOUT: Final[str] = "boot_timeout"
MSG_CONNECTION_LOST: Final[str] = "connection_lost"
MSG_ENGINE_CRASHED: Final[str] = "engine_crashed"
