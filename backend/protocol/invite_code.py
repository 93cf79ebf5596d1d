"""
Invite code codec.

Two grammars, tried in fixed order (first match wins):

- Terracotta: 25 base-34 digits rendered as XXXXX-XXXXX-XXXXX-XXXXX-XXXXX.
    digits 0..23  value of a 120-bit big-endian buffer, least significant first
    digit 24      sum(digits 0..23) mod 34
  The buffer is 15 MT19937-64 bytes seeded with a random room id, with the
  last two bytes overwritten by the shared port (big-endian).

- Compact: 1..10 base-32 symbols, MSB first, no checksum. Decode only.

Usage example:

    code = encode_invite_code(25565)
    room = decode_invite_code(code)
    if not room.is_valid:
        ...

    room = parse_invite_code(user_text)  # raises InviteParseError
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from enum import Enum

from protocol.mt19937_64 import MT19937_64
from spec import (
    COMPACT_ALPHABET,
    COMPACT_BITS_PER_CHAR,
    COMPACT_MAX_LEN,
    COMPACT_NAME_PREFIX,
    COMPACT_NAME_SLICE,
    COMPACT_PORT_MODULI,
    COMPACT_SECRET_PREFIX,
    COMPACT_SECRET_SLICE,
    COMPACT_VALUE_LIMIT,
    PORT_MAX,
    ROOM_ID_BITS,
    TERRACOTTA_ALPHABET,
    TERRACOTTA_BASE,
    TERRACOTTA_BYTE_COUNT,
    TERRACOTTA_DIGIT_COUNT,
    TERRACOTTA_FOLDED_GLYPHS,
    TERRACOTTA_GROUP_SEPARATOR,
    TERRACOTTA_GROUP_SIZE,
    TERRACOTTA_NAME_DIGITS,
    TERRACOTTA_NAME_PREFIX,
    TERRACOTTA_PAYLOAD_DIGITS,
)

_MASK64 = (1 << 64) - 1
_PORT_MASK = 0xFFFF
_PORT_SHIFT = 16


# -------------------------
# Exceptions
# -------------------------

class InviteCodeError(Exception):
    """Base class for invite code errors."""


class InviteParseError(InviteCodeError):
    """
    Raised when text is neither a valid Terracotta nor a valid Compact code.

    The offending input is kept on .text for error reporting.
    """

    def __init__(self, text: str) -> None:
        super().__init__(f"invalid invite code: {text!r}")
        self.text = text


class InviteBuildError(InviteCodeError):
    """Raised when an invite code cannot be built (port out of range)."""


# -------------------------
# Data model
# -------------------------

class RoomKind(str, Enum):
    """Invite grammar that produced a room descriptor."""

    TERRACOTTA = "TERRACOTTA"
    COMPACT = "COMPACT"
    INVALID = "INVALID"


@dataclass(frozen=True)
class RoomDescriptor:
    """
    Decoded invite code.

    room_id is zero for Compact rooms. Descriptors with kind INVALID carry
    no usable fields.
    """

    kind: RoomKind
    room_id: int = 0
    port: int = 0
    network_name: str = ""
    network_secret: str = ""

    @property
    def is_valid(self) -> bool:
        return self.kind is not RoomKind.INVALID


INVALID_ROOM = RoomDescriptor(kind=RoomKind.INVALID)


# -------------------------
# Low-level helpers
# -------------------------

_FOLD = str.maketrans(dict(TERRACOTTA_FOLDED_GLYPHS))
_BASE34_INDEX = {ch: i for i, ch in enumerate(TERRACOTTA_ALPHABET)}
_BASE32_INDEX = {ch: i for i, ch in enumerate(COMPACT_ALPHABET)}


def _base34_digit(ch: str) -> int | None:
    return _BASE34_INDEX.get(ch.upper().translate(_FOLD))


def _base32_digit(ch: str) -> int | None:
    return _BASE32_INDEX.get(ch.upper())


def _group(chars: str) -> str:
    return TERRACOTTA_GROUP_SEPARATOR.join(
        chars[i:i + TERRACOTTA_GROUP_SIZE]
        for i in range(0, len(chars), TERRACOTTA_GROUP_SIZE)
    )


def _terracotta_digits(text: str) -> list[int] | None:
    """
    Collect base-34 digits, skipping separators and whitespace.

    Returns None if any alphanumeric character is outside the alphabet
    or the digit count is not exactly 25.
    """
    digits: list[int] = []
    for ch in text:
        if not ch.isalnum():
            continue
        d = _base34_digit(ch)
        if d is None:
            return None
        digits.append(d)

    if len(digits) != TERRACOTTA_DIGIT_COUNT:
        return None
    return digits


def _checksum(digits: list[int]) -> int:
    return sum(digits[:TERRACOTTA_PAYLOAD_DIGITS]) % TERRACOTTA_BASE


# -------------------------
# Terracotta
# -------------------------

def encode_invite_code(port: int, *, room_id: int | None = None) -> str:
    """
    Build a Terracotta invite code for the given port.

    room_id defaults to a fresh random 64-bit value.

    Raises:
        InviteBuildError if port is outside 1..65535.
    """
    if not 0 < port <= PORT_MAX:
        raise InviteBuildError(f"port out of range: {port}")

    if room_id is None:
        room_id = secrets.randbits(ROOM_ID_BITS)

    rng = MT19937_64(room_id)
    buf = bytearray(rng.next_u64() & 0xFF for _ in range(TERRACOTTA_BYTE_COUNT))
    buf[-2] = (port >> 8) & 0xFF
    buf[-1] = port & 0xFF

    value = int.from_bytes(buf, "big")
    chars: list[str] = []
    checksum = 0
    for _ in range(TERRACOTTA_PAYLOAD_DIGITS):
        value, digit = divmod(value, TERRACOTTA_BASE)
        chars.append(TERRACOTTA_ALPHABET[digit])
        checksum = (checksum + digit) % TERRACOTTA_BASE
    chars.append(TERRACOTTA_ALPHABET[checksum])

    return _group("".join(chars))


def _decode_terracotta(text: str) -> RoomDescriptor:
    digits = _terracotta_digits(text)
    if digits is None or _checksum(digits) != digits[-1]:
        return INVALID_ROOM

    # Horner from the checksum digit down: digit 24 gets the highest place value
    total = 0
    for d in reversed(digits):
        total = total * TERRACOTTA_BASE + d

    low64 = total & _MASK64
    port = low64 & _PORT_MASK
    if port == 0:
        return INVALID_ROOM

    rendered = "".join(TERRACOTTA_ALPHABET[d] for d in digits).lower()
    return RoomDescriptor(
        kind=RoomKind.TERRACOTTA,
        room_id=low64 >> _PORT_SHIFT,
        port=port,
        network_name=TERRACOTTA_NAME_PREFIX + rendered[:TERRACOTTA_NAME_DIGITS],
        network_secret=rendered[TERRACOTTA_NAME_DIGITS:],
    )


# -------------------------
# Compact
# -------------------------

def _compact_value(text: str) -> int | None:
    s = text.strip()
    if not s or len(s) > COMPACT_MAX_LEN:
        return None

    value = 0
    for ch in s:
        d = _base32_digit(ch)
        if d is None:
            return None
        value = (value << COMPACT_BITS_PER_CHAR) + d
    return value


def _decode_compact(text: str) -> RoomDescriptor:
    value = _compact_value(text)
    if value is None or value >= COMPACT_VALUE_LIMIT:
        return INVALID_ROOM

    dec = str(value)
    modulus = COMPACT_PORT_MODULI.get(len(dec))
    if modulus is None:
        return INVALID_ROOM

    port = value % modulus
    if port == 0 or port > PORT_MAX:
        return INVALID_ROOM

    name_start, name_end = COMPACT_NAME_SLICE
    secret_start, secret_end = COMPACT_SECRET_SLICE
    return RoomDescriptor(
        kind=RoomKind.COMPACT,
        room_id=0,
        port=port,
        network_name=COMPACT_NAME_PREFIX + dec[name_start:name_end],
        network_secret=COMPACT_SECRET_PREFIX + dec[secret_start:secret_end],
    )


# -------------------------
# Public API
# -------------------------

def decode_invite_code(text: str) -> RoomDescriptor:
    """
    Decode either grammar. Never raises.

    Returns INVALID_ROOM for anything that is not a well-formed code:
    wrong length, bad checksum, out-of-alphabet characters, or
    Compact threshold/length violations.
    """
    if not isinstance(text, str):
        return INVALID_ROOM

    room = _decode_terracotta(text)
    if room.is_valid:
        return room
    return _decode_compact(text)


def parse_invite_code(text: str) -> RoomDescriptor:
    """
    Decode an invite code or raise.

    Raises:
        InviteParseError if the text matches neither grammar.
    """
    room = decode_invite_code(text)
    if not room.is_valid:
        raise InviteParseError(text)
    return room


def quick_detect_kind(text: str) -> RoomKind:
    """Classify text as it is typed, without keeping the descriptor."""
    return decode_invite_code(text).kind
