"""
Linux TUN device.

Opens /dev/net/tun and attaches a layer-3 interface (IFF_TUN | IFF_NO_PI).
The resulting file descriptor is what gets handed to the tunnel engine when
a session arms. Addressing and routes on the interface are left to the host
OS.
"""

from __future__ import annotations

import fcntl
import os
import struct

from spec import IFF_NO_PI, IFF_TUN, IFNAMSIZ, TUN_CLONE_DEVICE, TUNSETIFF


class TunDeviceError(Exception):
    """Raised when the TUN device cannot be created."""


class TunDevice:
    """Open TUN interface. close() is idempotent."""

    def __init__(self, fd: int, name: str) -> None:
        self._fd: int | None = fd
        self.name = name

    @property
    def fd(self) -> int:
        if self._fd is None:
            raise TunDeviceError(f"{self.name} is closed")
        return self._fd

    @property
    def closed(self) -> bool:
        return self._fd is None

    def close(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            os.close(fd)


def open_tun(name: str, *, clone_device: str = TUN_CLONE_DEVICE) -> TunDevice:
    """
    Create (or attach to) the named TUN interface.

    Raises:
        TunDeviceError on a bad name, missing privileges or a missing
        clone device.
    """
    try:
        encoded = name.encode("ascii")
    except UnicodeEncodeError as exc:
        raise TunDeviceError(f"invalid interface name: {name!r}") from exc
    if not encoded or len(encoded) >= IFNAMSIZ:
        raise TunDeviceError(f"invalid interface name: {name!r}")

    try:
        fd = os.open(clone_device, os.O_RDWR)
    except OSError as exc:
        raise TunDeviceError(f"cannot open {clone_device}: {exc}") from exc

    try:
        ifr = struct.pack(f"{IFNAMSIZ}sH", encoded, IFF_TUN | IFF_NO_PI)
        result = fcntl.ioctl(fd, TUNSETIFF, ifr)
    except OSError as exc:
        os.close(fd)
        raise TunDeviceError(f"TUNSETIFF {name} failed: {exc}") from exc

    actual = result[:IFNAMSIZ].rstrip(b"\x00").decode("ascii") or name
    return TunDevice(fd, actual)
