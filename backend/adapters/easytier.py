"""
EasyTier tunnel engine binding (ctypes).

C ABI consumed:

    int32_t set_tun_fd(const char* inst_name, int fd);
    int parse_config(const char* cfg_str);
    int run_network_instance(const char* cfg_str);
    int retain_network_instance(const char** names, size_t count);
    int collect_network_infos(KeyValuePair* infos, size_t max_length);
    void get_error_msg(const char** out);
    void free_string(const char* s);

Every call blocks; the runtime runs them on its worker pool. Strings handed
back by the engine are owned by the engine and released with free_string().
"""

from __future__ import annotations

import ctypes
from typing import Sequence

from spec import ENGINE_STATUS_MAX_ENTRIES


# -------------------------
# Exceptions
# -------------------------

class EngineError(Exception):
    """
    Raised when the engine returns a non-zero status.

    status is the raw return code, detail the engine's last error message.
    """

    def __init__(self, operation: str, status: int, detail: str | None) -> None:
        super().__init__(f"{operation} failed with status {status}: {detail or 'no detail'}")
        self.operation = operation
        self.status = status
        self.detail = detail


class EngineUnavailableError(EngineError):
    """Raised when the engine shared library cannot be loaded."""

    def __init__(self, detail: str) -> None:
        super().__init__("load", -1, detail)


# -------------------------
# ABI types
# -------------------------

class KeyValuePair(ctypes.Structure):  # pylint: disable=too-few-public-methods
    # void* so the engine-owned pointers can be handed back to free_string
    _fields_ = [
        ("key", ctypes.c_void_p),
        ("value", ctypes.c_void_p),
    ]


def _bind(lib: ctypes.CDLL) -> None:
    lib.set_tun_fd.argtypes = [ctypes.c_char_p, ctypes.c_int]
    lib.set_tun_fd.restype = ctypes.c_int32

    lib.parse_config.argtypes = [ctypes.c_char_p]
    lib.parse_config.restype = ctypes.c_int

    lib.run_network_instance.argtypes = [ctypes.c_char_p]
    lib.run_network_instance.restype = ctypes.c_int

    lib.retain_network_instance.argtypes = [
        ctypes.POINTER(ctypes.c_char_p),
        ctypes.c_size_t,
    ]
    lib.retain_network_instance.restype = ctypes.c_int

    lib.collect_network_infos.argtypes = [
        ctypes.POINTER(KeyValuePair),
        ctypes.c_size_t,
    ]
    lib.collect_network_infos.restype = ctypes.c_int

    lib.get_error_msg.argtypes = [ctypes.POINTER(ctypes.c_void_p)]
    lib.get_error_msg.restype = None

    lib.free_string.argtypes = [ctypes.c_void_p]
    lib.free_string.restype = None


class EasyTierEngine:
    """
    Thin wrapper over the engine library.

    Non-responsibilities:
    - No threading (callers decide where blocking calls run)
    - No retries
    """

    def __init__(self, lib_path: str) -> None:
        try:
            self._lib = ctypes.CDLL(lib_path)
            _bind(self._lib)
        except (OSError, AttributeError) as exc:
            raise EngineUnavailableError(f"{lib_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _take_string(self, ptr: int | None) -> str | None:
        if not ptr:
            return None
        try:
            return ctypes.string_at(ptr).decode("utf-8", errors="replace")
        finally:
            self._lib.free_string(ptr)

    def last_error(self) -> str | None:
        out = ctypes.c_void_p()
        self._lib.get_error_msg(ctypes.pointer(out))
        return self._take_string(out.value)

    def _check(self, operation: str, status: int) -> None:
        if status != 0:
            raise EngineError(operation, status, self.last_error())

    # ------------------------------------------------------------------
    # Engine contract
    # ------------------------------------------------------------------

    def start(self, config_text: str) -> None:
        """Validate then run one instance from its TOML config."""
        raw = config_text.encode("utf-8")
        self._check("parse_config", self._lib.parse_config(raw))
        self._check("run_network_instance", self._lib.run_network_instance(raw))

    def set_tun_fd(self, instance_name: str, fd: int) -> None:
        self._check("set_tun_fd", self._lib.set_tun_fd(instance_name.encode("utf-8"), fd))

    def collect_infos(
        self, max_entries: int = ENGINE_STATUS_MAX_ENTRIES
    ) -> list[tuple[str, str]]:
        """Flattened status pairs; empty when the engine reports nothing."""
        buf = (KeyValuePair * max_entries)()
        count = self._lib.collect_network_infos(buf, max_entries)
        if count <= 0:
            return []

        infos: list[tuple[str, str]] = []
        for entry in buf[:min(count, max_entries)]:
            key = self._take_string(entry.key)
            value = self._take_string(entry.value)
            if key is not None:
                infos.append((key, value or ""))
        return infos

    def retain(self, names: Sequence[str]) -> None:
        """Keep only the named instances; an empty sequence stops everything."""
        if names:
            arr = (ctypes.c_char_p * len(names))(*(n.encode("utf-8") for n in names))
            status = self._lib.retain_network_instance(arr, len(names))
        else:
            status = self._lib.retain_network_instance(None, 0)
        self._check("retain_network_instance", status)

    def stop_all(self) -> None:
        self.retain(())
