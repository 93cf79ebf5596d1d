"""
Runtime execution context.

Provides Runtime with the imperative collaborators it needs for command
execution (tunnel engine, TUN device, discovery, observers) and the probe
timing it schedules with.

This module contains:
- Narrow Protocols (capabilities, not implementations)
- Zero orchestration logic
- Zero state mutation
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol, Sequence, runtime_checkable

from spec import (
    LIVENESS_PROBE_INTERVAL_MS,
    PROBE_TARGET_HOST,
    REACHABILITY_PROBE_INTERVAL_MS,
    REACHABILITY_PROBE_TIMEOUT_MS,
)
from tunnel.address import device_has_ipv4, pick_local_forward_port

if TYPE_CHECKING:
    from session.snapshot import ConnectionSnapshot


# ---------------------------------------------------------------------
# Collaborator Protocols
# ---------------------------------------------------------------------

@runtime_checkable
class TunnelEngineProtocol(Protocol):
    """
    Blocking tunnel engine binding.

    Every method may block; Runtime only calls them from its worker pool.
    Failures are raised, never returned as status codes.
    """

    def start(self, config_text: str) -> None: ...
    def set_tun_fd(self, instance_name: str, fd: int) -> None: ...
    def collect_infos(self, max_entries: int = ...) -> list[tuple[str, str]]: ...
    def retain(self, names: Sequence[str]) -> None: ...
    def stop_all(self) -> None: ...


@runtime_checkable
class TunDeviceProtocol(Protocol):
    @property
    def fd(self) -> int: ...

    def close(self) -> None:
        """Release the descriptor. Must be idempotent."""


@runtime_checkable
class DiscoveryProtocol(Protocol):
    async def discover(self) -> int:
        """Return the local service port or raise."""


# ---------------------------------------------------------------------
# Probe timing
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeTiming:
    """Probe cadence. Production uses the defaults; tests shorten them."""

    reachability_interval_s: float = REACHABILITY_PROBE_INTERVAL_MS / 1000.0
    reachability_timeout_s: float = REACHABILITY_PROBE_TIMEOUT_MS / 1000.0
    liveness_interval_s: float = LIVENESS_PROBE_INTERVAL_MS / 1000.0
    probe_host: str = PROBE_TARGET_HOST
    # Replaces the reducer-issued boot deadline when set
    boot_deadline_ms: int | None = None


# ---------------------------------------------------------------------
# Runtime Execution Context
# ---------------------------------------------------------------------

class RuntimeExecutionContext:
    """
    Imperative execution context for Runtime.

    Runtime is allowed to:
    - Call the collaborators held here
    - Notify observers through the two callbacks

    Runtime is NOT allowed to:
    - Let collaborator errors escape command execution
    - Perform orchestration decisions
    """

    def __init__(
        self,
        *,
        engine_factory: Callable[[], TunnelEngineProtocol],
        open_tun: Callable[[str], TunDeviceProtocol],
        discovery_factory: Callable[[], DiscoveryProtocol],
        device_id: str,
        tun_device_name: str,
        on_snapshot: Callable[[ConnectionSnapshot], None],
        on_copy_invite_code: Callable[[str], None],
        timing: ProbeTiming | None = None,
        pick_local_port: Callable[[], int] = pick_local_forward_port,
        has_ipv4: Callable[[], bool] = device_has_ipv4,
    ) -> None:
        self.engine_factory = engine_factory
        self.open_tun = open_tun
        self.discovery_factory = discovery_factory
        self.device_id = device_id
        self.tun_device_name = tun_device_name
        self.on_snapshot = on_snapshot
        self.on_copy_invite_code = on_copy_invite_code
        self.timing = timing or ProbeTiming()
        self.pick_local_port = pick_local_port
        self.has_ipv4 = has_ipv4
