"""
Observer-facing session snapshots.

A snapshot is emitted on every phase transition and is the only thing
observers ever see of the orchestrator. The last emitted snapshot stays
authoritative until a new session supersedes it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from orchestrator.enums.fail_reason import FailReason
from orchestrator.enums.phase import Phase
from orchestrator.enums.role import Role


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Immutable view of one session at one transition."""

    session_id: str | None
    role: Role
    phase: Phase
    reason: FailReason | None
    message: str | None
    invite_code: str | None
    backup_endpoint: str | None
    armed: bool
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "role": self.role.value,
            "phase": self.phase.value,
            "reason": self.reason.value if self.reason is not None else None,
            "message": self.message,
            "invite_code": self.invite_code,
            "backup_endpoint": self.backup_endpoint,
            "armed": self.armed,
            "timestamp_ms": self.timestamp_ms,
        }


IDLE_SNAPSHOT = ConnectionSnapshot(
    session_id=None,
    role=Role.NONE,
    phase=Phase.IDLE,
    reason=None,
    message=None,
    invite_code=None,
    backup_endpoint=None,
    armed=False,
    timestamp_ms=0,
)


@runtime_checkable
class SnapshotListener(Protocol):
    """
    Observer contract.

    Callbacks run on the event loop after the transition has been applied.
    They must not block; exceptions are logged and dropped.
    """

    def on_state_changed(self, snapshot: ConnectionSnapshot) -> None: ...

    def on_copy_invite_code(self, invite_code: str) -> None: ...
