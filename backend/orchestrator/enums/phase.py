"""
Authoritative session phase enumeration.

Rules:
- This enum defines ONLY the control-plane phases.
- No behavior, no helper methods, no side effects.
- Transitions are defined exclusively in the reducer.
"""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """
    Lifecycle phases of a single connection session.

    IDLE -> (SCANNING, host only) -> PROBING -> ARMED -> IDLE
    FAILED is reachable from SCANNING, PROBING and ARMED.
    """

    IDLE = "IDLE"
    SCANNING = "SCANNING"
    PROBING = "PROBING"
    ARMED = "ARMED"
    FAILED = "FAILED"
