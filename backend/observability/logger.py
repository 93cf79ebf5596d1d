"""
JSONL event log for the connection runtime.

Reducer decisions, runtime side effects and timer metrics all go through
log_event(); each becomes exactly one JSON line on the configured sink.
Nothing is buffered.
"""

from __future__ import annotations

import json
import sys
from typing import Any, Mapping, Callable


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests, swappable by configure())
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def _discard(line: str) -> None:  # pylint: disable=unused-argument
    return None


_print: Callable[[str], None] = _stdout_print


def configure(*, enable_json_logs: bool) -> None:
    """
    Select the output sink from AppConfig.enable_json_logs.

    Disabled logging swaps in a sink that drops every line; callers keep
    calling log_event unconditionally.
    """
    global _print  # pylint: disable=global-statement
    _print = _stdout_print if enable_json_logs else _discard


def log_event(event: Mapping[str, Any]) -> None:
    """
    Emit one event as a compact JSON line.

    Callers pass complete records (ts_ms, session_id, phase, event_type).
    Unserializable payloads are replaced by a LOGGER_SERIALIZATION_ERROR
    record carrying the repr; this function never raises.
    """
    try:
        line = _encode(event)
    except (TypeError, ValueError) as exc:
        line = _encode({
            "ts_ms": event.get("ts_ms"),
            "session_id": event.get("session_id"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(exc),
            "original_event_repr": repr(event),
        })

    _print(line)


def _encode(event: Mapping[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False, separators=(",", ":"))
