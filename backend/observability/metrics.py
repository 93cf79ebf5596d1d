"""
Duration metrics for blocking engine work.

Every measured operation (engine start, TUN hand-off, teardown) emits one
METRIC_TIMER event through observability.logger when it finishes,
whether it succeeded or raised.

- Durations use monotonic time
- Event timestamps (ts_ms) use wall-clock time for correlation with
  reducer logs
- One operation = one event; nothing is aggregated in process
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event


def emit_timer(
    name: str,
    duration_ms: int,
    *,
    session_id: str | None = None,
    phase: str | None = None,
    error: BaseException | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a single METRIC_TIMER event."""
    log_event({
        "ts_ms": time.time_ns() // 1_000_000,
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": duration_ms,
        "outcome": "ok" if error is None else "error",
        "error_type": type(error).__name__ if error is not None else None,
        "session_id": session_id,
        "phase": phase,
        "details": details or {},
    })


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    phase: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[None]:
    """
    Measure the enclosed block.

    The metric is emitted exactly once, including when the block raises;
    the exception is re-raised unchanged and recorded as outcome "error".

    Usage:
        with timed("engine_start", session_id=session_id):
            await loop.run_in_executor(pool, engine.start, toml_text)
    """
    start_ns = time.monotonic_ns()
    error: BaseException | None = None
    try:
        yield
    except BaseException as exc:
        error = exc
        raise
    finally:
        emit_timer(
            name,
            (time.monotonic_ns() - start_ns) // 1_000_000,
            session_id=session_id,
            phase=phase,
            error=error,
            details=details,
        )
