# pylint: disable=missing-module-docstring,missing-function-docstring

import json

import pytest

from observability import logger
from observability.metrics import timed


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    lines: list[str] = []
    monkeypatch.setattr(logger, "_print", lines.append)
    return lines


def test_timed_emits_one_metric(captured: list[str]):
    with timed("engine_start", session_id="s1", phase="PROBING", details={"role": "HOST"}):
        pass

    assert len(captured) == 1
    event = json.loads(captured[0])
    assert event["event_type"] == "METRIC_TIMER"
    assert event["metric"] == "engine_start"
    assert event["outcome"] == "ok"
    assert event["error_type"] is None
    assert event["session_id"] == "s1"
    assert event["phase"] == "PROBING"
    assert event["details"] == {"role": "HOST"}
    assert event["value_ms"] >= 0


def test_timed_records_failure_and_reraises(captured: list[str]):
    with pytest.raises(OSError):
        with timed("tun_handoff"):
            raise OSError("EPERM")

    [line] = captured
    event = json.loads(line)
    assert event["outcome"] == "error"
    assert event["error_type"] == "OSError"
