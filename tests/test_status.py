from datetime import datetime

import pytest

from axconfig.core.models import DeviceStatus
from axconfig.core.timestamps import ALWAYS_AFTER, ALWAYS_BEFORE
from axconfig.status import apply_recording_status, resolve_recording_window

NOW = datetime(2024, 6, 1, 12, 0, 0)
PAST = datetime(2024, 5, 1, 0, 0, 0)
FUTURE = datetime(2024, 7, 1, 0, 0, 0)


@pytest.mark.parametrize(
    "start, stop, expected",
    [
        (ALWAYS_AFTER, ALWAYS_BEFORE, "Ready"),
        (ALWAYS_BEFORE, ALWAYS_AFTER, "Recording started"),
        (FUTURE, ALWAYS_AFTER, "Configured"),
        (PAST, FUTURE, "Recording started"),
        (PAST, datetime(2024, 5, 2), "Recording complete"),
        (FUTURE, PAST, "Ready"),
        (None, None, "Ready"),
    ],
)
def test_recording_state_labels(start, stop, expected) -> None:
    status = DeviceStatus(start=start, stop=stop)

    assert apply_recording_status(status, now=NOW) == expected


def test_just_configured_labels() -> None:
    cleared = DeviceStatus(start=ALWAYS_AFTER, stop=ALWAYS_BEFORE)
    pending = DeviceStatus(start=FUTURE, stop=ALWAYS_AFTER)

    assert apply_recording_status(cleared, just_configured=True, now=NOW) == "Settings cleared"
    assert apply_recording_status(pending, just_configured=True, now=NOW) == "Configured: Configured"


def test_window_flags() -> None:
    window = resolve_recording_window(PAST, FUTURE, now=NOW)

    assert window.configured is True
    assert window.started is True
    assert window.finished is False
    assert window.incomplete is True

    finished = resolve_recording_window(PAST, datetime(2024, 5, 2), now=NOW)
    assert finished.finished is True
    assert finished.started is False
    assert finished.incomplete is False


def test_apply_recording_status_sets_flags() -> None:
    status = DeviceStatus(start=FUTURE, stop=ALWAYS_AFTER)

    apply_recording_status(status, now=NOW)

    assert status.recording_configured is True
    assert status.recording_started is False
    assert status.recording_finished is False
    assert status.recording_incomplete is True
