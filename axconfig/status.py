"""Recording status derivation from the configured start/stop window.

The device stores a start ("hibernate") and stop time, each either an
absolute local time or one of the sentinels ``0`` (always before now) and
``-1`` (always after now). Whether a recording is configured, running or
finished follows from where "now" falls relative to that window.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .core.models import DeviceStatus
from .core.timestamps import Timestamp, resolve_bound

__all__ = [
    "RecordingLabel",
    "RecordingWindow",
    "apply_recording_status",
    "resolve_recording_window",
]


class RecordingLabel:
    """Human-readable recording state labels."""

    READY = "Ready"
    CONFIGURED = "Configured"
    STARTED = "Recording started"
    COMPLETE = "Recording complete"
    CLEARED = "Settings cleared"
    JUST_CONFIGURED_PREFIX = "Configured: "


@dataclass(slots=True, frozen=True)
class RecordingWindow:
    configured: bool
    started: bool
    finished: bool
    incomplete: bool

    def label(self, *, just_configured: bool = False) -> str:
        if not self.configured:
            return RecordingLabel.CLEARED if just_configured else RecordingLabel.READY
        if self.finished:
            state = RecordingLabel.COMPLETE
        elif self.started:
            state = RecordingLabel.STARTED
        else:
            state = RecordingLabel.CONFIGURED
        if just_configured:
            return RecordingLabel.JUST_CONFIGURED_PREFIX + state
        return state


def resolve_recording_window(
    start: Optional[Timestamp],
    stop: Optional[Timestamp],
    *,
    now: Optional[datetime] = None,
) -> RecordingWindow:
    """Classify ``now`` against the ``[start, stop)`` recording window."""

    current = now or datetime.now()
    since = resolve_bound(start)
    until = resolve_bound(stop)

    configured = since < until
    finished = configured and current >= until
    started = configured and current >= since and not finished
    incomplete = configured and not finished
    return RecordingWindow(
        configured=configured,
        started=started,
        finished=finished,
        incomplete=incomplete,
    )


def apply_recording_status(
    status: DeviceStatus,
    *,
    just_configured: bool = False,
    now: Optional[datetime] = None,
) -> str:
    """Update the derived flags on ``status`` and return the new state label."""

    window = resolve_recording_window(status.start, status.stop, now=now)
    status.recording_configured = window.configured
    status.recording_started = window.started
    status.recording_finished = window.finished
    status.recording_incomplete = window.incomplete
    return window.label(just_configured=just_configured)
