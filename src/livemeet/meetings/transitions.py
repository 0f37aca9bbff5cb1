"""Meeting and recording status transition rules.

The repository's conditional writes are keyed on the set of statuses an
operation may start from, so every compare-and-transition derives its WHERE
clause from these tables.
"""

from __future__ import annotations

from src.livemeet.meetings.errors import InvalidStateError
from src.livemeet.meetings.schemas import MeetingStatus, RecordingStatus

# ── Meeting Status Rules ─────────────────────────────────────────────────────

# SCHEDULED <-> CREATED is driven by update() setting or clearing scheduled_for.
VALID_TRANSITIONS: dict[MeetingStatus, set[MeetingStatus]] = {
    MeetingStatus.SCHEDULED: {
        MeetingStatus.CREATED,
        MeetingStatus.LIVE,
        MeetingStatus.ENDED,
        MeetingStatus.CANCELED,
    },
    MeetingStatus.CREATED: {
        MeetingStatus.SCHEDULED,
        MeetingStatus.LIVE,
        MeetingStatus.ENDED,
        MeetingStatus.CANCELED,
    },
    MeetingStatus.LIVE: {MeetingStatus.ENDED},
    MeetingStatus.ENDED: set(),  # Terminal
    MeetingStatus.CANCELED: set(),  # Terminal
}

CLOSED_STATUSES = frozenset({MeetingStatus.ENDED, MeetingStatus.CANCELED})
OPEN_STATUSES = frozenset(MeetingStatus) - CLOSED_STATUSES

# ── Recording Status Rules ───────────────────────────────────────────────────

# Maps each recording operation to the statuses it may run from.
# start also resets a finished cycle.
RECORDING_SOURCES: dict[str, frozenset[RecordingStatus]] = {
    "start": frozenset(
        {RecordingStatus.NONE, RecordingStatus.STOPPED, RecordingStatus.FAILED}
    ),
    "pause": frozenset({RecordingStatus.RECORDING}),
    "resume": frozenset({RecordingStatus.PAUSED}),
    "stop": frozenset({RecordingStatus.RECORDING, RecordingStatus.PAUSED}),
}

ACTIVE_RECORDING_STATUSES = RECORDING_SOURCES["stop"]


class InvalidTransitionError(InvalidStateError):
    """Raised when a meeting status change violates the transition rules."""

    def __init__(self, from_status: MeetingStatus, to_status: MeetingStatus) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition: {from_status.value} -> {to_status.value}"
        )


def validate_transition(from_status: MeetingStatus, to_status: MeetingStatus) -> None:
    """Validate a meeting status change.

    Args:
        from_status: Current meeting status.
        to_status: Target meeting status.

    Raises:
        InvalidTransitionError: If the change is not allowed.
    """
    if to_status not in VALID_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError(from_status, to_status)


def sources_for(to_status: MeetingStatus) -> frozenset[MeetingStatus]:
    """Statuses from which a meeting may move to ``to_status``."""
    return frozenset(s for s, allowed in VALID_TRANSITIONS.items() if to_status in allowed)


def require_recording_status(operation: str, current: RecordingStatus) -> None:
    """Raise InvalidStateError unless ``operation`` may run from ``current``."""
    if current not in RECORDING_SOURCES[operation]:
        raise InvalidStateError(
            f"Cannot {operation} recording while it is {current.value}"
        )
