"""Host identity resolution.

Pure functions over a Meeting value. Host fields arrive either as bare ids
or as expanded member entities; the Meeting schema folds both into the
HostRef tagged union at construction, so nothing here inspects raw shapes.
"""

from __future__ import annotations

from src.livemeet.meetings.schemas import HostIdentity, HostRef, Meeting


def host_id(ref: HostRef | None) -> str | None:
    """Plain id of a host reference."""
    return ref.id if ref is not None else None


def identity(meeting: Meeting) -> HostIdentity:
    """Resolve the dual host identity, backfilling current from original."""
    original = meeting.original_host.id
    current = host_id(meeting.current_host) or original
    return HostIdentity(original_host_id=original, current_host_id=current)


def normalize(meeting: Meeting) -> Meeting:
    """Return the meeting with ``current_host`` defined.

    Legacy rows without a current host read as hosted by the original host.
    No write is performed.
    """
    if meeting.current_host is not None:
        return meeting
    return meeting.model_copy(update={"current_host": meeting.original_host})


def is_host(meeting: Meeting, actor_id: str | None) -> bool:
    """True if ``actor_id`` is the original or the current host."""
    if not actor_id:
        return False
    return identity(meeting).contains(str(actor_id))
