"""Authorization checks for meeting operations."""

from __future__ import annotations

from src.livemeet.meetings import hosts
from src.livemeet.meetings.errors import ForbiddenError
from src.livemeet.meetings.schemas import Actor, Meeting, Participant, SystemRole

# Every authenticated role may create meetings.
CREATOR_ROLES = frozenset({SystemRole.ADMIN, SystemRole.TUTOR, SystemRole.MEMBER})


def is_admin(actor: Actor | None) -> bool:
    return actor is not None and actor.role == SystemRole.ADMIN


def can_manage(meeting: Meeting, actor: Actor | None) -> bool:
    """True if the actor is an admin or a resolved host of the meeting."""
    if actor is None:
        return False
    return is_admin(actor) or hosts.is_host(meeting, actor.id)


def require_host_or_admin(meeting: Meeting, actor: Actor | None) -> None:
    """Raise ForbiddenError unless the actor is an admin or a host."""
    if not can_manage(meeting, actor):
        raise ForbiddenError("Only the meeting host or an admin can do this")


def require_can_create(actor: Actor | None) -> None:
    if actor is None or actor.role not in CREATOR_ROLES:
        raise ForbiddenError("Not allowed to create meetings")


def require_admin(actor: Actor | None) -> None:
    if not is_admin(actor):
        raise ForbiddenError("Admin role required")


def require_self_or_manager(
    meeting: Meeting, participant: Participant, actor: Actor | None
) -> None:
    """Allow the participant's own user, a host, or an admin."""
    if actor is not None and participant.user_id and participant.user_id == actor.id:
        return
    require_host_or_admin(meeting, actor)
