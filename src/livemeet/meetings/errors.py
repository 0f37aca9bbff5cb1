"""Exception hierarchy for meeting operations.

Every caller-facing failure is a MeetingError subclass so the transport
layer can map them with a single handler. InviteCodeConflictError is
internal: the lifecycle manager absorbs it and retries with a new code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.livemeet.meetings.schemas import SideEffectResult


class MeetingError(Exception):
    """Base class for meeting domain errors.

    ``side_effects`` carries best-effort calls already attempted before the
    failure, so the lifecycle manager can log them before re-raising.
    """

    def __init__(
        self, message: str = "", side_effects: list[SideEffectResult] | None = None
    ) -> None:
        super().__init__(message)
        self.side_effects = side_effects or []


class NotFoundError(MeetingError):
    """Meeting or participant is absent, or its id is malformed."""


class ForbiddenError(MeetingError):
    """Caller is neither an admin nor a resolved host (or is otherwise barred)."""


class InvalidStateError(MeetingError):
    """Operation is illegal for the current meeting or recording status."""


class InvalidInputError(MeetingError):
    """Input failed validation (unparseable or past dates, etc.)."""


class ExternalServiceError(MeetingError):
    """The capture service failed during recording start or stop."""


class InviteCodeConflictError(Exception):
    """Raised by the repository when an invite code is already taken."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Invite code already in use: {code}")
