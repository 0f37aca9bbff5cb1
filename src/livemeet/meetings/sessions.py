"""Participant attendance session tracking.

A participant accumulates one session per contiguous join-to-leave interval.
At most one session is open at a time and ``total_duration_sec`` always
equals the sum of closed session durations.

Every mutation is read-modify-write on a participant copy followed by a
version-checked save; on a version conflict the participant is re-read and
the mutation re-applied, so concurrent open/close calls never produce two
open sessions.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from src.livemeet.meetings.errors import InvalidStateError, NotFoundError
from src.livemeet.meetings.repository import MeetingRepository
from src.livemeet.meetings.schemas import (
    ACTIVE_PARTICIPANT_STATUSES,
    AttendanceSession,
    Participant,
    ParticipantRole,
    ParticipantStatus,
)

logger = structlog.get_logger(__name__)

MAX_SAVE_ATTEMPTS = 5


# ── Pure Session Operations ─────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds between two instants, clamped at zero."""
    return max(0, math.floor((end - start).total_seconds()))


def apply_open(participant: Participant, at: datetime) -> bool:
    """Append an open session unless one is already open.

    Returns:
        True if the participant was modified.
    """
    if participant.open_session is not None:
        return False
    participant.sessions.append(AttendanceSession(joined_at=at))
    return True


def apply_close(participant: Participant, at: datetime) -> bool:
    """Close the open session, if any, and add its duration to the total.

    Returns:
        True if the participant was modified.
    """
    session = participant.open_session
    if session is None:
        return False
    session.left_at = at
    session.duration_sec = elapsed_seconds(session.joined_at, at)
    participant.total_duration_sec += session.duration_sec
    return True


def live_seconds(participant: Participant, now: datetime) -> int:
    """Seconds accrued by the currently open session."""
    session = participant.open_session
    return elapsed_seconds(session.joined_at, now) if session is not None else 0


# ── Tracker ─────────────────────────────────────────────────────────────────


class ParticipantSessionTracker:
    """Persists session bookkeeping through version-checked saves.

    Args:
        repository: MeetingRepository (or a test double with the same API).
    """

    def __init__(self, repository: MeetingRepository) -> None:
        self._repository = repository

    async def _mutate(
        self,
        participant_id: str | uuid.UUID,
        change: Callable[[Participant], bool],
        participant: Participant | None = None,
    ) -> tuple[Participant, bool]:
        """Apply ``change`` to the participant and save it conditionally.

        Returns:
            (participant as stored, whether ``change`` modified it)
        """
        for attempt in range(MAX_SAVE_ATTEMPTS):
            current = participant if attempt == 0 and participant else None
            if current is None:
                current = await self._repository.get_participant(participant_id)
            if current is None:
                raise NotFoundError(f"Participant not found: {participant_id}")

            working = current.model_copy(deep=True)
            if not change(working):
                return current, False

            saved = await self._repository.save_participant(working, current.version)
            if saved is not None:
                return saved, True

        logger.warning(
            "participant.save_contention",
            participant_id=str(participant_id),
            attempts=MAX_SAVE_ATTEMPTS,
        )
        raise InvalidStateError("Participant was modified concurrently, try again")

    async def open_session(
        self, participant_id: str | uuid.UUID, at: datetime
    ) -> Participant:
        """Open a session; no-op when one is already open."""
        participant, _ = await self._mutate(participant_id, lambda p: apply_open(p, at))
        return participant

    async def close_session(
        self, participant_id: str | uuid.UUID, at: datetime
    ) -> Participant:
        """Close the open session; no-op when none is open."""
        participant, _ = await self._mutate(
            participant_id, lambda p: apply_close(p, at)
        )
        return participant

    async def admit(
        self,
        participant_id: str | uuid.UUID,
        at: datetime,
        from_statuses: frozenset[ParticipantStatus] | None = None,
    ) -> tuple[Participant, bool]:
        """Mark ADMITTED and open a session.

        Args:
            participant_id: Participant to admit.
            at: Session start time.
            from_statuses: When given, the participant must currently hold
                one of these statuses.

        Returns:
            (participant, True if it was not ADMITTED before)

        Raises:
            InvalidStateError: If the participant's status is not allowed.
        """
        newly_admitted = False

        def change(p: Participant) -> bool:
            nonlocal newly_admitted
            if from_statuses is not None and p.status not in from_statuses:
                raise InvalidStateError(
                    f"Participant is {p.status.value}, cannot be admitted"
                )
            newly_admitted = p.status != ParticipantStatus.ADMITTED
            p.status = ParticipantStatus.ADMITTED
            opened = apply_open(p, at)
            return newly_admitted or opened

        participant, _ = await self._mutate(participant_id, change)
        return participant, newly_admitted

    async def requeue(self, participant_id: str | uuid.UUID) -> Participant:
        """Put a participant that left back into the waiting room."""

        def change(p: Participant) -> bool:
            if p.status != ParticipantStatus.LEFT:
                return False
            p.status = ParticipantStatus.WAITING
            return True

        participant, _ = await self._mutate(participant_id, change)
        return participant

    async def set_role(
        self, participant_id: str | uuid.UUID, role: ParticipantRole
    ) -> Participant:
        def change(p: Participant) -> bool:
            if p.role == role:
                return False
            p.role = role
            return True

        participant, _ = await self._mutate(participant_id, change)
        return participant

    async def mark_left(
        self, participant_id: str | uuid.UUID, at: datetime
    ) -> tuple[Participant, ParticipantStatus]:
        """Close the open session and mark LEFT.

        Returns:
            (participant, status before the change)
        """
        previous = ParticipantStatus.LEFT

        def change(p: Participant) -> bool:
            nonlocal previous
            previous = p.status
            closed = apply_close(p, at)
            if p.status == ParticipantStatus.LEFT:
                return closed
            p.status = ParticipantStatus.LEFT
            return True

        participant, _ = await self._mutate(participant_id, change)
        return participant, previous

    async def admit_waiting(self, meeting_id: str | uuid.UUID, at: datetime) -> int:
        """Admit every WAITING participant of a meeting.

        Returns:
            Number of participants that became ADMITTED.
        """
        waiting = await self._repository.list_participants(
            meeting_id, statuses=[ParticipantStatus.WAITING]
        )
        admitted = 0
        for participant in waiting:

            def change(p: Participant) -> bool:
                if p.status != ParticipantStatus.WAITING:
                    return False
                p.status = ParticipantStatus.ADMITTED
                apply_open(p, at)
                return True

            try:
                _, changed = await self._mutate(participant.id, change, participant)
            except NotFoundError:
                continue  # removed concurrently
            if changed:
                admitted += 1
        return admitted

    async def close_all_for_meeting(
        self, meeting_id: str | uuid.UUID, at: datetime
    ) -> int:
        """Close every open session and mark all active participants LEFT.

        Safe for participants that never had a session.

        Returns:
            Number of participants modified.
        """
        participants = await self._repository.list_participants(meeting_id)
        closed = 0
        for participant in participants:

            def change(p: Participant) -> bool:
                modified = apply_close(p, at)
                if p.status in ACTIVE_PARTICIPANT_STATUSES:
                    p.status = ParticipantStatus.LEFT
                    modified = True
                return modified

            try:
                _, changed = await self._mutate(participant.id, change, participant)
            except NotFoundError:
                continue  # removed concurrently
            if changed:
                closed += 1
        return closed
