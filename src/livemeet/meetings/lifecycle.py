"""MeetingLifecycleManager -- the entry point for every meeting operation.

Orchestrates the meeting state machine (SCHEDULED/CREATED -> LIVE -> ENDED,
SCHEDULED/CREATED -> CANCELED), participant admission and attendance via
ParticipantSessionTracker, host transfer, bans, invite codes, and the
recording facade over RecordingCoordinator.

Concurrency: no in-process locks. Every status change is a conditional
write keyed on the status observed at read time; losing a race re-reads the
meeting and reports the real state. participant_count counts ADMITTED
participants. Admissions claim a seat with a conditional increment keyed on
the meeting status and capacity; leaving decrements it, and ending resets
it to 0.

This class is the single logging boundary for best-effort side effects:
room preparation, room teardown, participant disconnects, and the results
the recording coordinator hands back.
"""

from __future__ import annotations

import math
import secrets
import string
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from src.livemeet.core.monitoring import (
    capture_events_total,
    meeting_transitions_total,
    side_effect_failures_total,
)
from src.livemeet.core.security import hash_passcode, verify_passcode
from src.livemeet.meetings import hosts, permissions
from src.livemeet.meetings.effects import best_effort, skipped
from src.livemeet.meetings.errors import (
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    InviteCodeConflictError,
    MeetingError,
    NotFoundError,
)
from src.livemeet.meetings.schemas import (
    Actor,
    AttendanceRecord,
    CaptureEvent,
    JoinResult,
    Meeting,
    MeetingCreate,
    MeetingFilter,
    MeetingPage,
    MeetingStats,
    MeetingStatus,
    MeetingUpdate,
    Participant,
    ParticipantRole,
    ParticipantStatus,
    RecordingInfo,
    RecordingOutcome,
    RecordingStats,
    SideEffectResult,
)
from src.livemeet.meetings.sessions import ParticipantSessionTracker, live_seconds, utcnow
from src.livemeet.meetings.transitions import (
    ACTIVE_RECORDING_STATUSES,
    CLOSED_STATUSES,
    OPEN_STATUSES,
    sources_for,
    validate_transition,
)

if TYPE_CHECKING:
    from src.livemeet.meetings.recording.capture_client import CaptureClient
    from src.livemeet.meetings.recording.coordinator import RecordingCoordinator
    from src.livemeet.meetings.repository import MeetingRepository

logger = structlog.get_logger(__name__)

INVITE_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_TRANSITION_ATTEMPTS = 5

TRANSFERABLE_STATUSES = frozenset({ParticipantStatus.APPROVED, ParticipantStatus.ADMITTED})


# ── Date Helpers ────────────────────────────────────────────────────────────


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string; naive values are taken as UTC.

    Returns:
        The parsed datetime, or None if the value is empty or unparseable.
    """
    if not value or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def round_minutes(start: datetime, end: datetime) -> int:
    """Elapsed minutes rounded half up, never negative."""
    seconds = max(0.0, (end - start).total_seconds())
    return int(math.floor(seconds / 60 + 0.5))


# ── Manager ─────────────────────────────────────────────────────────────────


class MeetingLifecycleManager:
    """Coordinates meeting lifecycle, participants, and recording.

    Args:
        repository: MeetingRepository for all persistence.
        recording: RecordingCoordinator for the recording sub-state machine.
        signaling: Optional capture/signaling client for room management.
        tracker: Session tracker; built from ``repository`` when omitted.
        invite_code_length: Length of generated invite codes.
        default_max_participants: Capacity for meetings created without one.
        room_max_participants: Capacity requested from the signaling service.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: MeetingRepository,
        recording: RecordingCoordinator,
        signaling: CaptureClient | None = None,
        *,
        tracker: ParticipantSessionTracker | None = None,
        invite_code_length: int = 8,
        default_max_participants: int = 100,
        room_max_participants: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._recording = recording
        self._signaling = signaling
        self._tracker = tracker or ParticipantSessionTracker(repository)
        self._invite_code_length = invite_code_length
        self._default_max_participants = default_max_participants
        self._room_max_participants = room_max_participants
        self._clock = clock

    # ── Internal helpers ─────────────────────────────────────────────────

    async def _load(self, meeting_id: str | uuid.UUID) -> Meeting:
        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        return meeting

    async def _load_managed(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        meeting = await self._load(meeting_id)
        permissions.require_host_or_admin(meeting, actor)
        return meeting

    async def _load_participant(self, participant_id: str | uuid.UUID) -> Participant:
        participant = await self._repository.get_participant(participant_id)
        if participant is None:
            raise NotFoundError(f"Participant not found: {participant_id}")
        return participant

    async def _raise_lost_race(self, meeting_id: uuid.UUID, target: MeetingStatus) -> None:
        """Re-read after a failed conditional write and raise the right error."""
        current = await self._load(meeting_id)
        validate_transition(current.status, target)
        raise InvalidStateError("Meeting was modified concurrently, try again")

    async def _guarded_update(self, meeting: Meeting, fields: dict[str, Any]) -> Meeting:
        """Write ``fields`` only if the meeting status is still the one observed."""
        updated = await self._repository.transition_status(
            meeting.id, {meeting.status}, meeting.status, fields
        )
        if updated is None:
            current = await self._load(meeting.id)
            raise InvalidStateError(
                f"Meeting status changed to {current.status.value}, try again"
            )
        return updated

    async def _generate_invite_code(self) -> str:
        """Generate-and-check until an unused code is found."""
        while True:
            code = "".join(
                secrets.choice(INVITE_CODE_ALPHABET)
                for _ in range(self._invite_code_length)
            )
            if not await self._repository.invite_code_exists(code):
                return code

    async def _room_call(
        self, name: str, factory: Callable[[CaptureClient], Awaitable[Any]], **detail: Any
    ) -> SideEffectResult:
        if self._signaling is None:
            return skipped(name, "signaling service not configured")
        return await best_effort(name, factory(self._signaling), **detail)

    def _log_side_effects(
        self, operation: str, meeting_id: Any, results: list[SideEffectResult]
    ) -> None:
        for result in results:
            if result.ok:
                logger.debug(
                    "side_effect.completed",
                    operation=operation,
                    meeting_id=str(meeting_id),
                    side_effect=result.name,
                    **result.detail,
                )
                continue
            side_effect_failures_total.labels(name=result.name).inc()
            logger.warning(
                "side_effect.failed",
                operation=operation,
                meeting_id=str(meeting_id),
                side_effect=result.name,
                error=result.error,
                **result.detail,
            )

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create(self, data: MeetingCreate, actor: Actor) -> Meeting:
        """Create a meeting hosted by ``actor``.

        An unparseable ``scheduled_for`` is ignored (the meeting is CREATED);
        a valid one makes the meeting SCHEDULED.
        """
        permissions.require_can_create(actor)
        title = data.title.strip()
        if not title:
            raise InvalidInputError("title cannot be blank")

        scheduled_for = parse_datetime(data.scheduled_for)
        if data.scheduled_for and scheduled_for is None:
            logger.warning(
                "meeting.schedule_ignored",
                host_id=actor.id,
                scheduled_for=data.scheduled_for,
            )
        status = MeetingStatus.SCHEDULED if scheduled_for else MeetingStatus.CREATED
        passcode_hash = hash_passcode(data.passcode) if data.passcode else None

        while True:
            code = await self._generate_invite_code()
            meeting = Meeting(
                title=title,
                notes=data.notes,
                status=status,
                original_host=actor.id,
                current_host=actor.id,
                invite_code=code,
                is_private=data.is_private,
                passcode_hash=passcode_hash,
                scheduled_for=scheduled_for,
                duration_min=data.duration_min,
                max_participants=data.max_participants or self._default_max_participants,
            )
            try:
                created = await self._repository.create_meeting(meeting)
            except InviteCodeConflictError:
                logger.info("meeting.invite_code_collision", invite_code=code)
                continue
            break

        meeting_transitions_total.labels(to_status=status.value).inc()
        logger.info(
            "meeting.created",
            meeting_id=str(created.id),
            host_id=actor.id,
            status=status.value,
        )
        return created

    async def get_meeting(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        """Fetch a meeting visible to the actor (admin, host, or participant)."""
        meeting = await self._load(meeting_id)
        if permissions.can_manage(meeting, actor):
            return meeting
        participant = await self._repository.get_participant_by_user(meeting.id, actor.id)
        if participant is None:
            raise ForbiddenError("You are not a participant of this meeting")
        return meeting

    async def list_meetings(self, filters: MeetingFilter, actor: Actor) -> MeetingPage:
        """List meetings; non-admins only see meetings they host or attend."""
        visible_to = None if permissions.is_admin(actor) else actor.id
        meetings, total = await self._repository.list_meetings(filters, visible_to)
        return MeetingPage(
            meetings=meetings,
            total=total,
            page=filters.page,
            limit=filters.limit,
            has_more=filters.page * filters.limit < total,
        )

    async def update(
        self, meeting_id: str | uuid.UUID, patch: MeetingUpdate, actor: Actor
    ) -> Meeting:
        """Apply a partial update to a meeting that has not started.

        Only fields explicitly present in ``patch`` are applied. All input
        is validated before anything is written.

        Raises:
            InvalidStateError: Meeting is LIVE, ENDED or CANCELED.
            InvalidInputError: ``scheduled_for`` is unparseable or in the past.
        """
        meeting = await self._load_managed(meeting_id, actor)
        if meeting.status == MeetingStatus.LIVE or meeting.status in CLOSED_STATUSES:
            raise InvalidStateError(
                f"Cannot update a meeting that is {meeting.status.value}"
            )

        provided = patch.model_fields_set
        fields: dict[str, Any] = {}
        for name in ("title", "notes", "is_private", "duration_min", "max_participants"):
            if name not in provided:
                continue
            value = getattr(patch, name)
            if value is None and name in ("title", "is_private", "max_participants"):
                raise InvalidInputError(f"{name} cannot be null")
            if name == "title":
                value = value.strip()
                if not value:
                    raise InvalidInputError("title cannot be blank")
            fields[name] = value

        if "passcode" in provided:
            fields["passcode_hash"] = hash_passcode(patch.passcode) if patch.passcode else None

        target_status = meeting.status
        if "scheduled_for" in provided:
            raw = patch.scheduled_for
            if raw is None or not raw.strip():
                fields["scheduled_for"] = None
                target_status = MeetingStatus.CREATED
            else:
                scheduled_for = parse_datetime(raw)
                if scheduled_for is None:
                    raise InvalidInputError(f"Invalid date: {raw}")
                if scheduled_for <= self._clock():
                    raise InvalidInputError("Scheduled time must be in the future")
                fields["scheduled_for"] = scheduled_for
                target_status = MeetingStatus.SCHEDULED

        if not fields:
            return meeting
        if target_status != meeting.status:
            validate_transition(meeting.status, target_status)

        updated = await self._repository.transition_status(
            meeting.id, {meeting.status}, target_status, fields
        )
        if updated is None:
            current = await self._load(meeting.id)
            raise InvalidStateError(
                f"Cannot update a meeting that is {current.status.value}"
            )
        if target_status != meeting.status:
            meeting_transitions_total.labels(to_status=target_status.value).inc()
        logger.info(
            "meeting.updated",
            meeting_id=str(meeting.id),
            fields=sorted(fields),
        )
        return updated

    async def start(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        """Go LIVE, admit the waiting room, and prepare the signaling room.

        Raises:
            InvalidStateError: Meeting is already LIVE, ENDED or CANCELED.
        """
        meeting = await self._load_managed(meeting_id, actor)
        validate_transition(meeting.status, MeetingStatus.LIVE)

        now = self._clock()
        updated = await self._repository.transition_status(
            meeting.id,
            sources_for(MeetingStatus.LIVE),
            MeetingStatus.LIVE,
            {"actual_start_at": now},
        )
        if updated is None:
            await self._raise_lost_race(meeting.id, MeetingStatus.LIVE)

        admitted = await self._tracker.admit_waiting(meeting.id, now)
        if admitted:
            await self._repository.increment_participant_count(meeting.id, admitted)

        room = await self._room_call(
            "signaling.create_room",
            lambda client: client.create_room(str(meeting.id), self._room_max_participants),
        )
        self._log_side_effects("meeting.start", meeting.id, [room])

        meeting_transitions_total.labels(to_status=MeetingStatus.LIVE.value).inc()
        logger.info(
            "meeting.started",
            meeting_id=str(meeting.id),
            started_by=actor.id,
            admitted=admitted,
        )
        return await self._load(meeting.id)

    async def end(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        """End the meeting and close every participant session.

        The conditional write is keyed on the status observed at read time;
        a lost race re-reads and retries, so a concurrent second ``end``
        fails with InvalidStateError.
        """
        meeting = await self._load_managed(meeting_id, actor)

        updated: Meeting | None = None
        now = self._clock()
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            validate_transition(meeting.status, MeetingStatus.ENDED)
            now = self._clock()
            fields: dict[str, Any] = {"ended_at": now, "participant_count": 0}
            if meeting.actual_start_at is not None:
                fields["duration_min"] = round_minutes(meeting.actual_start_at, now)
            updated = await self._repository.transition_status(
                meeting.id, {meeting.status}, MeetingStatus.ENDED, fields
            )
            if updated is not None:
                break
            meeting = await self._load(meeting.id)
        if updated is None:
            raise InvalidStateError("Meeting was modified concurrently, try again")

        closed = await self._tracker.close_all_for_meeting(updated.id, now)

        side_effects: list[SideEffectResult] = []
        if updated.recording_status in ACTIVE_RECORDING_STATUSES:
            side_effects.append(
                await best_effort("recording.stop", self._recording.stop(updated.id, actor))
            )
        side_effects.append(
            await self._room_call(
                "signaling.delete_room",
                lambda client: client.delete_room(str(updated.id)),
            )
        )
        self._log_side_effects("meeting.end", updated.id, side_effects)

        meeting_transitions_total.labels(to_status=MeetingStatus.ENDED.value).inc()
        logger.info(
            "meeting.ended",
            meeting_id=str(updated.id),
            ended_by=actor.id,
            duration_min=updated.duration_min,
            participants_closed=closed,
        )
        return await self._load(updated.id)

    async def cancel(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        """Cancel a meeting that has not started."""
        meeting = await self._load_managed(meeting_id, actor)
        validate_transition(meeting.status, MeetingStatus.CANCELED)

        updated = await self._repository.transition_status(
            meeting.id,
            sources_for(MeetingStatus.CANCELED),
            MeetingStatus.CANCELED,
            {"participant_count": 0},
        )
        if updated is None:
            await self._raise_lost_race(meeting.id, MeetingStatus.CANCELED)

        await self._tracker.close_all_for_meeting(meeting.id, self._clock())
        meeting_transitions_total.labels(to_status=MeetingStatus.CANCELED.value).inc()
        logger.info("meeting.canceled", meeting_id=str(meeting.id), canceled_by=actor.id)
        return await self._load(meeting.id)

    async def delete(self, meeting_id: str | uuid.UUID, actor: Actor) -> None:
        """Delete a meeting that is not LIVE, cascading to its participants."""
        meeting = await self._load_managed(meeting_id, actor)
        if meeting.status == MeetingStatus.LIVE:
            raise InvalidStateError("Cannot delete a live meeting, end it first")

        deleted = await self._repository.delete_meeting(
            meeting.id, blocked_statuses={MeetingStatus.LIVE}
        )
        if not deleted:
            await self._load(meeting.id)
            raise InvalidStateError("Cannot delete a live meeting, end it first")
        logger.info("meeting.deleted", meeting_id=str(meeting.id), deleted_by=actor.id)

    async def rotate_invite_code(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        """Replace the invite code; the previous code stops resolving."""
        meeting = await self._load_managed(meeting_id, actor)
        while True:
            code = await self._generate_invite_code()
            try:
                updated = await self._repository.update_meeting(
                    meeting.id, {"invite_code": code}
                )
            except InviteCodeConflictError:
                logger.info("meeting.invite_code_collision", invite_code=code)
                continue
            break
        if updated is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        logger.info("meeting.invite_code_rotated", meeting_id=str(meeting.id))
        return updated

    async def lock_room(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        return await self._set_locked(meeting_id, actor, True)

    async def unlock_room(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        return await self._set_locked(meeting_id, actor, False)

    async def _set_locked(
        self, meeting_id: str | uuid.UUID, actor: Actor, locked: bool
    ) -> Meeting:
        meeting = await self._load_managed(meeting_id, actor)
        if meeting.status in CLOSED_STATUSES:
            raise InvalidStateError(
                f"Cannot change the lock of a meeting that is {meeting.status.value}"
            )
        updated = await self._guarded_update(meeting, {"is_locked": locked})
        logger.info(
            "meeting.lock_changed",
            meeting_id=str(meeting.id),
            is_locked=locked,
            changed_by=actor.id,
        )
        return updated

    async def get_stats(self, actor: Actor) -> MeetingStats:
        """Dashboard totals; non-admins see only meetings they created."""
        scope = None if permissions.is_admin(actor) else actor.id
        return await self._repository.meeting_stats(original_host_id=scope)

    # ── Participants ─────────────────────────────────────────────────────

    def _check_admission(
        self, meeting: Meeting, actor: Actor | None, passcode: str | None
    ) -> None:
        if meeting.status in CLOSED_STATUSES:
            raise InvalidStateError(f"Meeting is {meeting.status.value}")
        # The lock applies to everyone, hosts included
        if meeting.is_locked:
            raise ForbiddenError("Meeting room is locked")
        if actor is not None and actor.id in meeting.banned_user_ids:
            raise ForbiddenError("You have been removed from this meeting")
        if (
            meeting.is_private
            and meeting.passcode_hash
            and not permissions.can_manage(meeting, actor)
            and not verify_passcode(passcode, meeting.passcode_hash)
        ):
            raise ForbiddenError("Invalid meeting passcode")

    async def join_by_code(
        self,
        code: str,
        passcode: str | None = None,
        actor: Actor | None = None,
        display_name: str | None = None,
    ) -> JoinResult:
        """Join a meeting through its invite code.

        Raises:
            NotFoundError: No meeting uses this code.
            InvalidStateError: Meeting is ENDED or CANCELED.
            ForbiddenError: Room locked, actor banned, or wrong passcode.
        """
        meeting = await self._repository.get_meeting_by_invite_code(code.strip().upper())
        if meeting is None:
            raise NotFoundError("No meeting found for this invite code")
        self._check_admission(meeting, actor, passcode)
        return await self._register(meeting, actor, display_name)

    async def join_meeting(
        self,
        meeting_id: str | uuid.UUID,
        actor: Actor | None = None,
        display_name: str | None = None,
        passcode: str | None = None,
    ) -> JoinResult:
        """Join a meeting by id, with the same admission rules as invite codes."""
        meeting = await self._load(meeting_id)
        self._check_admission(meeting, actor, passcode)
        return await self._register(meeting, actor, display_name)

    async def _register(
        self, meeting: Meeting, actor: Actor | None, display_name: str | None
    ) -> JoinResult:
        """Create or reuse the participant record and admit when appropriate.

        Hosts are admitted immediately; everyone else is admitted when the
        meeting is LIVE and waits otherwise.
        """
        user_id = actor.id if actor is not None else None
        name = (display_name or "").strip() or user_id
        if not name:
            raise InvalidInputError("display_name is required to join as a guest")

        is_host = hosts.is_host(meeting, user_id)
        admit_now = is_host or meeting.status == MeetingStatus.LIVE

        participant = (
            await self._repository.get_participant_by_user(meeting.id, user_id)
            if user_id
            else None
        )
        if participant is None:
            participant = await self._repository.create_participant(
                Participant(
                    meeting_id=meeting.id,
                    user_id=user_id,
                    display_name=name,
                    role=ParticipantRole.HOST if is_host else ParticipantRole.PARTICIPANT,
                    status=ParticipantStatus.WAITING,
                )
            )
        elif not admit_now:
            participant = await self._tracker.requeue(participant.id)

        if admit_now:
            participant = await self._admit(
                meeting.id,
                participant,
                statuses=OPEN_STATUSES if is_host else frozenset({MeetingStatus.LIVE}),
                enforce_capacity=not is_host,
            )

        logger.info(
            "participant.joined",
            meeting_id=str(meeting.id),
            participant_id=str(participant.id),
            user_id=user_id,
            status=participant.status.value,
            is_host=is_host,
        )
        return JoinResult(meeting=await self._load(meeting.id), participant=participant)

    async def _admit(
        self,
        meeting_id: uuid.UUID,
        participant: Participant,
        *,
        statuses: frozenset[MeetingStatus],
        enforce_capacity: bool,
        from_statuses: frozenset[ParticipantStatus] | None = None,
    ) -> Participant:
        """Admit a participant against a seat claimed on the meeting row.

        The seat claim is conditional on the meeting status (and capacity),
        so a meeting that closed or filled up since it was read rejects the
        admission. An admission that lands after the meeting ended is undone.

        Raises:
            InvalidStateError: The meeting is no longer open for admission.
            ForbiddenError: The meeting is full.
        """
        seat_claimed = False
        if participant.status != ParticipantStatus.ADMITTED:
            await self._claim_seat(meeting_id, statuses, enforce_capacity)
            seat_claimed = True

        try:
            participant, newly_admitted = await self._tracker.admit(
                participant.id, self._clock(), from_statuses=from_statuses
            )
        except MeetingError:
            if seat_claimed:
                await self._repository.increment_participant_count(meeting_id, -1)
            raise

        if newly_admitted and not seat_claimed:
            # Dropped out of ADMITTED between the read and the admit
            try:
                await self._claim_seat(meeting_id, statuses, enforce_capacity=False)
            except MeetingError:
                await self._tracker.mark_left(participant.id, self._clock())
                raise
        elif seat_claimed and not newly_admitted:
            await self._repository.increment_participant_count(meeting_id, -1)

        current = await self._load(meeting_id)
        if current.status in CLOSED_STATUSES:
            # Ending resets the count, so only the session needs closing
            await self._tracker.mark_left(participant.id, self._clock())
            raise InvalidStateError(f"Meeting is {current.status.value}")
        return participant

    async def _claim_seat(
        self,
        meeting_id: uuid.UUID,
        statuses: frozenset[MeetingStatus],
        enforce_capacity: bool,
    ) -> None:
        if await self._repository.claim_seat(
            meeting_id, statuses, enforce_capacity=enforce_capacity
        ):
            return
        current = await self._load(meeting_id)
        if current.status not in statuses:
            raise InvalidStateError(f"Meeting is {current.status.value}")
        raise ForbiddenError("Meeting is full")

    async def leave_meeting(
        self, participant_id: str | uuid.UUID, actor: Actor | None = None
    ) -> Participant:
        """Close the participant's session and mark it LEFT.

        Member records may be left by their own user, a host, or an admin.
        Guest records may be left by whoever holds the participant id.
        """
        participant = await self._load_participant(participant_id)
        meeting = await self._load(participant.meeting_id)
        if participant.user_id is not None:
            permissions.require_self_or_manager(meeting, participant, actor)

        participant, previous = await self._tracker.mark_left(participant.id, self._clock())
        if previous == ParticipantStatus.ADMITTED:
            await self._repository.increment_participant_count(meeting.id, -1)
        logger.info(
            "participant.left",
            meeting_id=str(meeting.id),
            participant_id=str(participant.id),
            total_duration_sec=participant.total_duration_sec,
        )
        return participant

    async def approve_participant(
        self, participant_id: str | uuid.UUID, actor: Actor
    ) -> Participant:
        """Admit a WAITING participant and open its session."""
        participant = await self._load_participant(participant_id)
        meeting = await self._load_managed(participant.meeting_id, actor)
        if meeting.status in CLOSED_STATUSES:
            raise InvalidStateError(f"Meeting is {meeting.status.value}")

        participant = await self._admit(
            meeting.id,
            participant,
            statuses=OPEN_STATUSES,
            enforce_capacity=True,
            from_statuses=frozenset({ParticipantStatus.WAITING}),
        )
        logger.info(
            "participant.approved",
            meeting_id=str(meeting.id),
            participant_id=str(participant.id),
            approved_by=actor.id,
        )
        return participant

    async def remove_participant(
        self, participant_id: str | uuid.UUID, actor: Actor
    ) -> Participant:
        """Ban the participant's user, close its session, and delete the record.

        Returns:
            The participant as it was when removed.
        """
        participant = await self._load_participant(participant_id)
        meeting = await self._load_managed(participant.meeting_id, actor)
        if participant.user_id and hosts.is_host(meeting, participant.user_id):
            raise InvalidStateError("The meeting host cannot be removed")

        if participant.user_id:
            await self._repository.add_banned_user(meeting.id, participant.user_id)

        participant, previous = await self._tracker.mark_left(participant.id, self._clock())
        await self._repository.delete_participant(participant.id)
        if previous == ParticipantStatus.ADMITTED:
            await self._repository.increment_participant_count(meeting.id, -1)

        identity = participant.user_id or str(participant.id)
        disconnect = await self._room_call(
            "signaling.remove_participant",
            lambda client: client.remove_participant(str(meeting.id), identity),
            identity=identity,
        )
        self._log_side_effects("participant.remove", meeting.id, [disconnect])

        logger.info(
            "participant.removed",
            meeting_id=str(meeting.id),
            participant_id=str(participant.id),
            user_id=participant.user_id,
            removed_by=actor.id,
        )
        return participant

    async def unban_user(
        self, meeting_id: str | uuid.UUID, user_id: str, actor: Actor
    ) -> Meeting:
        meeting = await self._load_managed(meeting_id, actor)
        updated = await self._repository.remove_banned_user(meeting.id, user_id)
        if updated is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        logger.info(
            "participant.unbanned",
            meeting_id=str(meeting.id),
            user_id=user_id,
            unbanned_by=actor.id,
        )
        return updated

    async def transfer_host(
        self,
        meeting_id: str | uuid.UUID,
        participant_id: str | uuid.UUID,
        actor: Actor,
    ) -> Meeting:
        """Make another admitted member the current host.

        The original host never changes. The previous HOST participant is
        demoted to PARTICIPANT and the target promoted to HOST.
        """
        meeting = await self._load_managed(meeting_id, actor)
        if meeting.status in CLOSED_STATUSES:
            raise InvalidStateError(f"Meeting is {meeting.status.value}")

        target = await self._load_participant(participant_id)
        if target.meeting_id != meeting.id:
            raise NotFoundError(f"Participant not found: {participant_id}")
        if target.status not in TRANSFERABLE_STATUSES or not target.user_id:
            raise InvalidStateError(
                "Host can only be transferred to an admitted, signed-in participant"
            )

        identity = hosts.identity(meeting)
        if target.user_id == identity.current_host_id:
            return meeting

        updated = await self._guarded_update(meeting, {"current_host_id": target.user_id})

        for participant in await self._repository.list_participants(meeting.id):
            if participant.role == ParticipantRole.HOST and participant.id != target.id:
                await self._tracker.set_role(participant.id, ParticipantRole.PARTICIPANT)
        await self._tracker.set_role(target.id, ParticipantRole.HOST)

        logger.info(
            "meeting.host_transferred",
            meeting_id=str(meeting.id),
            from_host=identity.current_host_id,
            to_host=target.user_id,
            transferred_by=actor.id,
        )
        return updated

    async def get_attendance(
        self, meeting_id: str | uuid.UUID, actor: Actor
    ) -> list[AttendanceRecord]:
        """Per-participant sessions, closed totals, and open-session seconds."""
        meeting = await self._load_managed(meeting_id, actor)
        now = self._clock()
        return [
            AttendanceRecord(
                participant_id=p.id,
                user_id=p.user_id,
                display_name=p.display_name,
                status=p.status,
                sessions=p.sessions,
                total_duration_sec=p.total_duration_sec,
                live_duration_sec=live_seconds(p, now),
            )
            for p in await self._repository.list_participants(meeting.id)
        ]

    # ── Recording ────────────────────────────────────────────────────────

    async def _run_recording(
        self, operation: str, meeting_id: Any, call: Awaitable[RecordingOutcome]
    ) -> RecordingOutcome:
        try:
            outcome = await call
        except MeetingError as exc:
            self._log_side_effects(operation, meeting_id, exc.side_effects)
            raise
        self._log_side_effects(operation, meeting_id, outcome.side_effects)
        if outcome.info is not None:
            logger.info(
                operation,
                meeting_id=str(meeting_id),
                recording_status=outcome.info.recording_status.value,
                recording_duration_sec=outcome.info.recording_duration_sec,
            )
        return outcome

    async def start_recording(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        return await self._run_recording(
            "recording.started", meeting_id, self._recording.start(meeting_id, actor)
        )

    async def pause_recording(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        return await self._run_recording(
            "recording.paused", meeting_id, self._recording.pause(meeting_id, actor)
        )

    async def resume_recording(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        return await self._run_recording(
            "recording.resumed", meeting_id, self._recording.resume(meeting_id, actor)
        )

    async def stop_recording(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        return await self._run_recording(
            "recording.stopped", meeting_id, self._recording.stop(meeting_id, actor)
        )

    async def get_recording_info(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingInfo:
        return await self._recording.get_info(meeting_id, actor)

    async def get_recording_stats(self, actor: Actor) -> RecordingStats:
        return await self._recording.get_stats(actor)

    async def delete_recording_media(
        self, meeting_id: str | uuid.UUID, actor: Actor
    ) -> RecordingOutcome:
        return await self._run_recording(
            "recording.media_deleted", meeting_id, self._recording.delete_media(meeting_id, actor)
        )

    async def handle_capture_event(self, event: CaptureEvent) -> RecordingOutcome:
        """Apply a capture-service callback (idempotent, replayable)."""
        outcome = await self._recording.on_capture_event(event)
        capture_events_total.labels(
            status=event.status.value, applied=str(outcome.applied).lower()
        ).inc()
        meeting_id = outcome.info.meeting_id if outcome.info else None
        self._log_side_effects("recording.capture_event", meeting_id, outcome.side_effects)
        if outcome.applied:
            logger.info(
                "recording.capture_event_applied",
                capture_id=event.capture_id,
                meeting_id=str(meeting_id),
                capture_status=event.status.value,
                recording_status=outcome.info.recording_status.value,
            )
        else:
            logger.info(
                "recording.capture_event_ignored",
                capture_id=event.capture_id,
                capture_status=event.status.value,
                known_capture=meeting_id is not None,
            )
        return outcome
