"""Meeting repository -- async persistence for meetings and participants.

Provides MeetingRepository with the session_factory callable pattern.
Handles serialization between Pydantic schemas and SQLAlchemy models.

Every status change is a single conditional UPDATE keyed on the statuses it
may legally come from; callers learn whether they won the race from the
return value (None means no row matched). Participant counts use in-place
``count = count + n`` updates, ban-list edits run under SELECT ... FOR
UPDATE, and participant session writes are guarded by a version column.

Malformed ids are treated as missing rows.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.livemeet.meetings import hosts
from src.livemeet.meetings.errors import InviteCodeConflictError
from src.livemeet.meetings.models import MeetingModel, ParticipantModel
from src.livemeet.meetings.schemas import (
    AttendanceSession,
    MediaState,
    Meeting,
    MeetingFilter,
    MeetingStats,
    MeetingStatus,
    Participant,
    ParticipantRole,
    ParticipantStatus,
    RecordingStats,
    RecordingStatus,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _parse_id(value: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return None


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert schema-level values (enums) to column values."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


def _model_to_meeting(model: MeetingModel) -> Meeting:
    """Convert MeetingModel to Meeting schema with the host identity resolved."""
    meeting = Meeting(
        id=model.id,
        title=model.title,
        notes=model.notes,
        status=MeetingStatus(model.status),
        original_host=model.original_host_id,
        current_host=model.current_host_id,
        invite_code=model.invite_code,
        is_private=bool(model.is_private),
        passcode_hash=model.passcode_hash,
        is_locked=bool(model.is_locked),
        scheduled_for=model.scheduled_for,
        actual_start_at=model.actual_start_at,
        ended_at=model.ended_at,
        duration_min=model.duration_min,
        max_participants=model.max_participants,
        participant_count=model.participant_count or 0,
        banned_user_ids=list(model.banned_user_ids or []),
        is_recording=bool(model.is_recording),
        recording_id=model.recording_id,
        capture_id=model.capture_id,
        recording_status=RecordingStatus(model.recording_status),
        recording_started_at=model.recording_started_at,
        recording_paused_at=model.recording_paused_at,
        recording_resumed_at=model.recording_resumed_at,
        recording_ended_at=model.recording_ended_at,
        recording_duration_sec=model.recording_duration_sec or 0,
        recording_url=model.recording_url,
        recording_file_size=model.recording_file_size,
        recording_failure_reason=model.recording_failure_reason,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )
    return hosts.normalize(meeting)


def _model_to_participant(model: ParticipantModel) -> Participant:
    """Convert ParticipantModel to Participant schema."""
    return Participant(
        id=model.id,
        meeting_id=model.meeting_id,
        user_id=model.user_id,
        display_name=model.display_name,
        role=ParticipantRole(model.role),
        mic_state=MediaState(model.mic_state),
        camera_state=MediaState(model.camera_state),
        status=ParticipantStatus(model.status),
        sessions=[
            AttendanceSession.model_validate(s) for s in (model.sessions_data or [])
        ],
        total_duration_sec=model.total_duration_sec or 0,
        version=model.version or 0,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class MeetingRepository:
    """Async persistence for meetings and their participants.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create_meeting(self, meeting: Meeting) -> Meeting:
        """Insert a new meeting.

        Raises:
            InviteCodeConflictError: If the invite code is already taken.
        """
        async for session in self._session_factory():
            model = MeetingModel(
                id=meeting.id,
                title=meeting.title,
                notes=meeting.notes,
                status=meeting.status.value,
                original_host_id=meeting.original_host.id,
                current_host_id=hosts.host_id(meeting.current_host),
                invite_code=meeting.invite_code,
                is_private=meeting.is_private,
                passcode_hash=meeting.passcode_hash,
                is_locked=meeting.is_locked,
                scheduled_for=meeting.scheduled_for,
                duration_min=meeting.duration_min,
                max_participants=meeting.max_participants,
                participant_count=0,
                banned_user_ids=[],
                recording_status=RecordingStatus.NONE.value,
                recording_duration_sec=0,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InviteCodeConflictError(meeting.invite_code) from exc
            await session.refresh(model)
            return _model_to_meeting(model)

    async def get_meeting(self, meeting_id: str | uuid.UUID) -> Meeting | None:
        """Get a meeting by id; malformed ids return None."""
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingModel).where(MeetingModel.id == parsed)
            )
            model = result.scalar_one_or_none()
            return _model_to_meeting(model) if model is not None else None

    async def get_meeting_by_invite_code(self, code: str) -> Meeting | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingModel).where(MeetingModel.invite_code == code)
            )
            model = result.scalar_one_or_none()
            return _model_to_meeting(model) if model is not None else None

    async def get_meeting_by_capture_id(self, capture_id: str) -> Meeting | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingModel).where(MeetingModel.capture_id == capture_id)
            )
            model = result.scalars().first()
            return _model_to_meeting(model) if model is not None else None

    async def invite_code_exists(self, code: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                select(func.count()).select_from(MeetingModel).where(
                    MeetingModel.invite_code == code
                )
            )
            return (result.scalar_one() or 0) > 0

    async def update_meeting(
        self, meeting_id: str | uuid.UUID, fields: dict[str, Any]
    ) -> Meeting | None:
        """Apply a plain field update.

        Raises:
            InviteCodeConflictError: If ``invite_code`` is set to a taken code.
        """
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            stmt = (
                update(MeetingModel)
                .where(MeetingModel.id == parsed)
                .values(updated_at=datetime.now(timezone.utc), **_column_values(fields))
            )
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InviteCodeConflictError(str(fields.get("invite_code"))) from exc
            if result.rowcount == 0:
                return None
        return await self.get_meeting(parsed)

    async def transition_status(
        self,
        meeting_id: str | uuid.UUID,
        from_statuses: Iterable[MeetingStatus],
        to_status: MeetingStatus,
        fields: dict[str, Any] | None = None,
    ) -> Meeting | None:
        """Compare-and-transition the meeting status.

        The update only applies if the stored status is one of
        ``from_statuses``. Returns the updated meeting, or None when no row
        matched (missing meeting or lost race).
        """
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return None
        allowed = [s.value for s in from_statuses]
        values = {"status": to_status.value, **_column_values(fields or {})}
        async for session in self._session_factory():
            stmt = (
                update(MeetingModel)
                .where(MeetingModel.id == parsed, MeetingModel.status.in_(allowed))
                .values(updated_at=datetime.now(timezone.utc), **values)
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.get_meeting(parsed)

    async def transition_recording(
        self,
        meeting_id: str | uuid.UUID,
        from_statuses: Iterable[RecordingStatus],
        fields: dict[str, Any],
        *,
        expect: dict[str, Any] | None = None,
        exclude_meeting_statuses: Iterable[MeetingStatus] = (),
    ) -> Meeting | None:
        """Compare-and-transition the recording sub-state.

        Args:
            meeting_id: Meeting id.
            from_statuses: Recording statuses the row must currently have.
            fields: Column values to write (must include recording_status).
            expect: Extra column equality guards (e.g. recording_id).
            exclude_meeting_statuses: Meeting statuses that block the write.

        Returns:
            The updated meeting, or None if the guard did not match.
        """
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return None
        conditions = [
            MeetingModel.id == parsed,
            MeetingModel.recording_status.in_([s.value for s in from_statuses]),
        ]
        for column, value in _column_values(expect or {}).items():
            attr = getattr(MeetingModel, column)
            conditions.append(attr.is_(None) if value is None else attr == value)
        blocked = [s.value for s in exclude_meeting_statuses]
        if blocked:
            conditions.append(MeetingModel.status.not_in(blocked))

        async for session in self._session_factory():
            stmt = (
                update(MeetingModel)
                .where(*conditions)
                .values(updated_at=datetime.now(timezone.utc), **_column_values(fields))
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.get_meeting(parsed)

    async def increment_participant_count(
        self, meeting_id: str | uuid.UUID, delta: int
    ) -> None:
        """Atomically add ``delta`` to participant_count, never below zero."""
        parsed = _parse_id(meeting_id)
        if parsed is None or delta == 0:
            return
        async for session in self._session_factory():
            await session.execute(
                update(MeetingModel)
                .where(MeetingModel.id == parsed)
                .values(
                    participant_count=func.greatest(
                        MeetingModel.participant_count + delta, 0
                    )
                )
            )
            await session.commit()

    async def claim_seat(
        self,
        meeting_id: str | uuid.UUID,
        statuses: Iterable[MeetingStatus],
        *,
        enforce_capacity: bool = True,
    ) -> bool:
        """Atomically add one to participant_count for an admission.

        The increment only applies while the meeting status is one of
        ``statuses`` and, when ``enforce_capacity`` is set, while the count
        is below ``max_participants``.

        Returns:
            True if a seat was claimed, False when no row matched.
        """
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return False
        conditions = [
            MeetingModel.id == parsed,
            MeetingModel.status.in_([s.value for s in statuses]),
        ]
        if enforce_capacity:
            conditions.append(
                MeetingModel.participant_count < MeetingModel.max_participants
            )
        claimed = False
        async for session in self._session_factory():
            result = await session.execute(
                update(MeetingModel)
                .where(*conditions)
                .values(participant_count=MeetingModel.participant_count + 1)
            )
            await session.commit()
            claimed = result.rowcount > 0
        return claimed

    async def add_banned_user(
        self, meeting_id: str | uuid.UUID, user_id: str
    ) -> Meeting | None:
        """Add a user id to the meeting's ban list under a row lock."""
        return await self._edit_ban_list(meeting_id, user_id, add=True)

    async def remove_banned_user(
        self, meeting_id: str | uuid.UUID, user_id: str
    ) -> Meeting | None:
        """Remove a user id from the meeting's ban list under a row lock."""
        return await self._edit_ban_list(meeting_id, user_id, add=False)

    async def _edit_ban_list(
        self, meeting_id: str | uuid.UUID, user_id: str, *, add: bool
    ) -> Meeting | None:
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(MeetingModel).where(MeetingModel.id == parsed).with_for_update()
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            banned = list(model.banned_user_ids or [])
            if add and user_id not in banned:
                banned.append(user_id)
            elif not add and user_id in banned:
                banned.remove(user_id)
            model.banned_user_ids = banned
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_meeting(model)

    async def delete_meeting(
        self,
        meeting_id: str | uuid.UUID,
        blocked_statuses: Iterable[MeetingStatus] = (),
    ) -> bool:
        """Delete a meeting and its participants in one transaction.

        Nothing is deleted if the meeting's status is in ``blocked_statuses``.
        """
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return False
        blocked = [s.value for s in blocked_statuses]
        async for session in self._session_factory():
            stmt = delete(MeetingModel).where(MeetingModel.id == parsed)
            if blocked:
                stmt = stmt.where(MeetingModel.status.not_in(blocked))
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                return False
            await session.execute(
                delete(ParticipantModel).where(ParticipantModel.meeting_id == parsed)
            )
            await session.commit()
            return True

    async def list_meetings(
        self, filters: MeetingFilter, visible_to: str | None = None
    ) -> tuple[list[Meeting], int]:
        """List meetings matching ``filters`` with offset pagination.

        Args:
            filters: Status / search / host filters and page settings.
            visible_to: When set, restrict to meetings this user hosts
                (original or current) or participates in (non-LEFT).

        Returns:
            Tuple of (page of meetings, total matching count).
        """
        conditions = []
        if visible_to is not None:
            participating = select(ParticipantModel.meeting_id).where(
                ParticipantModel.user_id == visible_to,
                ParticipantModel.status != ParticipantStatus.LEFT.value,
            )
            conditions.append(
                or_(
                    MeetingModel.original_host_id == visible_to,
                    MeetingModel.current_host_id == visible_to,
                    MeetingModel.id.in_(participating),
                )
            )
        if filters.status is not None:
            conditions.append(MeetingModel.status == filters.status.value)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            conditions.append(
                or_(MeetingModel.title.ilike(pattern), MeetingModel.notes.ilike(pattern))
            )
        if filters.host_id:
            conditions.append(
                or_(
                    MeetingModel.original_host_id == filters.host_id,
                    MeetingModel.current_host_id == filters.host_id,
                )
            )

        async for session in self._session_factory():
            total_result = await session.execute(
                select(func.count()).select_from(MeetingModel).where(*conditions)
            )
            total = total_result.scalar_one() or 0
            stmt = (
                select(MeetingModel)
                .where(*conditions)
                .order_by(MeetingModel.created_at.desc())
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            result = await session.execute(stmt)
            return [_model_to_meeting(m) for m in result.scalars().all()], total

    async def meeting_stats(self, original_host_id: str | None = None) -> MeetingStats:
        """Aggregate counters, optionally scoped to one original host."""
        scope = []
        if original_host_id is not None:
            scope.append(MeetingModel.original_host_id == original_host_id)

        async for session in self._session_factory():
            by_status = await session.execute(
                select(MeetingModel.status, func.count())
                .where(*scope)
                .group_by(MeetingModel.status)
            )
            counts = {status: count for status, count in by_status.all()}

            avg_result = await session.execute(
                select(func.avg(MeetingModel.duration_min)).where(
                    *scope,
                    MeetingModel.status == MeetingStatus.ENDED.value,
                    MeetingModel.duration_min.is_not(None),
                )
            )
            avg_duration = avg_result.scalar_one_or_none()

            participants_result = await session.execute(
                select(func.count(ParticipantModel.id)).where(
                    ParticipantModel.meeting_id.in_(
                        select(MeetingModel.id).where(*scope)
                    )
                )
            )

            return MeetingStats(
                total_meetings=sum(counts.values()),
                live_meetings=counts.get(MeetingStatus.LIVE.value, 0),
                scheduled_meetings=counts.get(MeetingStatus.SCHEDULED.value, 0),
                ended_meetings=counts.get(MeetingStatus.ENDED.value, 0),
                canceled_meetings=counts.get(MeetingStatus.CANCELED.value, 0),
                total_participants=participants_result.scalar_one() or 0,
                average_duration_min=round(float(avg_duration or 0), 1),
            )

    async def recording_stats(self, original_host_id: str | None = None) -> RecordingStats:
        """Aggregate recording counters, optionally scoped to one original host."""
        scope = [MeetingModel.recording_status != RecordingStatus.NONE.value]
        if original_host_id is not None:
            scope.append(MeetingModel.original_host_id == original_host_id)

        async for session in self._session_factory():
            by_status = await session.execute(
                select(MeetingModel.recording_status, func.count())
                .where(*scope)
                .group_by(MeetingModel.recording_status)
            )
            counts = {status: count for status, count in by_status.all()}

            totals = await session.execute(
                select(
                    func.coalesce(func.sum(MeetingModel.recording_duration_sec), 0),
                    func.count(),
                ).where(*scope, MeetingModel.recording_status == RecordingStatus.STOPPED.value)
            )
            total_sec, stopped = totals.one()

            return RecordingStats(
                total_recordings=sum(counts.values()),
                active_recordings=counts.get(RecordingStatus.RECORDING.value, 0),
                paused_recordings=counts.get(RecordingStatus.PAUSED.value, 0),
                failed_recordings=counts.get(RecordingStatus.FAILED.value, 0),
                total_recording_sec=int(total_sec or 0),
                average_recording_sec=int(total_sec // stopped) if stopped else 0,
            )

    # ── Participants ─────────────────────────────────────────────────────

    async def create_participant(self, participant: Participant) -> Participant:
        async for session in self._session_factory():
            model = ParticipantModel(
                id=participant.id,
                meeting_id=participant.meeting_id,
                user_id=participant.user_id,
                display_name=participant.display_name,
                role=participant.role.value,
                mic_state=participant.mic_state.value,
                camera_state=participant.camera_state.value,
                status=participant.status.value,
                sessions_data=[s.model_dump(mode="json") for s in participant.sessions],
                total_duration_sec=participant.total_duration_sec,
                version=0,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_participant(model)

    async def get_participant(
        self, participant_id: str | uuid.UUID
    ) -> Participant | None:
        parsed = _parse_id(participant_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(ParticipantModel).where(ParticipantModel.id == parsed)
            )
            model = result.scalar_one_or_none()
            return _model_to_participant(model) if model is not None else None

    async def get_participant_by_user(
        self, meeting_id: str | uuid.UUID, user_id: str
    ) -> Participant | None:
        """Most recent participant record of a user in a meeting."""
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(ParticipantModel)
                .where(
                    ParticipantModel.meeting_id == parsed,
                    ParticipantModel.user_id == user_id,
                )
                .order_by(ParticipantModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_participant(model) if model is not None else None

    async def list_participants(
        self,
        meeting_id: str | uuid.UUID,
        statuses: Iterable[ParticipantStatus] | None = None,
    ) -> list[Participant]:
        parsed = _parse_id(meeting_id)
        if parsed is None:
            return []
        stmt = select(ParticipantModel).where(ParticipantModel.meeting_id == parsed)
        if statuses is not None:
            stmt = stmt.where(ParticipantModel.status.in_([s.value for s in statuses]))
        async for session in self._session_factory():
            result = await session.execute(stmt.order_by(ParticipantModel.created_at))
            return [_model_to_participant(m) for m in result.scalars().all()]

    async def save_participant(
        self, participant: Participant, expected_version: int
    ) -> Participant | None:
        """Write a participant only if its stored version is unchanged.

        Returns:
            The saved participant with the bumped version, or None if another
            writer got there first.
        """
        async for session in self._session_factory():
            stmt = (
                update(ParticipantModel)
                .where(
                    ParticipantModel.id == participant.id,
                    ParticipantModel.version == expected_version,
                )
                .values(
                    role=participant.role.value,
                    mic_state=participant.mic_state.value,
                    camera_state=participant.camera_state.value,
                    status=participant.status.value,
                    sessions_data=[
                        s.model_dump(mode="json") for s in participant.sessions
                    ],
                    total_duration_sec=participant.total_duration_sec,
                    version=expected_version + 1,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                logger.debug(
                    "participant.version_conflict",
                    participant_id=str(participant.id),
                    expected_version=expected_version,
                )
                return None
        return participant.model_copy(update={"version": expected_version + 1})

    async def delete_participant(self, participant_id: str | uuid.UUID) -> bool:
        parsed = _parse_id(participant_id)
        if parsed is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(ParticipantModel).where(ParticipantModel.id == parsed)
            )
            await session.commit()
            return result.rowcount > 0
