"""Shared fixtures for meeting lifecycle tests.

Provides:
- InMemoryMeetingRepository: test double with the same API and conditional
  write semantics as MeetingRepository (status guards, version checks,
  ``expect`` guards, unique invite codes)
- FakeClock: settable clock injected into the manager and coordinator
- Actor fixtures (host, two members, admin) and mocked capture/VOD clients
- A fully wired MeetingLifecycleManager
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.livemeet.meetings import hosts
from src.livemeet.meetings.errors import InviteCodeConflictError
from src.livemeet.meetings.lifecycle import MeetingLifecycleManager
from src.livemeet.meetings.recording.coordinator import RecordingCoordinator
from src.livemeet.meetings.schemas import (
    Actor,
    Meeting,
    MeetingFilter,
    MeetingStats,
    MeetingStatus,
    Participant,
    ParticipantStatus,
    RecordingStats,
    RecordingStatus,
    SystemRole,
)

HOST_ID = "user-host"
MEMBER_ID = "user-member"
OTHER_ID = "user-other"
ADMIN_ID = "user-admin"

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


# ── Clock ────────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ── In-Memory Repository ────────────────────────────────────────────────────


def _uuid(value: Any) -> uuid.UUID | None:
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


class InMemoryMeetingRepository:
    """In-memory test double for MeetingRepository."""

    def __init__(self) -> None:
        self.meetings: dict[uuid.UUID, Meeting] = {}
        self.participants: dict[uuid.UUID, Participant] = {}
        self._sequence = 0

    def _stamp(self) -> datetime:
        # Strictly increasing timestamps keep "latest record" ordering stable
        self._sequence += 1
        return T0 + timedelta(microseconds=self._sequence)

    def _apply(self, meeting: Meeting, fields: dict[str, Any]) -> Meeting:
        data = meeting.model_dump()
        for key, value in fields.items():
            if key == "current_host_id":
                data["current_host"] = value
            elif key == "original_host_id":
                data["original_host"] = value
            else:
                data[key] = value
        data["updated_at"] = self._stamp()
        updated = Meeting.model_validate(data)
        self.meetings[meeting.id] = updated
        return hosts.normalize(updated.model_copy(deep=True))

    def _get(self, meeting_id: Any) -> Meeting | None:
        parsed = _uuid(meeting_id)
        return self.meetings.get(parsed) if parsed is not None else None

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create_meeting(self, meeting: Meeting) -> Meeting:
        if any(m.invite_code == meeting.invite_code for m in self.meetings.values()):
            raise InviteCodeConflictError(meeting.invite_code)
        now = self._stamp()
        stored = meeting.model_copy(
            update={
                "participant_count": 0,
                "banned_user_ids": [],
                "recording_status": RecordingStatus.NONE,
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )
        self.meetings[stored.id] = stored
        return hosts.normalize(stored.model_copy(deep=True))

    async def get_meeting(self, meeting_id: Any) -> Meeting | None:
        meeting = self._get(meeting_id)
        return hosts.normalize(meeting.model_copy(deep=True)) if meeting else None

    async def get_meeting_by_invite_code(self, code: str) -> Meeting | None:
        for meeting in self.meetings.values():
            if meeting.invite_code == code:
                return hosts.normalize(meeting.model_copy(deep=True))
        return None

    async def get_meeting_by_capture_id(self, capture_id: str) -> Meeting | None:
        for meeting in self.meetings.values():
            if meeting.capture_id == capture_id:
                return hosts.normalize(meeting.model_copy(deep=True))
        return None

    async def invite_code_exists(self, code: str) -> bool:
        return any(m.invite_code == code for m in self.meetings.values())

    async def update_meeting(self, meeting_id: Any, fields: dict[str, Any]) -> Meeting | None:
        meeting = self._get(meeting_id)
        if meeting is None:
            return None
        code = fields.get("invite_code")
        if code is not None and any(
            m.invite_code == code and m.id != meeting.id for m in self.meetings.values()
        ):
            raise InviteCodeConflictError(code)
        return self._apply(meeting, fields)

    async def transition_status(
        self,
        meeting_id: Any,
        from_statuses: Iterable[MeetingStatus],
        to_status: MeetingStatus,
        fields: dict[str, Any] | None = None,
    ) -> Meeting | None:
        meeting = self._get(meeting_id)
        if meeting is None or meeting.status not in set(from_statuses):
            return None
        return self._apply(meeting, {"status": to_status, **(fields or {})})

    async def transition_recording(
        self,
        meeting_id: Any,
        from_statuses: Iterable[RecordingStatus],
        fields: dict[str, Any],
        *,
        expect: dict[str, Any] | None = None,
        exclude_meeting_statuses: Iterable[MeetingStatus] = (),
    ) -> Meeting | None:
        meeting = self._get(meeting_id)
        if meeting is None or meeting.recording_status not in set(from_statuses):
            return None
        if meeting.status in set(exclude_meeting_statuses):
            return None
        for column, value in (expect or {}).items():
            if getattr(meeting, column) != value:
                return None
        return self._apply(meeting, fields)

    async def increment_participant_count(self, meeting_id: Any, delta: int) -> None:
        meeting = self._get(meeting_id)
        if meeting is None or delta == 0:
            return
        self._apply(meeting, {"participant_count": max(meeting.participant_count + delta, 0)})

    async def claim_seat(
        self,
        meeting_id: Any,
        statuses: Iterable[MeetingStatus],
        *,
        enforce_capacity: bool = True,
    ) -> bool:
        meeting = self._get(meeting_id)
        if meeting is None or meeting.status not in set(statuses):
            return False
        if enforce_capacity and meeting.participant_count >= meeting.max_participants:
            return False
        self._apply(meeting, {"participant_count": meeting.participant_count + 1})
        return True

    async def add_banned_user(self, meeting_id: Any, user_id: str) -> Meeting | None:
        meeting = self._get(meeting_id)
        if meeting is None:
            return None
        banned = list(meeting.banned_user_ids)
        if user_id not in banned:
            banned.append(user_id)
        return self._apply(meeting, {"banned_user_ids": banned})

    async def remove_banned_user(self, meeting_id: Any, user_id: str) -> Meeting | None:
        meeting = self._get(meeting_id)
        if meeting is None:
            return None
        banned = [b for b in meeting.banned_user_ids if b != user_id]
        return self._apply(meeting, {"banned_user_ids": banned})

    async def delete_meeting(
        self, meeting_id: Any, blocked_statuses: Iterable[MeetingStatus] = ()
    ) -> bool:
        meeting = self._get(meeting_id)
        if meeting is None or meeting.status in set(blocked_statuses):
            return False
        del self.meetings[meeting.id]
        for pid in [p.id for p in self.participants.values() if p.meeting_id == meeting.id]:
            del self.participants[pid]
        return True

    async def list_meetings(
        self, filters: MeetingFilter, visible_to: str | None = None
    ) -> tuple[list[Meeting], int]:
        matched = []
        for meeting in self.meetings.values():
            identity = hosts.identity(meeting)
            if visible_to is not None and not (
                identity.contains(visible_to)
                or any(
                    p.meeting_id == meeting.id
                    and p.user_id == visible_to
                    and p.status != ParticipantStatus.LEFT
                    for p in self.participants.values()
                )
            ):
                continue
            if filters.status is not None and meeting.status != filters.status:
                continue
            if filters.search:
                needle = filters.search.strip().lower()
                haystack = f"{meeting.title} {meeting.notes or ''}".lower()
                if needle not in haystack:
                    continue
            if filters.host_id and not identity.contains(filters.host_id):
                continue
            matched.append(meeting)
        matched.sort(key=lambda m: m.created_at, reverse=True)
        start = (filters.page - 1) * filters.limit
        page = matched[start:start + filters.limit]
        return [hosts.normalize(m.model_copy(deep=True)) for m in page], len(matched)

    async def meeting_stats(self, original_host_id: str | None = None) -> MeetingStats:
        scoped = [
            m for m in self.meetings.values()
            if original_host_id is None or m.original_host.id == original_host_id
        ]
        ids = {m.id for m in scoped}
        durations = [
            m.duration_min for m in scoped
            if m.status == MeetingStatus.ENDED and m.duration_min is not None
        ]
        return MeetingStats(
            total_meetings=len(scoped),
            live_meetings=sum(m.status == MeetingStatus.LIVE for m in scoped),
            scheduled_meetings=sum(m.status == MeetingStatus.SCHEDULED for m in scoped),
            ended_meetings=sum(m.status == MeetingStatus.ENDED for m in scoped),
            canceled_meetings=sum(m.status == MeetingStatus.CANCELED for m in scoped),
            total_participants=sum(p.meeting_id in ids for p in self.participants.values()),
            average_duration_min=round(sum(durations) / len(durations), 1) if durations else 0.0,
        )

    async def recording_stats(self, original_host_id: str | None = None) -> RecordingStats:
        scoped = [
            m for m in self.meetings.values()
            if m.recording_status != RecordingStatus.NONE
            and (original_host_id is None or m.original_host.id == original_host_id)
        ]
        stopped = [m for m in scoped if m.recording_status == RecordingStatus.STOPPED]
        total_sec = sum(m.recording_duration_sec for m in stopped)
        return RecordingStats(
            total_recordings=len(scoped),
            active_recordings=sum(m.recording_status == RecordingStatus.RECORDING for m in scoped),
            paused_recordings=sum(m.recording_status == RecordingStatus.PAUSED for m in scoped),
            failed_recordings=sum(m.recording_status == RecordingStatus.FAILED for m in scoped),
            total_recording_sec=total_sec,
            average_recording_sec=total_sec // len(stopped) if stopped else 0,
        )

    # ── Participants ─────────────────────────────────────────────────────

    async def create_participant(self, participant: Participant) -> Participant:
        now = self._stamp()
        stored = participant.model_copy(
            update={"version": 0, "created_at": now, "updated_at": now}, deep=True
        )
        self.participants[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_participant(self, participant_id: Any) -> Participant | None:
        parsed = _uuid(participant_id)
        participant = self.participants.get(parsed) if parsed is not None else None
        return participant.model_copy(deep=True) if participant else None

    async def get_participant_by_user(self, meeting_id: Any, user_id: str) -> Participant | None:
        parsed = _uuid(meeting_id)
        matches = [
            p for p in self.participants.values()
            if p.meeting_id == parsed and p.user_id == user_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda p: p.created_at).model_copy(deep=True)

    async def list_participants(
        self, meeting_id: Any, statuses: Iterable[ParticipantStatus] | None = None
    ) -> list[Participant]:
        parsed = _uuid(meeting_id)
        wanted = set(statuses) if statuses is not None else None
        return [
            p.model_copy(deep=True)
            for p in sorted(self.participants.values(), key=lambda p: p.created_at)
            if p.meeting_id == parsed and (wanted is None or p.status in wanted)
        ]

    async def save_participant(
        self, participant: Participant, expected_version: int
    ) -> Participant | None:
        stored = self.participants.get(participant.id)
        if stored is None or stored.version != expected_version:
            return None
        saved = participant.model_copy(
            update={"version": expected_version + 1, "updated_at": self._stamp()},
            deep=True,
        )
        self.participants[saved.id] = saved
        return saved.model_copy(deep=True)

    async def delete_participant(self, participant_id: Any) -> bool:
        parsed = _uuid(participant_id)
        return self.participants.pop(parsed, None) is not None


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo() -> InMemoryMeetingRepository:
    return InMemoryMeetingRepository()


@pytest.fixture
def host() -> Actor:
    return Actor(id=HOST_ID, role=SystemRole.TUTOR)


@pytest.fixture
def member() -> Actor:
    return Actor(id=MEMBER_ID, role=SystemRole.MEMBER)


@pytest.fixture
def other() -> Actor:
    return Actor(id=OTHER_ID, role=SystemRole.MEMBER)


@pytest.fixture
def admin() -> Actor:
    return Actor(id=ADMIN_ID, role=SystemRole.ADMIN)


@pytest.fixture
def capture_client() -> AsyncMock:
    client = AsyncMock()
    client.start_capture = AsyncMock(return_value="EG_capture_1")
    client.stop_capture = AsyncMock(return_value=None)
    client.create_room = AsyncMock(return_value=None)
    client.delete_room = AsyncMock(return_value=None)
    client.remove_participant = AsyncMock(return_value=None)
    return client


@pytest.fixture
def vod_client() -> AsyncMock:
    client = AsyncMock()
    client.register_recording = AsyncMock(return_value={"id": "vod-1"})
    client.delete_recording = AsyncMock(return_value=None)
    return client


@pytest.fixture
def coordinator(repo, capture_client, vod_client, clock) -> RecordingCoordinator:
    return RecordingCoordinator(
        repository=repo,
        capture_client=capture_client,
        vod_client=vod_client,
        output_prefix="recordings",
        public_base_url="/uploads",
        clock=clock,
    )


@pytest.fixture
def manager(repo, coordinator, capture_client, clock) -> MeetingLifecycleManager:
    return MeetingLifecycleManager(
        repository=repo,
        recording=coordinator,
        signaling=capture_client,
        invite_code_length=8,
        default_max_participants=100,
        room_max_participants=50,
        clock=clock,
    )
