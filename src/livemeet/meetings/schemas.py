"""Pydantic v2 schemas for the meeting lifecycle domain.

Defines the data contracts for meetings, participants, attendance sessions,
the dual host identity, recordings, and capture-service callbacks. The
lifecycle manager, session tracker, recording coordinator, repository, and
API layer all import from this module.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class MeetingStatus(str, Enum):
    """Lifecycle status of a meeting."""

    SCHEDULED = "SCHEDULED"
    CREATED = "CREATED"
    LIVE = "LIVE"
    ENDED = "ENDED"
    CANCELED = "CANCELED"


class SystemRole(str, Enum):
    """Platform-wide role of an authenticated actor."""

    ADMIN = "ADMIN"
    TUTOR = "TUTOR"
    MEMBER = "MEMBER"


class ParticipantRole(str, Enum):
    """Role of a participant inside one meeting."""

    HOST = "HOST"
    CO_HOST = "CO_HOST"
    PRESENTER = "PRESENTER"
    PARTICIPANT = "PARTICIPANT"
    VIEWER = "VIEWER"


class MediaState(str, Enum):
    """Mic / camera state, including host-forced states."""

    ON = "ON"
    OFF = "OFF"
    MUTED = "MUTED"
    MUTED_BY_HOST = "MUTED_BY_HOST"
    OFF_BY_HOST = "OFF_BY_HOST"


class ParticipantStatus(str, Enum):
    """Admission status of a participant."""

    WAITING = "WAITING"
    APPROVED = "APPROVED"
    ADMITTED = "ADMITTED"
    LEFT = "LEFT"


class RecordingStatus(str, Enum):
    """Recording sub-state of a meeting."""

    NONE = "NONE"
    RECORDING = "RECORDING"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class CaptureStatus(str, Enum):
    """Status values reported by the capture service callback."""

    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    ENDING = "ENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


ACTIVE_PARTICIPANT_STATUSES = frozenset(
    {ParticipantStatus.WAITING, ParticipantStatus.APPROVED, ParticipantStatus.ADMITTED}
)


# ── Actor ────────────────────────────────────────────────────────────────────


class Actor(BaseModel):
    """The authenticated caller of an operation."""

    id: str
    role: SystemRole = SystemRole.MEMBER


# ── Host Identity ────────────────────────────────────────────────────────────


class HostReference(BaseModel):
    """A host stored as a bare identifier."""

    kind: Literal["reference"] = "reference"
    id: str


class ResolvedHost(BaseModel):
    """A host stored as an expanded member entity."""

    kind: Literal["resolved"] = "resolved"
    id: str
    display_name: str | None = None
    email: str | None = None


HostRef = Annotated[HostReference | ResolvedHost, Field(discriminator="kind")]


class HostIdentity(BaseModel):
    """Normalized dual host identity of a meeting."""

    original_host_id: str
    current_host_id: str

    def contains(self, actor_id: str) -> bool:
        return actor_id in (self.original_host_id, self.current_host_id)


def coerce_host_ref(value: Any) -> Any:
    """Normalize a raw host field into the HostRef tagged union.

    Accepts bare ids (str / UUID), already-built refs, and expanded entities
    given as dicts or objects exposing ``id`` / ``_id``.
    """
    if value is None or isinstance(value, (HostReference, ResolvedHost)):
        return value
    if isinstance(value, (str, uuid.UUID)):
        return HostReference(id=str(value))
    if isinstance(value, dict):
        if value.get("kind") in ("reference", "resolved"):
            return value
        raw_id = value.get("id", value.get("_id"))
        if raw_id is None:
            raise ValueError("Host entity has no id")
        return ResolvedHost(
            id=str(raw_id),
            display_name=value.get("display_name") or value.get("displayName"),
            email=value.get("email"),
        )
    raw_id = getattr(value, "id", None) or getattr(value, "_id", None)
    if raw_id is None:
        raise ValueError(f"Unsupported host value: {value!r}")
    return ResolvedHost(
        id=str(raw_id),
        display_name=getattr(value, "display_name", None),
        email=getattr(value, "email", None),
    )


# ── Participant & Sessions ───────────────────────────────────────────────────


class AttendanceSession(BaseModel):
    """One contiguous join-to-leave interval."""

    joined_at: datetime
    left_at: datetime | None = None
    duration_sec: int = 0

    @property
    def is_open(self) -> bool:
        return self.left_at is None


class Participant(BaseModel):
    """A meeting attendee (member or guest) with attendance bookkeeping."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    meeting_id: uuid.UUID
    user_id: str | None = None
    display_name: str
    role: ParticipantRole = ParticipantRole.PARTICIPANT
    mic_state: MediaState = MediaState.OFF
    camera_state: MediaState = MediaState.OFF
    status: ParticipantStatus = ParticipantStatus.WAITING
    sessions: list[AttendanceSession] = Field(default_factory=list)
    total_duration_sec: int = 0
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def open_session(self) -> AttendanceSession | None:
        for session in reversed(self.sessions):
            if session.is_open:
                return session
        return None


# ── Meeting ──────────────────────────────────────────────────────────────────


class Meeting(BaseModel):
    """Full meeting entity with lifecycle and recording state."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    title: str
    notes: str | None = None
    status: MeetingStatus = MeetingStatus.CREATED
    original_host: HostRef
    current_host: HostRef | None = None
    invite_code: str
    is_private: bool = False
    passcode_hash: str | None = None
    is_locked: bool = False
    scheduled_for: datetime | None = None
    actual_start_at: datetime | None = None
    ended_at: datetime | None = None
    duration_min: int | None = None
    max_participants: int = 100
    participant_count: int = 0
    banned_user_ids: list[str] = Field(default_factory=list)

    # Recording
    is_recording: bool = False
    recording_id: str | None = None
    capture_id: str | None = None
    recording_status: RecordingStatus = RecordingStatus.NONE
    recording_started_at: datetime | None = None
    recording_paused_at: datetime | None = None
    recording_resumed_at: datetime | None = None
    recording_ended_at: datetime | None = None
    recording_duration_sec: int = 0
    recording_url: str | None = None
    recording_file_size: int | None = None
    recording_failure_reason: str | None = None

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("original_host", "current_host", mode="before")
    @classmethod
    def _normalize_host(cls, value: Any) -> Any:
        return coerce_host_ref(value)


# ── Request Models ───────────────────────────────────────────────────────────


class MeetingCreate(BaseModel):
    """Request schema for creating a meeting."""

    title: str = Field(min_length=1, max_length=500)
    notes: str | None = None
    is_private: bool = False
    passcode: str | None = Field(None, description="Plaintext passcode, stored hashed")
    scheduled_for: str | None = Field(
        None, description="ISO-8601 start time; unparseable values are ignored"
    )
    duration_min: int | None = Field(None, ge=0)
    max_participants: int | None = Field(None, gt=0)


class MeetingUpdate(BaseModel):
    """Partial update; only fields explicitly provided are applied."""

    title: str | None = Field(None, min_length=1, max_length=500)
    notes: str | None = None
    is_private: bool | None = None
    passcode: str | None = None
    scheduled_for: str | None = Field(
        None, description="ISO-8601 future date; null or empty clears the schedule"
    )
    duration_min: int | None = Field(None, ge=0)
    max_participants: int | None = Field(None, gt=0)


class MeetingFilter(BaseModel):
    """Listing filter with offset pagination."""

    status: MeetingStatus | None = None
    search: str | None = None
    host_id: str | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)


# ── Result Models ────────────────────────────────────────────────────────────


class MeetingPage(BaseModel):
    """A page of meetings plus pagination metadata."""

    meetings: list[Meeting]
    total: int
    page: int
    limit: int
    has_more: bool


class MeetingStats(BaseModel):
    """Aggregate meeting counters for a dashboard."""

    total_meetings: int = 0
    live_meetings: int = 0
    scheduled_meetings: int = 0
    ended_meetings: int = 0
    canceled_meetings: int = 0
    total_participants: int = 0
    average_duration_min: float = 0.0


class JoinResult(BaseModel):
    """Outcome of joining a meeting."""

    meeting: Meeting
    participant: Participant


class AttendanceRecord(BaseModel):
    """Attendance summary for one participant."""

    participant_id: uuid.UUID
    user_id: str | None
    display_name: str
    status: ParticipantStatus
    sessions: list[AttendanceSession]
    total_duration_sec: int
    live_duration_sec: int = Field(
        0, description="Seconds accrued by the currently open session, if any"
    )


class SideEffectResult(BaseModel):
    """Outcome of a best-effort collaborator call."""

    name: str
    ok: bool
    error: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


# ── Recording Models ─────────────────────────────────────────────────────────


class RecordingInfo(BaseModel):
    """Recording state of one meeting."""

    meeting_id: uuid.UUID
    is_recording: bool
    recording_id: str | None = None
    capture_id: str | None = None
    recording_status: RecordingStatus
    recording_started_at: datetime | None = None
    recording_paused_at: datetime | None = None
    recording_resumed_at: datetime | None = None
    recording_ended_at: datetime | None = None
    recording_duration_sec: int = 0
    recording_url: str | None = None
    recording_file_size: int | None = None
    recording_failure_reason: str | None = None

    @classmethod
    def from_meeting(cls, meeting: Meeting) -> RecordingInfo:
        return cls(
            meeting_id=meeting.id,
            is_recording=meeting.is_recording,
            recording_id=meeting.recording_id,
            capture_id=meeting.capture_id,
            recording_status=meeting.recording_status,
            recording_started_at=meeting.recording_started_at,
            recording_paused_at=meeting.recording_paused_at,
            recording_resumed_at=meeting.recording_resumed_at,
            recording_ended_at=meeting.recording_ended_at,
            recording_duration_sec=meeting.recording_duration_sec,
            recording_url=meeting.recording_url,
            recording_file_size=meeting.recording_file_size,
            recording_failure_reason=meeting.recording_failure_reason,
        )


class RecordingOutcome(BaseModel):
    """Result of a recording operation, including best-effort side effects."""

    info: RecordingInfo | None = None
    applied: bool = True
    side_effects: list[SideEffectResult] = Field(default_factory=list)


class RecordingStats(BaseModel):
    """Aggregate recording counters."""

    total_recordings: int = 0
    active_recordings: int = 0
    paused_recordings: int = 0
    failed_recordings: int = 0
    total_recording_sec: int = 0
    average_recording_sec: int = 0


class CaptureFile(BaseModel):
    """File produced by the capture service."""

    filename: str
    size: int = 0
    location: str | None = None


class CaptureEvent(BaseModel):
    """Asynchronous notification from the capture service."""

    capture_id: str
    status: CaptureStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    file: CaptureFile | None = None
    error: str | None = None
