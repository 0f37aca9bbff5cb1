"""Meeting persistence models.

Two SQLAlchemy models on the shared declarative Base:
- MeetingModel: lifecycle, host identity, access control, and recording state
- ParticipantModel: attendees with attendance sessions stored as JSON

No foreign key constraints: referential integrity (including the
participant cascade on meeting deletion) is enforced by the repository.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.livemeet.core.database import Base


class MeetingModel(Base):
    """A live meeting and its recording sub-state.

    Host ids are stored as plain strings. ``current_host_id`` may be NULL
    for rows created before host transfer existed; reads backfill it from
    ``original_host_id``.
    """

    __tablename__ = "meetings"
    __table_args__ = (
        UniqueConstraint("invite_code", name="uq_meeting_invite_code"),
        Index("ix_meeting_capture_id", "capture_id"),
        Index("ix_meeting_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default="CREATED",
        server_default=text("'CREATED'"),
    )
    original_host_id: Mapped[str] = mapped_column(String(100), nullable=False)
    current_host_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    invite_code: Mapped[str] = mapped_column(String(32), nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    passcode_hash: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    actual_start_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_participants: Mapped[int] = mapped_column(Integer, default=100)
    participant_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    banned_user_ids: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )

    is_recording: Mapped[bool] = mapped_column(Boolean, default=False)
    recording_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    capture_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    recording_status: Mapped[str] = mapped_column(
        String(20),
        default="NONE",
        server_default=text("'NONE'"),
    )
    recording_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recording_paused_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recording_resumed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recording_ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recording_duration_sec: Mapped[int] = mapped_column(Integer, default=0)
    recording_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    recording_file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    recording_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ParticipantModel(Base):
    """A meeting attendee with its attendance sessions.

    ``sessions_data`` holds the ordered session list as JSON.
    ``version`` is bumped on every session write and checked by the
    repository's conditional save.
    """

    __tablename__ = "participants"
    __table_args__ = (
        Index("ix_participant_meeting", "meeting_id"),
        Index("ix_participant_meeting_user", "meeting_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(
        String(20),
        default="PARTICIPANT",
        server_default=text("'PARTICIPANT'"),
    )
    mic_state: Mapped[str] = mapped_column(String(20), default="OFF")
    camera_state: Mapped[str] = mapped_column(String(20), default="OFF")
    status: Mapped[str] = mapped_column(
        String(20),
        default="WAITING",
        server_default=text("'WAITING'"),
    )
    sessions_data: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    total_duration_sec: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
