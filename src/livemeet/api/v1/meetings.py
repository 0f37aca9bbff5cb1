"""REST endpoints for meetings and their participants.

Covers the meeting lifecycle (create, update, start, end, cancel, delete),
room controls (invite code rotation, lock, unlock), admission (join by
invite code or id, approve, leave, remove, unban), host transfer, and
attendance.

Domain errors propagate as MeetingError and are mapped to HTTP status
codes by the handler registered in main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from src.livemeet.api.deps import (
    get_current_actor,
    get_meeting_manager,
    get_optional_actor,
)
from src.livemeet.meetings import hosts
from src.livemeet.meetings.lifecycle import MeetingLifecycleManager
from src.livemeet.meetings.schemas import (
    Actor,
    AttendanceRecord,
    Meeting,
    MeetingCreate,
    MeetingFilter,
    MeetingStats,
    MeetingStatus,
    MeetingUpdate,
    Participant,
)

router = APIRouter(prefix="/meetings", tags=["meetings"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class JoinByCodeRequest(BaseModel):
    """Join through an invite code; guests must supply a display name."""

    code: str = Field(min_length=1)
    passcode: str | None = None
    display_name: str | None = None


class JoinMeetingRequest(BaseModel):
    passcode: str | None = None
    display_name: str | None = None


class TransferHostRequest(BaseModel):
    participant_id: str


class MeetingResponse(BaseModel):
    """Meeting as returned to clients; the passcode hash never leaves the server."""

    id: str
    title: str
    notes: str | None = None
    status: str
    original_host_id: str
    current_host_id: str
    original_host: dict
    current_host: dict
    invite_code: str
    is_private: bool
    has_passcode: bool
    is_locked: bool
    scheduled_for: str | None = None
    actual_start_at: str | None = None
    ended_at: str | None = None
    duration_min: int | None = None
    max_participants: int
    participant_count: int
    banned_user_ids: list[str] = Field(default_factory=list)
    is_recording: bool
    recording_status: str
    recording_url: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class MeetingListResponse(BaseModel):
    meetings: list[MeetingResponse]
    total: int
    page: int
    limit: int
    has_more: bool


class ParticipantResponse(BaseModel):
    id: str
    meeting_id: str
    user_id: str | None = None
    display_name: str
    role: str
    status: str
    mic_state: str
    camera_state: str
    sessions: list[dict] = Field(default_factory=list)
    total_duration_sec: int


class JoinResponse(BaseModel):
    meeting: MeetingResponse
    participant: ParticipantResponse


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _meeting_to_response(m: Meeting) -> MeetingResponse:
    """Convert Meeting schema to MeetingResponse."""
    m = hosts.normalize(m)
    identity = hosts.identity(m)
    return MeetingResponse(
        id=str(m.id),
        title=m.title,
        notes=m.notes,
        status=m.status.value,
        original_host_id=identity.original_host_id,
        current_host_id=identity.current_host_id,
        original_host=m.original_host.model_dump(mode="json"),
        current_host=m.current_host.model_dump(mode="json"),
        invite_code=m.invite_code,
        is_private=m.is_private,
        has_passcode=m.passcode_hash is not None,
        is_locked=m.is_locked,
        scheduled_for=_iso(m.scheduled_for),
        actual_start_at=_iso(m.actual_start_at),
        ended_at=_iso(m.ended_at),
        duration_min=m.duration_min,
        max_participants=m.max_participants,
        participant_count=m.participant_count,
        banned_user_ids=m.banned_user_ids,
        is_recording=m.is_recording,
        recording_status=m.recording_status.value,
        recording_url=m.recording_url,
        created_at=_iso(m.created_at),
        updated_at=_iso(m.updated_at),
    )


def _participant_to_response(p: Participant) -> ParticipantResponse:
    """Convert Participant schema to ParticipantResponse."""
    return ParticipantResponse(
        id=str(p.id),
        meeting_id=str(p.meeting_id),
        user_id=p.user_id,
        display_name=p.display_name,
        role=p.role.value,
        status=p.status.value,
        mic_state=p.mic_state.value,
        camera_state=p.camera_state.value,
        sessions=[s.model_dump(mode="json") for s in p.sessions],
        total_duration_sec=p.total_duration_sec,
    )


# ── Meeting Endpoints ────────────────────────────────────────────────────────


@router.post("/", response_model=MeetingResponse, status_code=status.HTTP_201_CREATED)
async def create_meeting(
    body: MeetingCreate,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    """Create a meeting hosted by the caller (host or admin role)."""
    meeting = await manager.create(body, actor)
    return _meeting_to_response(meeting)


@router.get("/", response_model=MeetingListResponse)
async def list_meetings(
    status_filter: MeetingStatus | None = Query(None, alias="status"),
    search: str | None = Query(None),
    host_id: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingListResponse:
    """List meetings visible to the caller, newest first."""
    filters = MeetingFilter(
        status=status_filter, search=search, host_id=host_id, page=page, limit=limit
    )
    result = await manager.list_meetings(filters, actor)
    return MeetingListResponse(
        meetings=[_meeting_to_response(m) for m in result.meetings],
        total=result.total,
        page=result.page,
        limit=result.limit,
        has_more=result.has_more,
    )


@router.get("/stats", response_model=MeetingStats)
async def get_meeting_stats(
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingStats:
    return await manager.get_stats(actor)


@router.post("/join", response_model=JoinResponse)
async def join_by_code(
    body: JoinByCodeRequest,
    actor: Actor | None = Depends(get_optional_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> JoinResponse:
    """Join through an invite code. Works without authentication for guests."""
    result = await manager.join_by_code(
        body.code, passcode=body.passcode, actor=actor, display_name=body.display_name
    )
    return JoinResponse(
        meeting=_meeting_to_response(result.meeting),
        participant=_participant_to_response(result.participant),
    )


@router.get("/{meeting_id}", response_model=MeetingResponse)
async def get_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    """Get meeting details by ID."""
    meeting = await manager.get_meeting(meeting_id, actor)
    return _meeting_to_response(meeting)


@router.patch("/{meeting_id}", response_model=MeetingResponse)
async def update_meeting(
    meeting_id: str,
    body: MeetingUpdate,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    """Partially update a meeting that has not started.

    Sending ``scheduled_for: null`` clears the schedule.
    """
    meeting = await manager.update(meeting_id, body, actor)
    return _meeting_to_response(meeting)


@router.delete("/{meeting_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> Response:
    await manager.delete(meeting_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{meeting_id}/start", response_model=MeetingResponse)
async def start_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    meeting = await manager.start(meeting_id, actor)
    return _meeting_to_response(meeting)


@router.post("/{meeting_id}/end", response_model=MeetingResponse)
async def end_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    meeting = await manager.end(meeting_id, actor)
    return _meeting_to_response(meeting)


@router.post("/{meeting_id}/cancel", response_model=MeetingResponse)
async def cancel_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    meeting = await manager.cancel(meeting_id, actor)
    return _meeting_to_response(meeting)


@router.post("/{meeting_id}/invite-code", response_model=MeetingResponse)
async def rotate_invite_code(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    """Issue a new invite code; the old one stops working immediately."""
    meeting = await manager.rotate_invite_code(meeting_id, actor)
    return _meeting_to_response(meeting)


@router.post("/{meeting_id}/lock", response_model=MeetingResponse)
async def lock_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    meeting = await manager.lock_room(meeting_id, actor)
    return _meeting_to_response(meeting)


@router.post("/{meeting_id}/unlock", response_model=MeetingResponse)
async def unlock_meeting(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    meeting = await manager.unlock_room(meeting_id, actor)
    return _meeting_to_response(meeting)


@router.post("/{meeting_id}/transfer-host", response_model=MeetingResponse)
async def transfer_host(
    meeting_id: str,
    body: TransferHostRequest,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    meeting = await manager.transfer_host(meeting_id, body.participant_id, actor)
    return _meeting_to_response(meeting)


@router.delete("/{meeting_id}/bans/{user_id}", response_model=MeetingResponse)
async def unban_user(
    meeting_id: str,
    user_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> MeetingResponse:
    meeting = await manager.unban_user(meeting_id, user_id, actor)
    return _meeting_to_response(meeting)


@router.get("/{meeting_id}/attendance", response_model=list[AttendanceRecord])
async def get_attendance(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> list[AttendanceRecord]:
    """Per-participant attendance, including seconds accrued by open sessions."""
    return await manager.get_attendance(meeting_id, actor)


# ── Participant Endpoints ────────────────────────────────────────────────────


@router.post("/{meeting_id}/join", response_model=JoinResponse)
async def join_meeting(
    meeting_id: str,
    body: JoinMeetingRequest,
    actor: Actor | None = Depends(get_optional_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> JoinResponse:
    result = await manager.join_meeting(
        meeting_id, actor=actor, display_name=body.display_name, passcode=body.passcode
    )
    return JoinResponse(
        meeting=_meeting_to_response(result.meeting),
        participant=_participant_to_response(result.participant),
    )


@router.post("/participants/{participant_id}/leave", response_model=ParticipantResponse)
async def leave_meeting(
    participant_id: str,
    actor: Actor | None = Depends(get_optional_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> ParticipantResponse:
    participant = await manager.leave_meeting(participant_id, actor)
    return _participant_to_response(participant)


@router.post("/participants/{participant_id}/approve", response_model=ParticipantResponse)
async def approve_participant(
    participant_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> ParticipantResponse:
    """Admit a participant from the waiting room."""
    participant = await manager.approve_participant(participant_id, actor)
    return _participant_to_response(participant)


@router.delete("/participants/{participant_id}", response_model=ParticipantResponse)
async def remove_participant(
    participant_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> ParticipantResponse:
    """Remove and ban a participant; returns the record as it was removed."""
    participant = await manager.remove_participant(participant_id, actor)
    return _participant_to_response(participant)
