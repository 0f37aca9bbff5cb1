"""RecordingCoordinator -- recording sub-state machine for a meeting.

Drives NONE -> RECORDING <-> PAUSED -> {STOPPED | FAILED} against the
external capture service. Every state write is a compare-and-transition on
the recording status (plus recording / capture id guards), so a manual
``stop`` racing the capture service's completion callback resolves to a
single terminal write: the loser is a no-op for events and InvalidState for
``stop``.

Recording duration counts active time only. Each resume adds the interval
that ended at ``recording_paused_at``; ``stop`` adds the final open
interval.

Operations never log best-effort failures themselves; they return them as
SideEffectResult entries and the lifecycle manager logs them.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from src.livemeet.meetings import permissions
from src.livemeet.meetings.effects import best_effort, skipped
from src.livemeet.meetings.errors import (
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
)
from src.livemeet.meetings.schemas import (
    Actor,
    CaptureEvent,
    CaptureFile,
    CaptureStatus,
    Meeting,
    RecordingInfo,
    RecordingOutcome,
    RecordingStats,
    RecordingStatus,
    SideEffectResult,
)
from src.livemeet.meetings.sessions import elapsed_seconds, utcnow
from src.livemeet.meetings.transitions import (
    ACTIVE_RECORDING_STATUSES,
    CLOSED_STATUSES,
    RECORDING_SOURCES,
    require_recording_status,
)

if TYPE_CHECKING:
    from src.livemeet.meetings.recording.capture_client import CaptureClient
    from src.livemeet.meetings.recording.vod_client import VodClient
    from src.livemeet.meetings.repository import MeetingRepository

TERMINAL_CAPTURE_STATUSES = frozenset(
    {CaptureStatus.COMPLETE, CaptureStatus.FAILED, CaptureStatus.ABORTED}
)


# ── Duration Helpers ────────────────────────────────────────────────────────


def last_active_start(meeting: Meeting) -> datetime | None:
    """Start of the current (or most recent) active interval."""
    return meeting.recording_resumed_at or meeting.recording_started_at


def active_seconds(meeting: Meeting, now: datetime) -> int:
    """Total active recording time as of ``now``.

    Paused intervals never count: while PAUSED the open interval ends at
    ``recording_paused_at``.
    """
    total = meeting.recording_duration_sec
    start = last_active_start(meeting)
    if start is None:
        return total
    if meeting.recording_status == RecordingStatus.RECORDING:
        return total + elapsed_seconds(start, now)
    if meeting.recording_status == RecordingStatus.PAUSED and meeting.recording_paused_at:
        return total + elapsed_seconds(start, meeting.recording_paused_at)
    return total


# ── Capture Payload Parsing ─────────────────────────────────────────────────


def _epoch_to_datetime(value: Any) -> datetime | None:
    """Accept ISO strings or epoch numbers in s / ms / us / ns.

    Naive datetimes and ISO strings without an offset are taken as UTC.
    """
    if value in (None, "", 0):
        return None
    if isinstance(value, str) and not value.strip().lstrip("-").isdigit():
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    number = int(value)
    for divisor in (1_000_000_000, 1_000_000, 1_000):
        if number >= 1_000_000_000 * divisor:
            return datetime.fromtimestamp(number / divisor, tz=timezone.utc)
    return datetime.fromtimestamp(number, tz=timezone.utc)


def parse_capture_payload(payload: dict[str, Any]) -> CaptureEvent:
    """Build a CaptureEvent from a raw capture-service callback body.

    Accepts both the bare event shape and the ``egressInfo`` envelope, in
    camelCase or snake_case, with ``EGRESS_``-prefixed statuses.

    Raises:
        ValueError: If the payload has no capture id or an unknown status.
    """
    body = payload.get("egressInfo") or payload.get("egress_info") or payload
    capture_id = body.get("egressId") or body.get("egress_id") or body.get("capture_id")
    if not capture_id:
        raise ValueError("Capture event has no capture id")

    raw_status = str(body.get("status", "")).upper().removeprefix("EGRESS_")
    status = CaptureStatus(raw_status)

    raw_file = body.get("file")
    if raw_file is None:
        results = body.get("fileResults") or body.get("file_results") or []
        raw_file = results[0] if results else None
    file = None
    if raw_file:
        file = CaptureFile(
            filename=raw_file.get("filename", ""),
            size=int(raw_file.get("size") or 0),
            location=raw_file.get("location"),
        )

    return CaptureEvent(
        capture_id=capture_id,
        status=status,
        started_at=_epoch_to_datetime(body.get("startedAt", body.get("started_at"))),
        ended_at=_epoch_to_datetime(body.get("endedAt", body.get("ended_at"))),
        file=file,
        error=body.get("error") or None,
    )


# ── Coordinator ─────────────────────────────────────────────────────────────


class RecordingCoordinator:
    """Owns recording state for meetings.

    Args:
        repository: MeetingRepository for conditional recording writes.
        capture_client: Capture service client (start/stop capture).
        vod_client: Optional VOD client; VOD registration is skipped without it.
        output_prefix: Storage directory for capture output files.
        public_base_url: URL prefix under which output files are served.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        repository: MeetingRepository,
        capture_client: CaptureClient,
        vod_client: VodClient | None = None,
        *,
        output_prefix: str = "recordings",
        public_base_url: str = "/uploads",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._capture = capture_client
        self._vod = vod_client
        self._output_prefix = output_prefix.strip("/")
        self._public_base_url = public_base_url.rstrip("/")
        self._clock = clock

    async def _load(self, meeting_id: str | uuid.UUID) -> Meeting:
        meeting = await self._repository.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        return meeting

    async def _load_managed(self, meeting_id: str | uuid.UUID, actor: Actor) -> Meeting:
        meeting = await self._load(meeting_id)
        permissions.require_host_or_admin(meeting, actor)
        return meeting

    def _outcome(
        self, meeting: Meeting, side_effects: list[SideEffectResult] | None = None
    ) -> RecordingOutcome:
        return RecordingOutcome(
            info=RecordingInfo.from_meeting(meeting),
            side_effects=side_effects or [],
        )

    async def _register_vod(self, meeting: Meeting, storage_ref: str | None) -> SideEffectResult:
        if self._vod is None:
            return skipped("vod.register_recording", "VOD service not configured")
        return await best_effort(
            "vod.register_recording",
            self._vod.register_recording(
                meeting_id=meeting.id,
                storage_ref=storage_ref,
                size_bytes=meeting.recording_file_size,
                duration_sec=meeting.recording_duration_sec,
                url=meeting.recording_url,
            ),
            meeting_id=str(meeting.id),
        )

    # ── Operations ───────────────────────────────────────────────────────

    async def start(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        """Start a new recording cycle.

        Raises:
            NotFoundError: Unknown meeting.
            ForbiddenError: Actor is not a host or admin.
            InvalidStateError: Meeting closed or a recording is already active.
            ExternalServiceError: The capture service failed to start.
        """
        meeting = await self._load_managed(meeting_id, actor)
        if meeting.status in CLOSED_STATUSES:
            raise InvalidStateError(
                f"Cannot record a meeting that is {meeting.status.value}"
            )
        if meeting.recording_status in ACTIVE_RECORDING_STATUSES:
            raise InvalidStateError("Recording is already in progress for this meeting")

        now = self._clock()
        recording_id = f"rec_{uuid.uuid4().hex}"
        file_name = f"{meeting.id}_{int(now.timestamp())}.mp4"
        output_target = f"{self._output_prefix}/{file_name}"

        try:
            capture_id = await self._capture.start_capture(str(meeting.id), output_target)
        except Exception as exc:
            raise ExternalServiceError(f"Failed to start recording: {exc}") from exc

        updated = await self._repository.transition_recording(
            meeting.id,
            RECORDING_SOURCES["start"],
            {
                "recording_status": RecordingStatus.RECORDING,
                "is_recording": True,
                "recording_id": recording_id,
                "capture_id": capture_id,
                "recording_started_at": now,
                "recording_paused_at": None,
                "recording_resumed_at": None,
                "recording_ended_at": None,
                "recording_duration_sec": 0,
                "recording_url": f"{self._public_base_url}/{output_target}",
                "recording_file_size": None,
                "recording_failure_reason": None,
            },
            exclude_meeting_statuses=CLOSED_STATUSES,
        )
        if updated is None:
            rollback = await best_effort(
                "capture.stop_capture",
                self._capture.stop_capture(capture_id),
                capture_id=capture_id,
            )
            raise InvalidStateError(
                "Recording state changed while starting", side_effects=[rollback]
            )
        return self._outcome(updated)

    async def pause(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        """Pause an active recording (RECORDING only)."""
        meeting = await self._load_managed(meeting_id, actor)
        require_recording_status("pause", meeting.recording_status)

        updated = await self._repository.transition_recording(
            meeting.id,
            RECORDING_SOURCES["pause"],
            {
                "recording_status": RecordingStatus.PAUSED,
                "recording_paused_at": self._clock(),
            },
            expect={"recording_id": meeting.recording_id},
        )
        if updated is None:
            raise InvalidStateError("Recording state changed, try again")
        return self._outcome(updated)

    async def resume(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        """Resume a paused recording (PAUSED only).

        Adds the active interval that ended when the recording was paused.
        """
        meeting = await self._load_managed(meeting_id, actor)
        require_recording_status("resume", meeting.recording_status)

        now = self._clock()
        updated = await self._repository.transition_recording(
            meeting.id,
            RECORDING_SOURCES["resume"],
            {
                "recording_status": RecordingStatus.RECORDING,
                "recording_resumed_at": now,
                "recording_duration_sec": active_seconds(meeting, now),
            },
            expect={
                "recording_id": meeting.recording_id,
                "recording_paused_at": meeting.recording_paused_at,
            },
        )
        if updated is None:
            raise InvalidStateError("Recording state changed, try again")
        return self._outcome(updated)

    async def stop(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        """Stop the recording and register the VOD copy (best-effort).

        Raises:
            InvalidStateError: Not RECORDING/PAUSED, or a capture event
                finalized the recording first.
            ExternalServiceError: The capture service failed to stop; no
                local change is made.
        """
        meeting = await self._load_managed(meeting_id, actor)
        require_recording_status("stop", meeting.recording_status)

        if meeting.capture_id:
            try:
                await self._capture.stop_capture(meeting.capture_id)
            except Exception as exc:
                raise ExternalServiceError(f"Failed to stop recording: {exc}") from exc

        now = self._clock()
        updated = await self._repository.transition_recording(
            meeting.id,
            {meeting.recording_status},
            {
                "recording_status": RecordingStatus.STOPPED,
                "is_recording": False,
                "recording_ended_at": now,
                "recording_duration_sec": active_seconds(meeting, now),
            },
            expect={
                "recording_id": meeting.recording_id,
                "recording_paused_at": meeting.recording_paused_at,
            },
        )
        if updated is None:
            raise InvalidStateError("Recording was already finalized")

        vod = await self._register_vod(updated, storage_ref=updated.recording_url)
        return self._outcome(updated, [vod])

    async def on_capture_event(self, event: CaptureEvent) -> RecordingOutcome:
        """Apply a capture-service callback; idempotent and replayable.

        Non-terminal statuses and events for recordings already STOPPED or
        FAILED change nothing (``applied`` is False).
        """
        meeting = await self._repository.get_meeting_by_capture_id(event.capture_id)
        if meeting is None:
            return RecordingOutcome(applied=False)
        if (
            event.status not in TERMINAL_CAPTURE_STATUSES
            or meeting.recording_status not in ACTIVE_RECORDING_STATUSES
        ):
            return RecordingOutcome(info=RecordingInfo.from_meeting(meeting), applied=False)

        ended_at = event.ended_at or self._clock()
        fields: dict[str, Any] = {
            "is_recording": False,
            "recording_ended_at": ended_at,
        }
        if event.status == CaptureStatus.COMPLETE:
            fields["recording_status"] = RecordingStatus.STOPPED
            if event.started_at is not None and event.ended_at is not None:
                fields["recording_duration_sec"] = elapsed_seconds(
                    event.started_at, event.ended_at
                )
            else:
                fields["recording_duration_sec"] = active_seconds(meeting, ended_at)
            if event.file is not None:
                fields["recording_file_size"] = event.file.size
                if event.file.location:
                    fields["recording_url"] = event.file.location
        else:
            fields["recording_status"] = RecordingStatus.FAILED
            fields["recording_duration_sec"] = active_seconds(meeting, ended_at)
            fields["recording_failure_reason"] = (
                event.error or f"Capture {event.status.value.lower()}"
            )

        updated = await self._repository.transition_recording(
            meeting.id,
            ACTIVE_RECORDING_STATUSES,
            fields,
            expect={"capture_id": event.capture_id},
        )
        if updated is None:
            return RecordingOutcome(info=RecordingInfo.from_meeting(meeting), applied=False)

        side_effects: list[SideEffectResult] = []
        if event.status == CaptureStatus.COMPLETE:
            storage_ref = event.file.filename if event.file else updated.recording_url
            side_effects.append(await self._register_vod(updated, storage_ref=storage_ref))
        return self._outcome(updated, side_effects)

    async def get_info(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingInfo:
        meeting = await self._load_managed(meeting_id, actor)
        return RecordingInfo.from_meeting(meeting)

    async def get_stats(self, actor: Actor) -> RecordingStats:
        """Recording totals; non-admins see only meetings they created."""
        scope = None if permissions.is_admin(actor) else actor.id
        return await self._repository.recording_stats(original_host_id=scope)

    async def delete_media(self, meeting_id: str | uuid.UUID, actor: Actor) -> RecordingOutcome:
        """Permanently delete the VOD copy and clear the recording URL (ADMIN only).

        Raises:
            ForbiddenError: Actor is not an admin.
            InvalidStateError: A recording is still active.
            ExternalServiceError: The VOD service failed to delete.
        """
        permissions.require_admin(actor)
        meeting = await self._load(meeting_id)
        if meeting.recording_status in ACTIVE_RECORDING_STATUSES:
            raise InvalidStateError("Stop the recording before deleting its media")

        if self._vod is not None:
            try:
                await self._vod.delete_recording(meeting.id)
            except Exception as exc:
                raise ExternalServiceError(f"Failed to delete recording media: {exc}") from exc

        updated = await self._repository.update_meeting(
            meeting.id, {"recording_url": None, "recording_file_size": None}
        )
        if updated is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        return self._outcome(updated)
