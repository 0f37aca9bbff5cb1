"""REST endpoints for meeting recordings and the capture-service webhook.

Recording control (start, pause, resume, stop) is restricted to the
meeting's host or an admin. The webhook is called by the capture service
itself and is authenticated with a shared token instead of a JWT.
"""

from __future__ import annotations

import hmac
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from src.livemeet.api.deps import get_current_actor, get_meeting_manager
from src.livemeet.config import get_settings
from src.livemeet.meetings.lifecycle import MeetingLifecycleManager
from src.livemeet.meetings.recording.coordinator import parse_capture_payload
from src.livemeet.meetings.schemas import (
    Actor,
    RecordingInfo,
    RecordingOutcome,
    RecordingStats,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["recordings"])

WEBHOOK_TOKEN_HEADER = "X-Capture-Token"


# ── Response Schemas ─────────────────────────────────────────────────────────


class RecordingResponse(BaseModel):
    """Recording state after an operation, plus any best-effort warnings."""

    recording: RecordingInfo | None = None
    warnings: list[dict[str, Any]] = Field(default_factory=list)


def _outcome_to_response(outcome: RecordingOutcome) -> RecordingResponse:
    return RecordingResponse(
        recording=outcome.info,
        warnings=[
            {"name": r.name, "error": r.error}
            for r in outcome.side_effects
            if not r.ok
        ],
    )


# ── Recording Control ────────────────────────────────────────────────────────


@router.post("/meetings/{meeting_id}/recording/start", response_model=RecordingResponse)
async def start_recording(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> RecordingResponse:
    """Start capturing the meeting room."""
    return _outcome_to_response(await manager.start_recording(meeting_id, actor))


@router.post("/meetings/{meeting_id}/recording/pause", response_model=RecordingResponse)
async def pause_recording(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> RecordingResponse:
    return _outcome_to_response(await manager.pause_recording(meeting_id, actor))


@router.post("/meetings/{meeting_id}/recording/resume", response_model=RecordingResponse)
async def resume_recording(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> RecordingResponse:
    return _outcome_to_response(await manager.resume_recording(meeting_id, actor))


@router.post("/meetings/{meeting_id}/recording/stop", response_model=RecordingResponse)
async def stop_recording(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> RecordingResponse:
    """Stop the capture and finalize duration; registers the file for VOD."""
    return _outcome_to_response(await manager.stop_recording(meeting_id, actor))


@router.get("/meetings/{meeting_id}/recording", response_model=RecordingInfo)
async def get_recording(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> RecordingInfo:
    return await manager.get_recording_info(meeting_id, actor)


@router.delete("/meetings/{meeting_id}/recording/media", response_model=RecordingResponse)
async def delete_recording_media(
    meeting_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> RecordingResponse:
    """Delete the stored media of a finished recording (admin only)."""
    return _outcome_to_response(await manager.delete_recording_media(meeting_id, actor))


@router.get("/recordings/stats", response_model=RecordingStats)
async def get_recording_stats(
    actor: Actor = Depends(get_current_actor),
    manager: MeetingLifecycleManager = Depends(get_meeting_manager),
) -> RecordingStats:
    return await manager.get_recording_stats(actor)


# ── Capture Webhook ──────────────────────────────────────────────────────────


@router.post("/recordings/webhook")
async def receive_capture_webhook(request: Request) -> dict:
    """Capture-service callback receiver.

    Routes egress lifecycle events to the lifecycle manager. Always
    returns 200 so the capture service does not retry on processing
    errors; events are idempotent and unknown captures are ignored.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("capture_webhook.invalid_json")
        return {"status": "ok"}

    webhook_token = get_settings().CAPTURE_WEBHOOK_TOKEN
    if webhook_token:
        request_token = request.headers.get(WEBHOOK_TOKEN_HEADER, "")
        if not hmac.compare_digest(request_token, webhook_token):
            logger.warning("capture_webhook.invalid_token")
            return {"status": "ok"}

    if not isinstance(payload, dict):
        logger.warning("capture_webhook.unexpected_payload")
        return {"status": "ok"}

    try:
        event = parse_capture_payload(payload)
    except ValueError as exc:
        logger.warning("capture_webhook.unparseable_event", error=str(exc))
        return {"status": "ok"}

    manager = getattr(request.app.state, "meeting_manager", None)
    if manager is None:
        logger.warning("capture_webhook.manager_unavailable", capture_id=event.capture_id)
        return {"status": "ok"}

    try:
        outcome = await manager.handle_capture_event(event)
    except Exception:
        logger.warning(
            "capture_webhook.handler_error",
            capture_id=event.capture_id,
            capture_status=event.status.value,
            exc_info=True,
        )
        return {"status": "ok"}

    return {"status": "ok", "applied": outcome.applied}
