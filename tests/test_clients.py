"""Tests for the capture and VOD HTTP clients.

HTTP is mocked by patching httpx.AsyncClient methods with canned
httpx.Response objects.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from jose import jwt

from src.livemeet.meetings.recording.capture_client import (
    EGRESS_SERVICE,
    ROOM_SERVICE,
    CaptureClient,
    CaptureServiceError,
)
from src.livemeet.meetings.recording.vod_client import VodClient


@pytest.fixture
def capture_client() -> CaptureClient:
    return CaptureClient(
        base_url="https://capture.test/",
        api_key="capture-key",
        api_secret="capture-secret",
    )


@pytest.fixture
def vod_client() -> VodClient:
    return VodClient(base_url="https://vod.test", api_key="vod-key")


def _response(status: int, method: str = "POST", **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request(method, "https://test.com"), **kwargs)


# ── CaptureClient ────────────────────────────────────────────────────────────


class TestCaptureClient:
    """Tests for CaptureClient RPC calls."""

    def test_access_token_carries_grants(self, capture_client):
        token = capture_client._access_token(room="room-1")
        claims = jwt.decode(token, "capture-secret", algorithms=["HS256"])
        assert claims["iss"] == "capture-key"
        assert claims["video"]["room"] == "room-1"
        assert claims["video"]["roomRecord"] is True
        assert claims["exp"] - claims["nbf"] == CaptureClient.TOKEN_TTL_SECONDS

    def test_access_token_without_room(self, capture_client):
        claims = jwt.get_unverified_claims(capture_client._access_token())
        assert "room" not in claims["video"]

    async def test_start_capture_returns_capture_id(self, capture_client):
        mock_response = _response(200, json={"egress_id": "EG_abc", "status": "EGRESS_STARTING"})

        with patch(
            "httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response
        ) as mock_post:
            capture_id = await capture_client.start_capture("room-1", "recordings/a.mp4")

        assert capture_id == "EG_abc"
        url = mock_post.call_args.args[0]
        assert url == f"https://capture.test/{EGRESS_SERVICE}/StartRoomCompositeEgress"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["room_name"] == "room-1"
        assert payload["file_outputs"] == [{"filepath": "recordings/a.mp4"}]

    async def test_start_capture_without_id_raises(self, capture_client):
        mock_response = _response(200, json={})

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response):
            with pytest.raises(CaptureServiceError):
                await capture_client.start_capture("room-1", "recordings/a.mp4")

    async def test_stop_capture_sends_id(self, capture_client):
        mock_response = _response(200, json={})

        with patch(
            "httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response
        ) as mock_post:
            await capture_client.stop_capture("EG_abc")

        assert mock_post.call_args.args[0].endswith("/StopEgress")
        assert mock_post.call_args.kwargs["json"] == {"egress_id": "EG_abc"}

    async def test_create_room_sets_capacity(self, capture_client):
        mock_response = _response(200, content=b"")

        with patch(
            "httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response
        ) as mock_post:
            await capture_client.create_room("room-1", 50)

        assert mock_post.call_args.args[0] == f"https://capture.test/{ROOM_SERVICE}/CreateRoom"
        assert mock_post.call_args.kwargs["json"] == {"name": "room-1", "max_participants": 50}

    async def test_remove_participant_targets_identity(self, capture_client):
        mock_response = _response(200, json={})

        with patch(
            "httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response
        ) as mock_post:
            await capture_client.remove_participant("room-1", "user-42")

        assert mock_post.call_args.kwargs["json"] == {"room": "room-1", "identity": "user-42"}

    async def test_retry_on_transient_failure(self, capture_client):
        """Transient 5xx responses are retried before succeeding."""
        error_response = _response(503)
        success_response = _response(200, json={})
        call_count = 0

        async def mock_post(*args, **kwargs):
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                return error_response
            return success_response

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, side_effect=mock_post):
            await capture_client.delete_room("room-1")

        assert call_count == 2


# ── VodClient ────────────────────────────────────────────────────────────────


class TestVodClient:
    """Tests for VodClient REST calls."""

    async def test_register_recording_posts_metadata(self, vod_client):
        meeting_id = uuid.uuid4()
        mock_response = _response(201, json={"id": "vod-1"})

        with patch(
            "httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response
        ) as mock_post:
            result = await vod_client.register_recording(
                meeting_id=meeting_id,
                storage_ref="recordings/a.mp4",
                size_bytes=2048,
                duration_sec=300,
                url="/uploads/recordings/a.mp4",
            )

        assert result == {"id": "vod-1"}
        assert mock_post.call_args.args[0] == "https://vod.test/recordings"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["meeting_id"] == str(meeting_id)
        assert payload["duration_sec"] == 300

    async def test_delete_recording(self, vod_client):
        meeting_id = uuid.uuid4()
        mock_response = _response(204, method="DELETE")

        with patch(
            "httpx.AsyncClient.delete", new_callable=AsyncMock, return_value=mock_response
        ) as mock_delete:
            await vod_client.delete_recording(meeting_id)

        assert mock_delete.call_args.args[0] == f"https://vod.test/recordings/{meeting_id}"

    async def test_delete_missing_recording_is_success(self, vod_client):
        mock_response = _response(404, method="DELETE")

        with patch(
            "httpx.AsyncClient.delete", new_callable=AsyncMock, return_value=mock_response
        ) as mock_delete:
            await vod_client.delete_recording(uuid.uuid4())

        assert mock_delete.await_count == 1

    async def test_client_error_is_raised(self, vod_client):
        mock_response = _response(400, json={"error": "bad"})

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=mock_response) as mock_post:
            with pytest.raises(httpx.HTTPStatusError):
                await vod_client.register_recording(
                    meeting_id="m", storage_ref=None, size_bytes=None, duration_sec=0, url=None
                )

        assert mock_post.await_count == 3  # retries exhausted, final error re-raised
