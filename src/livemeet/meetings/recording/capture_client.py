"""Async HTTP client for the capture / signaling service.

The service exposes a JSON-over-HTTP RPC API (room service + egress).
Requests are authorized with a short-lived HS256 access token signed with
the service API secret (python-jose), carrying room-admin and recording
grants.

Retry logic follows the shared client pattern (tenacity, 3 attempts,
exponential backoff 1-10s); the final error is re-raised so callers see the
underlying httpx exception.
"""

from __future__ import annotations

import time

import httpx
import structlog
from jose import jwt
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

_capture_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)

ROOM_SERVICE = "twirp/livekit.RoomService"
EGRESS_SERVICE = "twirp/livekit.Egress"


class CaptureServiceError(Exception):
    """Raised when the capture service answers with an unusable response."""


class CaptureClient:
    """Client for room lifecycle and recording capture.

    Args:
        base_url: Service HTTP base URL.
        api_key: API key, used as the token issuer.
        api_secret: Secret used to sign access tokens.
    """

    TIMEOUT_MUTATE = 30.0
    TOKEN_TTL_SECONDS = 600

    def __init__(self, base_url: str, api_key: str, api_secret: str) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._api_secret = api_secret

    def _access_token(self, room: str | None = None) -> str:
        now = int(time.time())
        video_grant: dict = {"roomCreate": True, "roomAdmin": True, "roomRecord": True}
        if room:
            video_grant["room"] = room
        claims = {
            "iss": self._api_key,
            "nbf": now,
            "exp": now + self.TOKEN_TTL_SECONDS,
            "video": video_grant,
        }
        return jwt.encode(claims, self._api_secret, algorithm="HS256")

    def _client(self, room: str | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self._access_token(room)}",
                "Content-Type": "application/json",
            },
            timeout=self.TIMEOUT_MUTATE,
        )

    async def _call(self, service: str, method: str, payload: dict, room: str | None = None) -> dict:
        async with self._client(room) as client:
            response = await client.post(
                f"{self._base_url}/{service}/{method}",
                json=payload,
            )
            response.raise_for_status()
            return response.json() if response.content else {}

    # ── Recording ────────────────────────────────────────────────────────

    @_capture_retry
    async def start_capture(self, room_id: str, output_target: str) -> str:
        """Start a composite capture of a room into a file.

        Args:
            room_id: Room name (the meeting id).
            output_target: Storage path of the produced file.

        Returns:
            The capture id assigned by the service.
        """
        data = await self._call(
            EGRESS_SERVICE,
            "StartRoomCompositeEgress",
            {"room_name": room_id, "file_outputs": [{"filepath": output_target}]},
            room=room_id,
        )
        capture_id = data.get("egress_id")
        if not capture_id:
            raise CaptureServiceError(f"No capture id returned for room {room_id}")
        logger.info("capture.started", room_id=room_id, capture_id=capture_id)
        return capture_id

    @_capture_retry
    async def stop_capture(self, capture_id: str) -> None:
        await self._call(EGRESS_SERVICE, "StopEgress", {"egress_id": capture_id})
        logger.info("capture.stopped", capture_id=capture_id)

    # ── Rooms ────────────────────────────────────────────────────────────

    @_capture_retry
    async def create_room(self, room_id: str, max_participants: int) -> None:
        await self._call(
            ROOM_SERVICE,
            "CreateRoom",
            {"name": room_id, "max_participants": max_participants},
            room=room_id,
        )
        logger.info("capture.room_created", room_id=room_id, max_participants=max_participants)

    @_capture_retry
    async def delete_room(self, room_id: str) -> None:
        await self._call(ROOM_SERVICE, "DeleteRoom", {"room": room_id}, room=room_id)
        logger.info("capture.room_deleted", room_id=room_id)

    @_capture_retry
    async def remove_participant(self, room_id: str, identity: str) -> None:
        """Disconnect a participant identity from a room."""
        await self._call(
            ROOM_SERVICE,
            "RemoveParticipant",
            {"room": room_id, "identity": identity},
            room=room_id,
        )
        logger.info("capture.participant_removed", room_id=room_id, identity=identity)
