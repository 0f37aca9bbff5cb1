"""Async HTTP client for the VOD (durable media) service.

Registers finished recordings so they outlive the meeting, and removes
them on admin request. Uses the shared tenacity retry pattern.
"""

from __future__ import annotations

import uuid

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

_vod_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class VodClient:
    """Client for the VOD service REST API.

    Args:
        base_url: VOD service base URL.
        api_key: Bearer token for the VOD service.
    """

    TIMEOUT_MUTATE = 30.0

    def __init__(self, base_url: str, api_key: str) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=self.TIMEOUT_MUTATE)

    @_vod_retry
    async def register_recording(
        self,
        meeting_id: str | uuid.UUID,
        storage_ref: str | None,
        size_bytes: int | None,
        duration_sec: int,
        url: str | None,
    ) -> dict:
        """Create the durable media record for a finished recording.

        Returns:
            The VOD record as returned by the service.
        """
        payload = {
            "meeting_id": str(meeting_id),
            "storage_ref": storage_ref,
            "size_bytes": size_bytes,
            "duration_sec": duration_sec,
            "url": url,
        }
        async with self._client() as client:
            response = await client.post(f"{self._base_url}/recordings", json=payload)
            response.raise_for_status()
            data = response.json() if response.content else {}
            logger.info(
                "vod.recording_registered",
                meeting_id=str(meeting_id),
                vod_id=data.get("id"),
            )
            return data

    @_vod_retry
    async def delete_recording(self, meeting_id: str | uuid.UUID) -> None:
        async with self._client() as client:
            response = await client.delete(f"{self._base_url}/recordings/{meeting_id}")
            if response.status_code == 404:
                logger.info("vod.recording_already_absent", meeting_id=str(meeting_id))
                return
            response.raise_for_status()
            logger.info("vod.recording_deleted", meeting_id=str(meeting_id))
