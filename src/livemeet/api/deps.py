"""FastAPI dependency injection for caller identity and meeting services.

Access tokens are issued by the external auth service. ``sub`` is the
user id and the optional ``role`` claim selects the system role.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from src.livemeet.core.security import InvalidTokenError, verify_token
from src.livemeet.meetings.lifecycle import MeetingLifecycleManager
from src.livemeet.meetings.schemas import Actor, SystemRole


def _actor_from_token(token: str) -> Actor:
    try:
        payload = verify_token(token, token_type="access")
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    try:
        role = SystemRole(payload.get("role") or SystemRole.MEMBER.value)
    except ValueError:
        role = SystemRole.MEMBER
    return Actor(id=str(payload["sub"]), role=role)


async def get_optional_actor(request: Request) -> Actor | None:
    """Return the caller when a bearer token is supplied, None for guests.

    Raises:
        HTTPException(401): If a token is supplied but invalid.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unsupported authorization scheme",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _actor_from_token(auth_header[7:])


async def get_current_actor(
    actor: Actor | None = Depends(get_optional_actor),
) -> Actor:
    """Require an authenticated caller.

    Raises:
        HTTPException(401): If no valid authentication is provided.
    """
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def get_meeting_manager(request: Request) -> MeetingLifecycleManager:
    """Retrieve MeetingLifecycleManager from app.state, 503 if not available."""
    manager = getattr(request.app.state, "meeting_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Meeting service not initialized",
        )
    return manager

