"""Best-effort collaborator calls.

Side steps such as room preparation or VOD registration must never fail the
primary operation. ``best_effort`` awaits the call and folds any exception
into a SideEffectResult; the lifecycle manager logs the results.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Any

from src.livemeet.meetings.schemas import SideEffectResult


async def best_effort(
    name: str, call: Awaitable[Any], **detail: Any
) -> SideEffectResult:
    """Await ``call`` and report its outcome instead of raising."""
    try:
        await call
    except Exception as exc:  # noqa: BLE001
        return SideEffectResult(
            name=name, ok=False, error=f"{type(exc).__name__}: {exc}", detail=detail
        )
    return SideEffectResult(name=name, ok=True, detail=detail)


def skipped(name: str, reason: str) -> SideEffectResult:
    """Result for a side effect that was not attempted."""
    return SideEffectResult(name=name, ok=True, detail={"skipped": reason})
