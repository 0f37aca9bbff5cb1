"""Tests for attendance session bookkeeping and ParticipantSessionTracker."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from src.livemeet.meetings.errors import InvalidStateError, NotFoundError
from src.livemeet.meetings.schemas import Participant, ParticipantRole, ParticipantStatus
from src.livemeet.meetings.sessions import (
    ParticipantSessionTracker,
    apply_close,
    apply_open,
    elapsed_seconds,
    live_seconds,
)

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _participant(**overrides) -> Participant:
    defaults = {"meeting_id": uuid.uuid4(), "user_id": "user-a", "display_name": "A"}
    defaults.update(overrides)
    return Participant(**defaults)


def _assert_session_invariants(participant: Participant) -> None:
    assert sum(s.is_open for s in participant.sessions) <= 1
    assert participant.total_duration_sec == sum(
        s.duration_sec for s in participant.sessions if not s.is_open
    )


# ── Pure Operations ──────────────────────────────────────────────────────────


class TestSessionMath:
    """Test elapsed time and open/close rules on a participant value."""

    def test_elapsed_floors_partial_seconds(self):
        assert elapsed_seconds(T0, T0 + timedelta(seconds=90, milliseconds=999)) == 90

    def test_negative_elapsed_is_clamped(self):
        assert elapsed_seconds(T0, T0 - timedelta(seconds=5)) == 0

    def test_open_then_close_records_duration(self):
        p = _participant()
        assert apply_open(p, T0)
        assert apply_close(p, T0 + timedelta(seconds=42))
        assert p.sessions[0].duration_sec == 42
        assert p.total_duration_sec == 42
        _assert_session_invariants(p)

    def test_close_before_open_clamps_to_zero(self):
        p = _participant()
        apply_open(p, T0)
        apply_close(p, T0 - timedelta(seconds=3))
        assert p.sessions[0].duration_sec == 0
        assert p.total_duration_sec == 0

    def test_second_open_is_noop(self):
        p = _participant()
        assert apply_open(p, T0)
        assert not apply_open(p, T0 + timedelta(seconds=5))
        assert len(p.sessions) == 1

    def test_close_without_open_is_noop(self):
        p = _participant()
        assert not apply_close(p, T0)
        assert p.sessions == []

    def test_reconnects_accumulate(self):
        p = _participant()
        apply_open(p, T0)
        apply_close(p, T0 + timedelta(seconds=30))
        apply_open(p, T0 + timedelta(seconds=60))
        apply_close(p, T0 + timedelta(seconds=75))
        assert [s.duration_sec for s in p.sessions] == [30, 15]
        assert p.total_duration_sec == 45
        _assert_session_invariants(p)

    def test_live_seconds_counts_open_session_only(self):
        p = _participant()
        assert live_seconds(p, T0) == 0
        apply_open(p, T0)
        assert live_seconds(p, T0 + timedelta(seconds=12)) == 12


# ── Tracker ──────────────────────────────────────────────────────────────────


class TestParticipantSessionTracker:
    """Test version-checked session persistence."""

    @pytest.fixture
    def tracker(self, repo) -> ParticipantSessionTracker:
        return ParticipantSessionTracker(repo)

    async def test_open_and_close_persist(self, repo, tracker):
        p = await repo.create_participant(_participant())
        await tracker.open_session(p.id, T0)
        closed = await tracker.close_session(p.id, T0 + timedelta(seconds=20))
        assert closed.total_duration_sec == 20
        stored = await repo.get_participant(p.id)
        assert stored.sessions[0].left_at == T0 + timedelta(seconds=20)
        assert stored.version == 2

    async def test_unknown_participant_raises_not_found(self, tracker):
        with pytest.raises(NotFoundError):
            await tracker.open_session(uuid.uuid4(), T0)

    async def test_concurrent_opens_leave_one_open_session(self, repo, tracker):
        p = await repo.create_participant(_participant())
        await asyncio.gather(
            tracker.open_session(p.id, T0),
            tracker.open_session(p.id, T0 + timedelta(seconds=1)),
        )
        stored = await repo.get_participant(p.id)
        assert len(stored.sessions) == 1
        _assert_session_invariants(stored)

    async def test_retries_after_version_conflict(self, repo, tracker):
        p = await repo.create_participant(_participant())
        original_save = repo.save_participant
        calls = 0

        async def racing_save(participant, expected_version):
            nonlocal calls
            calls += 1
            if calls == 1:
                # Another writer bumps the version first
                stale = await repo.get_participant(participant.id)
                await original_save(stale, stale.version)
            return await original_save(participant, expected_version)

        repo.save_participant = racing_save
        result = await tracker.open_session(p.id, T0)
        assert calls == 2
        assert len(result.sessions) == 1

    async def test_persistent_contention_raises_invalid_state(self, repo, tracker):
        p = await repo.create_participant(_participant())

        async def always_stale(participant, expected_version):
            return None

        repo.save_participant = always_stale
        with pytest.raises(InvalidStateError):
            await tracker.open_session(p.id, T0)

    async def test_admit_reports_new_admission_once(self, repo, tracker):
        p = await repo.create_participant(_participant())
        admitted, newly = await tracker.admit(p.id, T0)
        assert newly
        assert admitted.status == ParticipantStatus.ADMITTED
        assert admitted.open_session is not None

        again, newly = await tracker.admit(p.id, T0 + timedelta(seconds=5))
        assert not newly
        assert len(again.sessions) == 1

    async def test_admit_enforces_source_status(self, repo, tracker):
        p = await repo.create_participant(_participant(status=ParticipantStatus.LEFT))
        with pytest.raises(InvalidStateError):
            await tracker.admit(
                p.id, T0, from_statuses=frozenset({ParticipantStatus.WAITING})
            )

    async def test_mark_left_closes_session(self, repo, tracker):
        p = await repo.create_participant(_participant())
        await tracker.admit(p.id, T0)
        left, previous = await tracker.mark_left(p.id, T0 + timedelta(seconds=33))
        assert previous == ParticipantStatus.ADMITTED
        assert left.status == ParticipantStatus.LEFT
        assert left.total_duration_sec == 33
        assert left.open_session is None

    async def test_requeue_only_moves_left_participants(self, repo, tracker):
        left = await repo.create_participant(_participant(status=ParticipantStatus.LEFT))
        admitted = await repo.create_participant(
            _participant(user_id="user-b", status=ParticipantStatus.ADMITTED)
        )
        assert (await tracker.requeue(left.id)).status == ParticipantStatus.WAITING
        assert (await tracker.requeue(admitted.id)).status == ParticipantStatus.ADMITTED

    async def test_set_role(self, repo, tracker):
        p = await repo.create_participant(_participant())
        updated = await tracker.set_role(p.id, ParticipantRole.HOST)
        assert updated.role == ParticipantRole.HOST

    async def test_admit_waiting_counts_only_waiting(self, repo, tracker):
        meeting_id = uuid.uuid4()
        await repo.create_participant(_participant(meeting_id=meeting_id, user_id="a"))
        await repo.create_participant(_participant(meeting_id=meeting_id, user_id="b"))
        await repo.create_participant(
            _participant(meeting_id=meeting_id, user_id="c", status=ParticipantStatus.LEFT)
        )
        assert await tracker.admit_waiting(meeting_id, T0) == 2
        statuses = sorted(p.status.value for p in await repo.list_participants(meeting_id))
        assert statuses == ["ADMITTED", "ADMITTED", "LEFT"]

    async def test_close_all_for_meeting(self, repo, tracker):
        meeting_id = uuid.uuid4()
        a = await repo.create_participant(_participant(meeting_id=meeting_id, user_id="a"))
        await repo.create_participant(_participant(meeting_id=meeting_id, user_id="b"))
        await tracker.admit(a.id, T0)

        closed = await tracker.close_all_for_meeting(meeting_id, T0 + timedelta(seconds=60))
        assert closed == 2
        for p in await repo.list_participants(meeting_id):
            assert p.status == ParticipantStatus.LEFT
            assert p.open_session is None
            _assert_session_invariants(p)
        stored_a = await repo.get_participant(a.id)
        assert stored_a.total_duration_sec == 60

    async def test_close_all_skips_participants_removed_concurrently(self, repo, tracker):
        meeting_id = uuid.uuid4()
        a = await repo.create_participant(_participant(meeting_id=meeting_id, user_id="a"))
        b = await repo.create_participant(_participant(meeting_id=meeting_id, user_id="b"))
        original_list = repo.list_participants

        async def list_then_delete(mid, statuses=None):
            result = await original_list(mid, statuses)
            await repo.delete_participant(b.id)
            return result

        repo.list_participants = list_then_delete
        assert await tracker.close_all_for_meeting(meeting_id, T0) == 1
        assert (await repo.get_participant(a.id)).status == ParticipantStatus.LEFT
