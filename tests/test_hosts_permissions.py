"""Unit tests for host identity resolution, permission checks, and transition rules."""

from __future__ import annotations

import uuid
from types import SimpleNamespace

import pytest

from src.livemeet.meetings import hosts, permissions
from src.livemeet.meetings.errors import ForbiddenError, InvalidStateError
from src.livemeet.meetings.schemas import (
    Actor,
    HostReference,
    Meeting,
    MeetingStatus,
    Participant,
    RecordingStatus,
    ResolvedHost,
    SystemRole,
)
from src.livemeet.meetings.transitions import (
    InvalidTransitionError,
    require_recording_status,
    sources_for,
    validate_transition,
)


def _meeting(**overrides) -> Meeting:
    defaults = {
        "title": "Algebra 101",
        "original_host": "host-1",
        "current_host": None,
        "invite_code": "ABCD1234",
    }
    defaults.update(overrides)
    return Meeting(**defaults)


# ── Host Reference Coercion ──────────────────────────────────────────────────


class TestHostReferences:
    """Test that raw host values fold into the HostRef tagged union."""

    def test_bare_string_becomes_reference(self):
        meeting = _meeting(original_host="host-1")
        assert isinstance(meeting.original_host, HostReference)
        assert meeting.original_host.id == "host-1"

    def test_uuid_becomes_reference(self):
        host_uuid = uuid.uuid4()
        meeting = _meeting(original_host=host_uuid)
        assert meeting.original_host.id == str(host_uuid)

    def test_expanded_dict_becomes_resolved(self):
        meeting = _meeting(
            original_host={"_id": "host-1", "displayName": "Ada", "email": "ada@example.com"}
        )
        assert isinstance(meeting.original_host, ResolvedHost)
        assert meeting.original_host.id == "host-1"
        assert meeting.original_host.display_name == "Ada"

    def test_expanded_object_becomes_resolved(self):
        entity = SimpleNamespace(id="host-2", display_name="Grace", email=None)
        meeting = _meeting(current_host=entity)
        assert isinstance(meeting.current_host, ResolvedHost)
        assert meeting.current_host.id == "host-2"

    def test_dict_without_id_is_rejected(self):
        with pytest.raises(ValueError):
            _meeting(original_host={"email": "nobody@example.com"})

    def test_serialized_ref_round_trips(self):
        meeting = _meeting(current_host={"_id": "host-2"})
        again = Meeting.model_validate(meeting.model_dump())
        assert again.current_host == meeting.current_host


# ── Host Resolution ──────────────────────────────────────────────────────────


class TestHostResolution:
    """Test dual host identity and legacy backfill."""

    def test_identity_backfills_current_from_original(self):
        identity = hosts.identity(_meeting(current_host=None))
        assert identity.original_host_id == "host-1"
        assert identity.current_host_id == "host-1"

    def test_normalize_fills_current_host_without_mutating(self):
        meeting = _meeting(current_host=None)
        normalized = hosts.normalize(meeting)
        assert normalized.current_host.id == "host-1"
        assert meeting.current_host is None

    def test_normalize_keeps_existing_current_host(self):
        meeting = _meeting(current_host="host-2")
        assert hosts.normalize(meeting) is meeting

    def test_is_host_matches_original_and_current(self):
        meeting = _meeting(current_host="host-2")
        assert hosts.is_host(meeting, "host-1")
        assert hosts.is_host(meeting, "host-2")
        assert not hosts.is_host(meeting, "someone-else")

    def test_is_host_ignores_reference_shape(self):
        meeting = _meeting(
            original_host={"id": "host-1", "email": "h@example.com"},
            current_host=SimpleNamespace(id="host-2"),
        )
        assert hosts.is_host(meeting, "host-1")
        assert hosts.is_host(meeting, "host-2")

    def test_is_host_rejects_missing_actor(self):
        assert not hosts.is_host(_meeting(), None)
        assert not hosts.is_host(_meeting(), "")


# ── Permissions ──────────────────────────────────────────────────────────────


class TestPermissions:
    """Test the admin / host permission gate."""

    def test_admin_can_manage_any_meeting(self):
        admin = Actor(id="admin-1", role=SystemRole.ADMIN)
        permissions.require_host_or_admin(_meeting(), admin)

    def test_host_can_manage(self):
        permissions.require_host_or_admin(_meeting(), Actor(id="host-1"))

    def test_transferred_host_can_manage(self):
        permissions.require_host_or_admin(
            _meeting(current_host="host-2"), Actor(id="host-2")
        )

    def test_other_member_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            permissions.require_host_or_admin(_meeting(), Actor(id="member-1"))

    def test_anonymous_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            permissions.require_host_or_admin(_meeting(), None)

    @pytest.mark.parametrize("role", list(SystemRole))
    def test_every_role_can_create(self, role):
        permissions.require_can_create(Actor(id="u", role=role))

    def test_require_admin_rejects_tutor(self):
        with pytest.raises(ForbiddenError):
            permissions.require_admin(Actor(id="t", role=SystemRole.TUTOR))

    def test_self_or_manager(self):
        meeting = _meeting()
        participant = Participant(
            meeting_id=meeting.id, user_id="member-1", display_name="Member"
        )
        permissions.require_self_or_manager(meeting, participant, Actor(id="member-1"))
        permissions.require_self_or_manager(meeting, participant, Actor(id="host-1"))
        with pytest.raises(ForbiddenError):
            permissions.require_self_or_manager(meeting, participant, Actor(id="member-2"))


# ── Transition Rules ─────────────────────────────────────────────────────────


class TestTransitions:
    """Test meeting and recording transition tables."""

    @pytest.mark.parametrize("source", [MeetingStatus.SCHEDULED, MeetingStatus.CREATED])
    def test_open_meetings_can_go_live_or_cancel(self, source):
        validate_transition(source, MeetingStatus.LIVE)
        validate_transition(source, MeetingStatus.CANCELED)

    def test_live_can_only_end(self):
        validate_transition(MeetingStatus.LIVE, MeetingStatus.ENDED)
        with pytest.raises(InvalidTransitionError):
            validate_transition(MeetingStatus.LIVE, MeetingStatus.CANCELED)
        with pytest.raises(InvalidTransitionError):
            validate_transition(MeetingStatus.LIVE, MeetingStatus.LIVE)

    @pytest.mark.parametrize("terminal", [MeetingStatus.ENDED, MeetingStatus.CANCELED])
    def test_terminal_statuses_go_nowhere(self, terminal):
        for target in MeetingStatus:
            with pytest.raises(InvalidStateError):
                validate_transition(terminal, target)

    def test_sources_for_live(self):
        assert sources_for(MeetingStatus.LIVE) == {
            MeetingStatus.SCHEDULED,
            MeetingStatus.CREATED,
        }

    def test_sources_for_ended_include_live(self):
        assert MeetingStatus.LIVE in sources_for(MeetingStatus.ENDED)

    def test_pause_requires_recording(self):
        require_recording_status("pause", RecordingStatus.RECORDING)
        for status in (RecordingStatus.NONE, RecordingStatus.PAUSED, RecordingStatus.STOPPED):
            with pytest.raises(InvalidStateError):
                require_recording_status("pause", status)

    def test_resume_requires_paused(self):
        require_recording_status("resume", RecordingStatus.PAUSED)
        with pytest.raises(InvalidStateError):
            require_recording_status("resume", RecordingStatus.RECORDING)

    def test_start_allowed_after_finished_cycle(self):
        require_recording_status("start", RecordingStatus.STOPPED)
        require_recording_status("start", RecordingStatus.FAILED)
        with pytest.raises(InvalidStateError):
            require_recording_status("start", RecordingStatus.PAUSED)
