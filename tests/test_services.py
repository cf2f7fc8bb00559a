"""
Unit tests for the session directory, token state store and mutation API.
"""

import random
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

import services
from errors import NotFound, PersistenceError, ValidationError
from notifier import session_channel, token_state_channel


class TestDirectory:
    """Test clinic and session lookups."""

    def test_resolve_clinic_by_slug(self, db, clinic):
        resolved = services.resolve_clinic(db, "city-health")

        assert resolved.id == clinic.id
        assert resolved.name == "City Health"

    def test_unknown_clinic_is_not_found(self, db, clinic):
        with pytest.raises(NotFound):
            services.resolve_clinic(db, "nowhere")

    def test_clinic_needs_slug_and_name(self, db, local_notifier):
        with pytest.raises(ValidationError):
            services.create_clinic(db, "  ", "Nameless")

    def test_ensure_clinic_is_idempotent(self, db, clinic):
        again = services.ensure_clinic(db, "city-health", "Other Name")

        assert again.id == clinic.id
        assert again.name == "City Health"

    def test_sessions_listed_by_name(self, db, clinic):
        for name in ("Night", "Evening", "Morning"):
            services.add_session(db, clinic.id, name)

        names = [s.name for s in services.list_sessions(db, clinic.id)]

        assert names == ["Evening", "Morning", "Night"]

    def test_added_session_is_inactive(self, db, morning):
        assert morning.is_active is False
        assert services.get_active_session(db, morning.clinic_id) is None

    def test_add_session_rejects_blank_name(self, db, clinic):
        with pytest.raises(ValidationError):
            services.add_session(db, clinic.id, "   ")

    def test_add_session_to_unknown_clinic(self, db, local_notifier):
        with pytest.raises(NotFound):
            services.add_session(db, 999, "Morning")


class TestStartSession:
    """Test activation: one active session per clinic, hard token reset."""

    def test_start_activates_and_resets(self, db, morning):
        state = services.start_session(db, morning.id)

        assert state.current_token == 1
        assert state.no_shows == []
        assert services.get_active_session(db, morning.clinic_id).id == morning.id

    def test_only_one_session_active(self, db, clinic, morning):
        evening = services.add_session(db, clinic.id, "Evening")
        services.start_session(db, morning.id)
        services.start_session(db, evening.id)

        active = [s.name for s in services.list_sessions(db, clinic.id) if s.is_active]

        assert active == ["Evening"]

    def test_restart_discards_previous_state(self, db, active_morning):
        clinic_id = active_morning.clinic_id
        services.next_patient(db, clinic_id, active_morning.id)
        services.mark_no_show(db, clinic_id, active_morning.id)

        state = services.start_session(db, active_morning.id)

        assert (state.current_token, state.no_shows) == (1, [])
        stored = services.read_token_state(db, clinic_id, active_morning.id)
        assert (stored.current_token, stored.no_shows) == (1, [])

    def test_start_unknown_session(self, db, clinic):
        with pytest.raises(NotFound):
            services.start_session(db, 404)

    def test_start_broadcasts_deactivation_before_activation(self, db, clinic, morning, recorder):
        evening = services.add_session(db, clinic.id, "Evening")
        services.start_session(db, morning.id)
        services.next_patient(db, clinic.id, morning.id)
        recorder.published.clear()

        services.start_session(db, evening.id)

        session_events = [p for c, p in recorder.published if c == session_channel(clinic.id)]
        assert [(p["new"]["name"], p["new"]["is_active"]) for p in session_events] == [
            ("Morning", False),
            ("Evening", True),
        ]
        token_events = [p for c, p in recorder.published if c == token_state_channel(evening.id)]
        assert [p["event"] for p in token_events] == ["INSERT"]
        assert token_events[0]["new"]["current_token"] == 1

    def test_restart_broadcasts_delete_then_insert(self, db, active_morning, recorder):
        services.start_session(db, active_morning.id)

        token_events = [p for c, p in recorder.published if c == token_state_channel(active_morning.id)]
        assert [p["event"] for p in token_events] == ["DELETE", "INSERT"]
        assert token_events[0]["new"] is None
        assert token_events[0]["old"]["session_id"] == active_morning.id


class TestEndSession:
    """Test deactivation and the token state tombstone."""

    def test_end_keeps_token_state(self, db, active_morning):
        clinic_id = active_morning.clinic_id
        services.next_patient(db, clinic_id, active_morning.id)

        ended = services.end_session(db, active_morning.id)

        assert ended.is_active is False
        assert services.get_active_session(db, clinic_id) is None
        assert services.read_token_state(db, clinic_id, active_morning.id).current_token == 2

    def test_ended_session_cannot_advance(self, db, active_morning):
        services.end_session(db, active_morning.id)

        with pytest.raises(NotFound):
            services.next_patient(db, active_morning.clinic_id, active_morning.id)

    def test_end_broadcasts_session_row(self, db, active_morning, recorder):
        services.end_session(db, active_morning.id)

        channel, payload = recorder.published[-1]
        assert channel == session_channel(active_morning.clinic_id)
        assert payload["table"] == "clinic_sessions"
        assert payload["new"]["is_active"] is False


class TestAdvance:
    """Test the single token mutation primitive."""

    def test_keeps_stored_no_shows_when_omitted(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.advance(db, clinic_id, session_id, 3)
        services.advance(db, clinic_id, session_id, 3, [1, 2])

        state = services.advance(db, clinic_id, session_id, 7)

        assert state.current_token == 7
        assert state.no_shows == [1, 2]

    def test_replaces_no_shows_when_given(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.advance(db, clinic_id, session_id, 5)
        services.advance(db, clinic_id, session_id, 5, [2, 4])

        state = services.advance(db, clinic_id, session_id, 5, [4])

        assert state.no_shows == [4]

    def test_updates_last_updated(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        before = services.read_token_state(db, clinic_id, session_id).last_updated

        state = services.advance(db, clinic_id, session_id, 2)

        assert state.last_updated >= before

    @pytest.mark.parametrize("value", [0, -3, "4", 2.5, True])
    def test_rejects_invalid_token(self, db, active_morning, value):
        with pytest.raises(ValidationError):
            services.advance(db, active_morning.clinic_id, active_morning.id, value)

    def test_rejects_negative_no_show(self, db, active_morning):
        with pytest.raises(ValidationError):
            services.advance(db, active_morning.clinic_id, active_morning.id, 3, [-1])

    def test_rejects_no_show_not_yet_called(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.advance(db, clinic_id, session_id, 4)

        with pytest.raises(ValidationError):
            services.advance(db, clinic_id, session_id, 9, [6])

        assert services.read_token_state(db, clinic_id, session_id).current_token == 4

    def test_rejects_no_show_at_new_current(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.advance(db, clinic_id, session_id, 4)

        with pytest.raises(ValidationError):
            services.advance(db, clinic_id, session_id, 4, [4])

    def test_accepts_called_number_as_no_show(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.advance(db, clinic_id, session_id, 4)

        state = services.advance(db, clinic_id, session_id, 5, [4])

        assert state.no_shows == [4]

    def test_unknown_clinic(self, db, active_morning):
        with pytest.raises(NotFound):
            services.advance(db, 999, active_morning.id, 2)

    def test_session_of_other_clinic(self, db, active_morning):
        other = services.create_clinic(db, "river-side", "River Side")

        with pytest.raises(NotFound):
            services.advance(db, other.id, active_morning.id, 2)

    def test_broadcasts_full_row(self, db, active_morning, recorder):
        services.advance(db, active_morning.clinic_id, active_morning.id, 6)
        services.advance(db, active_morning.clinic_id, active_morning.id, 6, [3])

        channel, payload = recorder.published[-1]
        assert channel == token_state_channel(active_morning.id)
        assert payload["event"] == "UPDATE"
        assert payload["new"]["current_token"] == 6
        assert payload["new"]["no_shows"] == [3]
        assert payload["new"]["clinic_id"] == active_morning.clinic_id

    def test_store_failure_leaves_state_unchanged(self, db, active_morning, recorder):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        failure = OperationalError("UPDATE token_state", {}, Exception("disk I/O error"))

        with patch.object(db, "commit", side_effect=failure):
            with pytest.raises(PersistenceError):
                services.advance(db, clinic_id, session_id, 10, [])

        state = services.read_token_state(db, clinic_id, session_id)
        assert (state.current_token, state.no_shows) == (1, [])
        assert recorder.published == []


class TestTokenOperations:
    """Test the operations built on advance."""

    def test_next_patient(self, db, active_morning):
        state = services.next_patient(db, active_morning.clinic_id, active_morning.id)

        assert state.current_token == 2

    def test_mark_no_show_advances_and_records(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.advance(db, clinic_id, session_id, 4)
        services.advance(db, clinic_id, session_id, 4, [2])

        state = services.mark_no_show(db, clinic_id, session_id)

        assert state.current_token == 5
        assert state.no_shows == [2, 4]

    def test_manual_set_parses_text(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.mark_no_show(db, clinic_id, session_id)

        state = services.manual_set(db, clinic_id, session_id, " 12 ")

        assert state.current_token == 12
        assert state.no_shows == [1]

    @pytest.mark.parametrize("raw", ["abc", "", None, "3.5"])
    def test_manual_set_rejects_garbage(self, db, active_morning, raw):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id

        with pytest.raises(ValidationError):
            services.manual_set(db, clinic_id, session_id, raw)

        assert services.read_token_state(db, clinic_id, session_id).current_token == 1

    def test_manual_set_rejects_number_too_large_to_store(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id

        with pytest.raises(ValidationError):
            services.manual_set(db, clinic_id, session_id, "99999999999999999999")

        assert services.read_token_state(db, clinic_id, session_id).current_token == 1
        assert services.next_patient(db, clinic_id, session_id).current_token == 2

    def test_next_patient_stops_at_largest_token(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.manual_set(db, clinic_id, session_id, services.MAX_TOKEN)

        with pytest.raises(ValidationError):
            services.next_patient(db, clinic_id, session_id)

        assert services.read_token_state(db, clinic_id, session_id).current_token == services.MAX_TOKEN

    def test_overflow_while_writing_rolls_back(self, db, active_morning, recorder):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id

        with patch.object(db, "commit", side_effect=OverflowError("int too large")):
            with pytest.raises(PersistenceError):
                services.next_patient(db, clinic_id, session_id)

        assert services.read_token_state(db, clinic_id, session_id).current_token == 1
        assert recorder.published == []

    def test_requeue_keeps_current_token(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.mark_no_show(db, clinic_id, session_id)
        services.mark_no_show(db, clinic_id, session_id)

        state = services.requeue_no_show(db, clinic_id, session_id, 1)

        assert state.current_token == 3
        assert state.no_shows == [2]

    def test_requeue_absent_token_is_noop(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        services.mark_no_show(db, clinic_id, session_id)

        state = services.requeue_no_show(db, clinic_id, session_id, 42)

        assert state.current_token == 2
        assert state.no_shows == [1]

    def test_random_operations_keep_invariants(self, db, active_morning):
        clinic_id, session_id = active_morning.clinic_id, active_morning.id
        rng = random.Random(7)
        # token -> number being served right after it was marked
        marked_at = {}

        for _ in range(150):
            before = services.read_token_state(db, clinic_id, session_id)
            op = rng.choice(["next", "no_show", "manual", "requeue"])
            if op == "next":
                services.next_patient(db, clinic_id, session_id)
            elif op == "no_show":
                after = services.mark_no_show(db, clinic_id, session_id)
                marked_at[before.current_token] = after.current_token
            elif op == "manual":
                services.manual_set(db, clinic_id, session_id, rng.randint(1, 60))
            elif before.no_shows:
                token = rng.choice(before.no_shows)
                services.requeue_no_show(db, clinic_id, session_id, token)
                after = services.read_token_state(db, clinic_id, session_id)
                assert after.current_token == before.current_token

            state = services.read_token_state(db, clinic_id, session_id)
            assert state.current_token >= 1
            assert state.no_shows == sorted(set(state.no_shows))
            for token in state.no_shows:
                assert token >= 0
                assert token < marked_at[token]
