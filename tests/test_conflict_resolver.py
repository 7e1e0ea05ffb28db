"""Tests for offline sync conflict resolution."""

from datetime import date, datetime, timedelta, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from evv_engine.sync.conflict_resolver import (
    ConflictResolver,
    ConflictSeverity,
    ConflictStrategy,
    ManualResolution,
    RecordType,
    ResolverConfig,
    normalize_record_type,
)
from tests.conftest import CENTER_LAT, CENTER_LON, NOW, SCHEDULED_START

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver() -> ConflictResolver:
    return ConflictResolver(clock=lambda: NOW)


def evv_copy(**overrides):
    record = {
        "id": "rec-1",
        "clock_in_time": SCHEDULED_START.isoformat(),
        "clock_out_time": None,
        "clock_in_location": {"latitude": CENTER_LAT, "longitude": CENTER_LON},
        "service_date": "2026-03-02",
        "client_attestation": None,
        "updated_at": T0.isoformat(),
    }
    record.update(overrides)
    return record


class TestValuesDiffer:
    """Tolerance-aware comparison."""

    def test_timestamps_within_tolerance(self, resolver):
        assert resolver.values_differ(T0, T0 + timedelta(milliseconds=900)) is False
        assert resolver.values_differ(T0, T0 + timedelta(seconds=2)) is True

    def test_iso_string_against_datetime(self, resolver):
        assert resolver.values_differ(T0.isoformat(), T0) is False
        assert resolver.values_differ("2026-03-02T12:00:00Z", T0) is False

    def test_naive_timestamp_is_treated_as_utc(self, resolver):
        assert resolver.values_differ(T0.replace(tzinfo=None), T0) is False

    def test_coordinates_within_tolerance(self, resolver):
        a = {"latitude": CENTER_LAT, "longitude": CENTER_LON}
        b = {"latitude": CENTER_LAT + 5e-7, "longitude": CENTER_LON, "accuracy_meters": 8}
        c = {"latitude": CENTER_LAT + 1e-4, "longitude": CENTER_LON}

        assert resolver.values_differ(a, b) is False
        assert resolver.values_differ(a, c) is True

    def test_date_against_iso_string(self, resolver):
        assert resolver.values_differ(date(2026, 3, 2), "2026-03-02") is False
        assert resolver.values_differ(date(2026, 3, 2), "2026-03-03") is True

    def test_plain_values(self, resolver):
        assert resolver.values_differ("a", "a") is False
        assert resolver.values_differ("a", "b") is True
        assert resolver.values_differ(None, "b") is True

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            ResolverConfig(timestamp_tolerance_seconds=-1)
        with pytest.raises(ValueError):
            ResolverConfig(coordinate_tolerance_degrees=-0.1)


class TestLastWriteWins:
    """Clear timestamp ordering decides non-EVV conflicts."""

    def test_client_newer(self, resolver):
        client = {"status": "a", "updated_at": (T0 + timedelta(minutes=5)).isoformat()}
        server = {"status": "b", "updated_at": T0.isoformat()}

        result = resolver.resolve(client, server, "visit")

        assert result.strategy == ConflictStrategy.CLIENT_WINS
        assert result.resolved_record == client
        assert result.requires_manual_review is False

    def test_server_newer(self, resolver):
        client = {"note_text": "long note text", "updated_at": T0.isoformat()}
        server = {"note_text": "x", "updated_at": (T0 + timedelta(minutes=5)).isoformat()}

        result = resolver.resolve(client, server, "visit_notes")
        assert result.strategy == ConflictStrategy.SERVER_WINS

    def test_skew_within_tolerance_is_a_tie(self, resolver):
        client = {"note_text": "longer text", "updated_at": (T0 + timedelta(milliseconds=500)).isoformat()}
        server = {"note_text": "short", "updated_at": T0.isoformat()}

        result = resolver.resolve(client, server, RecordType.VISIT_NOTE)
        assert result.strategy == ConflictStrategy.CLIENT_WINS


class TestEVVRecords:
    """EVV-critical divergence always goes to manual review."""

    def test_clock_in_divergence_is_manual_even_when_client_newer(self, resolver):
        client = evv_copy(
            clock_in_time=(SCHEDULED_START + timedelta(minutes=7)).isoformat(),
            updated_at=(T0 + timedelta(hours=1)).isoformat(),
        )
        server = evv_copy()

        result = resolver.resolve(client, server, "evv_records")

        assert result.strategy == ConflictStrategy.MANUAL
        assert result.requires_manual_review is True
        assert result.resolved_record == server
        assert [c.field for c in result.field_conflicts] == ["clock_in_time"]
        assert result.metadata.reason == (
            "EVV data conflict - regulatory compliance review required"
        )
        assert result.metadata.resolved_at == NOW

    def test_location_divergence_is_manual(self, resolver):
        client = evv_copy(clock_in_location={"latitude": CENTER_LAT + 0.01, "longitude": CENTER_LON})
        result = resolver.resolve(client, evv_copy(), "evv_record")

        assert result.strategy == ConflictStrategy.MANUAL
        assert result.field_conflicts[0].field == "clock_in_location"

    def test_one_sided_clock_out_is_not_a_conflict(self, resolver):
        client = evv_copy(clock_out_time=(SCHEDULED_START + timedelta(hours=4)).isoformat())
        result = resolver.resolve(client, evv_copy(), "evv_record")

        assert result.strategy == ConflictStrategy.SERVER_WINS
        assert result.requires_manual_review is False

    def test_non_critical_change_follows_last_write(self, resolver):
        client = evv_copy(client_attestation="signed", updated_at=(T0 + timedelta(minutes=1)).isoformat())
        result = resolver.resolve(client, evv_copy(), "evv_record")

        assert result.strategy == ConflictStrategy.CLIENT_WINS
        assert result.resolved_record["client_attestation"] == "signed"

    def test_serialization_noise_is_not_a_conflict(self, resolver):
        client = evv_copy(clock_in_time=SCHEDULED_START.replace(tzinfo=None).isoformat() + "Z")
        result = resolver.resolve(client, evv_copy(), "evv_record")
        assert result.strategy == ConflictStrategy.SERVER_WINS

    @given(
        offset_seconds=st.integers(min_value=2, max_value=86_400),
        client_lead_seconds=st.integers(min_value=-86_400, max_value=86_400),
    )
    def test_clock_in_divergence_never_resolves_automatically(
        self, offset_seconds, client_lead_seconds
    ):
        resolver = ConflictResolver(clock=lambda: NOW)
        client = evv_copy(
            clock_in_time=(SCHEDULED_START + timedelta(seconds=offset_seconds)).isoformat(),
            updated_at=(T0 + timedelta(seconds=client_lead_seconds)).isoformat(),
        )
        result = resolver.resolve(client, evv_copy(), "evv_record")

        assert result.strategy == ConflictStrategy.MANUAL
        assert result.requires_manual_review is True


class TestTypeRules:
    """Per-type rules on a timestamp tie."""

    def test_visit_merge_prefers_sides_by_field_ownership(self, resolver):
        client = {"care_notes": "ate lunch", "scheduled_date": "2026-03-09", "mileage": 4}
        server = {"care_notes": "", "scheduled_date": "2026-03-02", "mileage": None}

        result = resolver.resolve(client, server, "visit")

        assert result.strategy == ConflictStrategy.MERGE
        assert result.resolved_record["care_notes"] == "ate lunch"
        assert result.resolved_record["scheduled_date"] == "2026-03-02"
        assert result.resolved_record["mileage"] == 4

    def test_visit_merge_keeps_office_owned_fields(self, resolver):
        client = {"authorization_id": "AUTH-9", "caregiver_id": "cg-device", "visit_notes": "ok"}
        server = {"authorization_id": None, "caregiver_id": "cg-office", "visit_notes": None}

        result = resolver.resolve(client, server, "visit")

        assert result.resolved_record["caregiver_id"] == "cg-office"
        assert result.resolved_record["authorization_id"] == "AUTH-9"
        assert result.resolved_record["visit_notes"] == "ok"

    def test_visit_critical_field_conflict_is_manual(self, resolver):
        client = {"client_signature": "sig-a"}
        server = {"client_signature": "sig-b"}

        result = resolver.resolve(client, server, "visit")

        assert result.strategy == ConflictStrategy.MANUAL
        assert result.field_conflicts[0].field == "client_signature"

    def test_task_completed_on_device_wins(self, resolver):
        result = resolver.resolve({"status": "completed"}, {"status": "pending"}, "task")
        assert result.strategy == ConflictStrategy.CLIENT_WINS

    def test_task_completed_only_on_server_is_manual(self, resolver):
        result = resolver.resolve({"status": "pending"}, {"status": "completed"}, "tasks")

        assert result.strategy == ConflictStrategy.MANUAL
        assert result.field_conflicts[0].to_dict() == {
            "field": "status",
            "client_value": "pending",
            "server_value": "completed",
        }

    def test_longer_note_wins(self, resolver):
        assert resolver.resolve(
            {"note_text": "short"}, {"note_text": "much longer"}, "visit_note"
        ).strategy == ConflictStrategy.SERVER_WINS

    def test_unknown_type_keeps_server_for_review(self, resolver):
        result = resolver.resolve({"a": 1}, {"a": 2}, "invoice")

        assert result.strategy == ConflictStrategy.SERVER_WINS
        assert result.requires_manual_review is True
        assert "invoice" in result.metadata.reason

    def test_record_type_aliases(self):
        assert normalize_record_type("EVV_Records") == RecordType.EVV_RECORD
        assert normalize_record_type("visits") == RecordType.VISIT
        assert normalize_record_type("invoice") is None


class TestManualResolution:
    """Applying a reviewer's decision."""

    def test_field_by_field(self, resolver):
        client = {"a": 1, "b": 2, "c": 3}
        server = {"a": 10, "b": 20, "c": 30}
        decision = ManualResolution(
            record_id="r1",
            record_type="visit",
            selected_strategy="field_by_field",
            user_id="u1",
            field_resolutions={"a": "client", "b": "server", "c": 99},
        )

        result = resolver.apply_manual_resolution(client, server, decision)

        assert result.resolved_record == {"a": 1, "b": 20, "c": 99}
        assert result.strategy == ConflictStrategy.MANUAL
        assert result.requires_manual_review is False
        assert result.metadata.resolved_by == "u1"

    def test_client_choice(self, resolver):
        decision = ManualResolution("r1", "visit", "client", "u1")
        result = resolver.apply_manual_resolution({"a": 1}, {"a": 2}, decision)
        assert result.resolved_record == {"a": 1}

    def test_invalid_strategy(self):
        with pytest.raises(ValueError):
            ManualResolution("r1", "visit", "merge", "u1")


class TestDetectPotentialConflicts:
    """Pre-sync conflict detection."""

    def test_no_conflict(self, resolver):
        result = resolver.detect_potential_conflicts({"a": 1, "updated_at": "x"}, {"a": 1, "updated_at": "y"})

        assert result.has_conflict is False
        assert result.severity == ConflictSeverity.LOW

    def test_critical_field_is_high(self, resolver):
        result = resolver.detect_potential_conflicts(
            {"clock_in_location": {"latitude": 1.0, "longitude": 1.0}},
            {"clock_in_location": {"latitude": 2.0, "longitude": 1.0}},
        )
        assert result.severity == ConflictSeverity.HIGH

    def test_many_fields_is_medium(self, resolver):
        local = {"a": 1, "b": 1, "c": 1, "d": 1}
        server = {"a": 2, "b": 2, "c": 2, "d": 2}

        result = resolver.detect_potential_conflicts(local, server)

        assert result.severity == ConflictSeverity.MEDIUM
        assert result.conflicting_fields == ["a", "b", "c", "d"]

    def test_server_only_field_is_reported(self, resolver):
        local = {"care_notes": "ate lunch"}
        server = {"care_notes": "ate lunch", "clock_out_time": "2026-03-02T13:00:00+00:00"}

        result = resolver.detect_potential_conflicts(local, server)

        assert result.has_conflict is True
        assert result.conflicting_fields == ["clock_out_time"]
        assert result.severity == ConflictSeverity.HIGH
