"""Tests for EVV record tamper-evidence hashing."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from evv_engine.models import EVVRecord, EVVRecordAmendment
from evv_engine.services.integrity import (
    compute_hash,
    core_data_hash,
    record_checksum,
    verify_integrity,
)
from tests.conftest import (
    CAREGIVER_ID,
    CENTER_LAT,
    CENTER_LON,
    CLIENT_ID,
    SCHEDULED_END,
    SCHEDULED_START,
    SERVICE_DATE,
    VISIT_ID,
)


def sealed_record() -> EVVRecord:
    record = EVVRecord(
        evv_record_id=uuid4(),
        visit_id=VISIT_ID,
        service_type_code="S5130",
        client_id=CLIENT_ID,
        client_medicaid_id="TX123456789",
        caregiver_id=CAREGIVER_ID,
        caregiver_employee_id="EMP-1042",
        caregiver_npi="1234567893",
        service_date=SERVICE_DATE,
        service_address={"line1": "100 Congress Ave", "latitude": CENTER_LAT, "longitude": CENTER_LON},
        clock_in_time=SCHEDULED_START,
        clock_out_time=SCHEDULED_END,
        total_duration_minutes=240,
        clock_in_verification={
            "location": {
                "latitude": CENTER_LAT,
                "longitude": CENTER_LON,
                "accuracy_meters": 8.0,
                "method": "GPS",
            }
        },
        recorded_by=CAREGIVER_ID,
    )
    record.integrity_hash = core_data_hash(record)
    record.integrity_checksum = record_checksum(record)
    return record


class TestComputeHash:
    """Canonical hashing."""

    def test_key_order_does_not_matter(self):
        assert compute_hash({"a": 1, "b": 2}) == compute_hash({"b": 2, "a": 1})

    def test_equal_instants_in_different_zones_hash_equal(self):
        utc = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
        central = utc.astimezone(timezone(timedelta(hours=-6)))
        assert compute_hash({"t": utc}) == compute_hash({"t": central})

    def test_sha256_hex(self):
        digest = compute_hash({"a": 1})
        assert len(digest) == 64
        int(digest, 16)


class TestVerifyIntegrity:
    """Sealed records detect tampering."""

    def test_untouched_record_is_intact(self):
        result = verify_integrity(sealed_record())

        assert result.is_intact is True
        assert result.issues == []

    def test_changed_clock_in_breaks_both_digests(self):
        record = sealed_record()
        record.clock_in_time = SCHEDULED_START - timedelta(minutes=30)

        result = verify_integrity(record)

        assert result.hash_valid is False
        assert result.checksum_valid is False
        assert len(result.issues) == 2

    def test_changed_clock_out_only_breaks_checksum(self):
        record = sealed_record()
        record.clock_out_time = SCHEDULED_END + timedelta(hours=1)

        result = verify_integrity(record)

        assert result.hash_valid is True
        assert result.checksum_valid is False
        assert result.issues == ["Integrity checksum mismatch: record changed since it was sealed"]

    def test_moved_clock_in_location_breaks_hash(self):
        record = sealed_record()
        record.clock_in_verification = {
            "location": {"latitude": CENTER_LAT + 0.01, "longitude": CENTER_LON,
                         "accuracy_meters": 8.0, "method": "GPS"}
        }
        assert verify_integrity(record).hash_valid is False

    def test_geofence_detail_is_not_hashed(self):
        record = sealed_record()
        record.clock_in_verification = {
            **record.clock_in_verification,
            "geofence": {"compliance_level": "COMPLIANT"},
        }
        assert verify_integrity(record).is_intact is True


def correction(record: EVVRecord, number: int, values: dict, checksum: str | None = None):
    return EVVRecordAmendment(
        evv_record_id=record.evv_record_id,
        amendment_number=number,
        reason="Caregiver forgot to clock out",
        original_values={},
        corrected_values=values,
        integrity_hash=record.integrity_hash,
        corrected_checksum=checksum or record_checksum(record, values),
        amended_by=CAREGIVER_ID,
    )


class TestCorrectedChecksum:
    """Amendments carry a checksum of the corrected view."""

    def test_corrections_change_the_checksum(self):
        record = sealed_record()
        corrected = {"clock_out_time": (SCHEDULED_END - timedelta(minutes=15)).isoformat()}

        assert record_checksum(record, corrected) != record.integrity_checksum
        assert record_checksum(record, {}) == record.integrity_checksum

    def test_iso_strings_hash_like_datetimes(self):
        record = sealed_record()
        record.clock_out_time = SCHEDULED_END - timedelta(minutes=15)
        expected = record_checksum(record)
        record.clock_out_time = SCHEDULED_END

        corrected = {"clock_out_time": (SCHEDULED_END - timedelta(minutes=15)).isoformat()}
        assert record_checksum(record, corrected) == expected

    def test_valid_amendment_keeps_record_intact(self):
        record = sealed_record()
        amendment = correction(record, 1, {"total_duration_minutes": 225})

        result = verify_integrity(record, [amendment])

        assert result.amendments_valid is True
        assert result.is_intact is True
        # The captured record itself was not rewritten
        assert result.checksum_valid is True

    def test_edited_corrected_values_are_detected(self):
        record = sealed_record()
        amendment = correction(record, 1, {"total_duration_minutes": 225})
        amendment.corrected_values = {"total_duration_minutes": 480}

        result = verify_integrity(record, [amendment])

        assert result.amendments_valid is False
        assert result.is_intact is False
        assert result.issues == [
            "Amendment #1 checksum mismatch: corrected values changed since they were approved"
        ]
