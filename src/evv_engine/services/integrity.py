"""Tamper-evidence hashing for EVV records and time entries.

Two digests per EVV record:
- integrity_hash: identity + clock-in time + clock-in location, fixed at
  clock-in.
- integrity_checksum: the whole record, recomputed when clock-out
  completes it.

Amendments never touch either digest. Each amendment carries its own
corrected_checksum: record_checksum of the record with every correction
up to and including that amendment applied.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Sequence

from evv_engine.models.evv import typed_corrections

if TYPE_CHECKING:
    from evv_engine.models import EVVRecord, EVVRecordAmendment, TimeEntry


def _canonical(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def compute_hash(data: dict[str, Any]) -> str:
    """Compute a deterministic SHA-256 hex digest of data."""
    canonical = {k: _canonical(v) for k, v in data.items()}
    json_str = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()


def _location_core(verification: dict[str, Any] | None) -> dict[str, Any] | None:
    if not verification:
        return None
    location = verification.get("location") or {}
    return {
        "latitude": location.get("latitude"),
        "longitude": location.get("longitude"),
        "accuracy_meters": location.get("accuracy_meters"),
        "method": location.get("method"),
    }


def core_data_hash(record: EVVRecord) -> str:
    """Hash of identity, clock-in time and clock-in location."""
    return compute_hash(
        {
            "visit_id": record.visit_id,
            "client_id": record.client_id,
            "caregiver_id": record.caregiver_id,
            "service_type_code": record.service_type_code,
            "service_date": record.service_date,
            "clock_in_time": record.clock_in_time,
            "clock_in_location": _location_core(record.clock_in_verification),
        }
    )


def record_checksum(record: EVVRecord, corrections: dict[str, Any] | None = None) -> str:
    """Checksum over every compliance-relevant field of the record.

    With corrections, the checksum covers the corrected view instead of the
    captured values.
    """
    data = {
        "integrity_hash": record.integrity_hash,
        "visit_id": record.visit_id,
        "client_id": record.client_id,
        "client_medicaid_id": record.client_medicaid_id,
        "caregiver_id": record.caregiver_id,
        "caregiver_employee_id": record.caregiver_employee_id,
        "caregiver_npi": record.caregiver_npi,
        "service_type_code": record.service_type_code,
        "service_date": record.service_date,
        "service_address": record.service_address,
        "clock_in_time": record.clock_in_time,
        "clock_out_time": record.clock_out_time,
        "total_duration_minutes": record.total_duration_minutes,
        "clock_in_location": _location_core(record.clock_in_verification),
        "clock_out_location": _location_core(record.clock_out_verification),
    }
    if corrections:
        data.update(typed_corrections(corrections))
    return compute_hash(data)


def time_entry_hash(entry: TimeEntry) -> str:
    """Hash of a captured clock event as it was recorded."""
    return compute_hash(
        {
            "visit_id": entry.visit_id,
            "caregiver_id": entry.caregiver_id,
            "entry_type": entry.entry_type,
            "entry_timestamp": entry.entry_timestamp,
            "latitude": entry.latitude,
            "longitude": entry.longitude,
            "accuracy_meters": entry.accuracy_meters,
            "device_id": entry.device_id,
        }
    )


@dataclass(frozen=True)
class IntegrityCheckResult:
    hash_valid: bool
    checksum_valid: bool
    amendments_valid: bool = True
    issues: list[str] = field(default_factory=list)

    @property
    def is_intact(self) -> bool:
        return self.hash_valid and self.checksum_valid and self.amendments_valid


def verify_integrity(
    record: EVVRecord, amendments: Sequence[EVVRecordAmendment] = ()
) -> IntegrityCheckResult:
    """Recompute both digests and compare with the stored values.

    amendments, oldest first, are checked against their corrected_checksum.
    """
    issues: list[str] = []
    hash_valid = core_data_hash(record) == record.integrity_hash
    if not hash_valid:
        issues.append("Integrity hash mismatch: core identity/time/location data changed")
    checksum_valid = record_checksum(record) == record.integrity_checksum
    if not checksum_valid:
        issues.append("Integrity checksum mismatch: record changed since it was sealed")
    amendments_valid = True
    corrections: dict[str, Any] = {}
    for amendment in amendments:
        corrections.update(amendment.corrected_values or {})
        if record_checksum(record, corrections) != amendment.corrected_checksum:
            amendments_valid = False
            issues.append(
                f"Amendment #{amendment.amendment_number} checksum mismatch: "
                "corrected values changed since they were approved"
            )
    return IntegrityCheckResult(
        hash_valid=hash_valid,
        checksum_valid=checksum_valid,
        amendments_valid=amendments_valid,
        issues=issues,
    )
