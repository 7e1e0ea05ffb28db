"""Value types shared by the EVV validators.

Everything in here is a plain immutable value. Validators never touch the
database; the capture service builds snapshots from ORM rows and feeds
them in.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


class LocationMethod(str, Enum):
    """How a location sample was obtained."""

    GPS = "GPS"
    NETWORK = "NETWORK"
    WIFI = "WIFI"
    CELLULAR = "CELLULAR"
    MANUAL = "MANUAL"
    PHONE = "PHONE"
    BIOMETRIC = "BIOMETRIC"


class ComplianceFlag(str, Enum):
    """Known compliance flags.

    Flags are stored as plain strings so new ones can be added without a
    schema change; this enum only names the ones the engine emits itself.
    """

    COMPLIANT = "COMPLIANT"
    AGGREGATOR_READY = "AGGREGATOR_READY"
    GEOFENCE_WARNING = "GEOFENCE_WARNING"
    GEOFENCE_VIOLATION = "GEOFENCE_VIOLATION"
    GPS_ACCURACY_EXCEEDED = "GPS_ACCURACY_EXCEEDED"
    MISSING_ELEMENTS = "MISSING_ELEMENTS"
    GRACE_PERIOD_VIOLATION = "GRACE_PERIOD_VIOLATION"
    INCOMPLETE_VISIT = "INCOMPLETE_VISIT"
    REQUIRES_SUPERVISOR = "REQUIRES_SUPERVISOR"
    REQUIRES_VMUR = "REQUIRES_VMUR"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
    AMENDED = "AMENDED"
    SYNC_CONFLICT = "SYNC_CONFLICT"


class OverallComplianceLevel(str, Enum):
    """Verdict level produced by the compliance aggregator."""

    COMPLIANT = "COMPLIANT"
    WARNING = "WARNING"
    NON_COMPLIANT = "NON_COMPLIANT"


def coordinates_valid(latitude: Any, longitude: Any) -> bool:
    """Return True if latitude/longitude are finite and within range."""
    if latitude is None or longitude is None:
        return False
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


@dataclass(frozen=True)
class LocationSample:
    """A single observed device location."""

    latitude: float
    longitude: float
    accuracy_meters: float | None = None
    captured_at: datetime | None = None
    method: str = LocationMethod.GPS.value
    mocked: bool = False

    @property
    def is_valid(self) -> bool:
        return coordinates_valid(self.latitude, self.longitude)

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_meters": self.accuracy_meters,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "method": self.method,
            "mocked": self.mocked,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LocationSample:
        captured_at = data.get("captured_at")
        if isinstance(captured_at, str):
            captured_at = datetime.fromisoformat(captured_at)
        return cls(
            latitude=data["latitude"],
            longitude=data["longitude"],
            accuracy_meters=data.get("accuracy_meters"),
            captured_at=captured_at,
            method=data.get("method", LocationMethod.GPS.value),
            mocked=bool(data.get("mocked", False)),
        )


@dataclass(frozen=True)
class ExpectedLocation:
    """The registered service location a sample is checked against."""

    latitude: float
    longitude: float
    radius_meters: float | None = None
    allowed_variance_meters: float = 0.0


@dataclass(frozen=True)
class EVVRecordSnapshot:
    """Immutable view of an EVV record's raw fields.

    The compliance aggregator is a pure function of this snapshot plus the
    scheduled window, expected location and evaluation time.
    """

    visit_id: UUID | str | None
    service_type_code: str | None
    service_type_name: str | None
    client_id: UUID | str | None
    client_name: str | None
    client_medicaid_id: str | None
    caregiver_id: UUID | str | None
    caregiver_name: str | None
    caregiver_employee_id: str | None
    caregiver_npi: str | None
    service_date: date | None
    service_address_line1: str | None
    service_latitude: float | None
    service_longitude: float | None
    clock_in_time: datetime | None
    clock_out_time: datetime | None
    clock_in_location: LocationSample | None
    clock_out_location: LocationSample | None
    recorded_at: datetime
    verification_method: str | None = None
    jurisdiction_code: str | None = None
