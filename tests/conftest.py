"""Shared fixtures and builders for EVV engine tests."""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from uuid import UUID

import pytest

from evv_engine.validators.geofence import EARTH_RADIUS_METERS
from evv_engine.validators.types import EVVRecordSnapshot, ExpectedLocation, LocationSample

# Registered service address (Austin, TX)
CENTER_LAT = 30.2672
CENTER_LON = -97.7431

SERVICE_DATE = date(2026, 3, 2)
SCHEDULED_START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
SCHEDULED_END = datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc)
NOW = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

CLIENT_ID = UUID("00000000-0000-0000-0000-0000000000c1")
CAREGIVER_ID = UUID("00000000-0000-0000-0000-0000000000a1")
VISIT_ID = UUID("00000000-0000-0000-0000-0000000000b1")


def north_of(meters: float, lat: float = CENTER_LAT, lon: float = CENTER_LON) -> tuple[float, float]:
    """Point due north of (lat, lon) at the given great-circle distance."""
    return lat + math.degrees(meters / EARTH_RADIUS_METERS), lon


def sample_at(
    meters_north: float = 0.0,
    accuracy_meters: float | None = 10.0,
    method: str = "GPS",
    captured_at: datetime | None = None,
) -> LocationSample:
    lat, lon = north_of(meters_north)
    return LocationSample(
        latitude=lat,
        longitude=lon,
        accuracy_meters=accuracy_meters,
        captured_at=captured_at,
        method=method,
    )


def make_snapshot(**overrides) -> EVVRecordSnapshot:
    """A visit that satisfies every Texas requirement; override to break it."""
    values = dict(
        visit_id=VISIT_ID,
        service_type_code="S5130",
        service_type_name="Personal Assistance Services",
        client_id=CLIENT_ID,
        client_name="Maria Lopez",
        client_medicaid_id="TX123456789",
        caregiver_id=CAREGIVER_ID,
        caregiver_name="Jordan Reyes",
        caregiver_employee_id="EMP-1042",
        caregiver_npi="1234567893",
        service_date=SERVICE_DATE,
        service_address_line1="100 Congress Ave",
        service_latitude=CENTER_LAT,
        service_longitude=CENTER_LON,
        clock_in_time=SCHEDULED_START,
        clock_out_time=SCHEDULED_END,
        clock_in_location=sample_at(0.0),
        clock_out_location=sample_at(0.0),
        recorded_at=SCHEDULED_START,
        verification_method="GPS",
        jurisdiction_code="TX",
    )
    values.update(overrides)
    return EVVRecordSnapshot(**values)


@pytest.fixture
def expected_location() -> ExpectedLocation:
    return ExpectedLocation(latitude=CENTER_LAT, longitude=CENTER_LON, radius_meters=100.0)


@pytest.fixture
def compliant_snapshot() -> EVVRecordSnapshot:
    return make_snapshot()
