"""Geofence validation for clock-in/clock-out locations.

Classifies an observed location against a registered service location
using a base radius plus a GPS accuracy allowance:

1. Accuracy worse than the strict threshold -> GPS_ACCURACY_EXCEEDED
2. Distance within the base radius          -> WITHIN_BASE_RADIUS (COMPLIANT)
3. Distance within base + accuracy + variance -> WITHIN_ACCURACY_ALLOWANCE (WARNING)
4. Anything else                            -> OUTSIDE_GEOFENCE (VIOLATION)

The validator is pure. Geofence counters are updated by the capture
service from the returned result.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

from evv_engine.validators.types import ExpectedLocation, LocationSample, coordinates_valid

EARTH_RADIUS_METERS = 6_371_000.0


class GeofenceValidationType(str, Enum):
    """Outcome category of a geofence check."""

    WITHIN_BASE_RADIUS = "WITHIN_BASE_RADIUS"
    WITHIN_ACCURACY_ALLOWANCE = "WITHIN_ACCURACY_ALLOWANCE"
    OUTSIDE_GEOFENCE = "OUTSIDE_GEOFENCE"
    GPS_ACCURACY_EXCEEDED = "GPS_ACCURACY_EXCEEDED"


class GeofenceComplianceLevel(str, Enum):
    """Compliance tier of a geofence check."""

    COMPLIANT = "COMPLIANT"
    WARNING = "WARNING"
    VIOLATION = "VIOLATION"


_LEVEL_RANK = {
    GeofenceComplianceLevel.COMPLIANT: 0,
    GeofenceComplianceLevel.WARNING: 1,
    GeofenceComplianceLevel.VIOLATION: 2,
}


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


@dataclass(frozen=True)
class GeofenceValidatorConfig:
    """
    Geofence validator configuration.

    Attributes:
        base_radius_meters: Radius used when the expected location carries
            none of its own. Default 100.
        max_gps_accuracy_meters: Accuracy (meters) beyond which a sample is
            considered unverifiable. Default 100.
        strict_mode: If True, samples worse than max_gps_accuracy_meters are
            rejected outright. If False, poor accuracy only widens the
            effective radius.
    """

    base_radius_meters: float = 100.0
    max_gps_accuracy_meters: float = 100.0
    strict_mode: bool = True

    def __post_init__(self) -> None:
        if not 10 <= self.base_radius_meters <= 500:
            raise ValueError("base_radius_meters must be between 10 and 500")
        if self.max_gps_accuracy_meters <= 0:
            raise ValueError("max_gps_accuracy_meters must be positive")


@dataclass(frozen=True)
class GeofenceValidationResult:
    """Result of a single geofence check."""

    is_valid: bool
    validation_type: GeofenceValidationType
    compliance_level: GeofenceComplianceLevel
    distance_meters: float | None
    base_radius_meters: float
    effective_radius_meters: float
    gps_accuracy_meters: float
    requires_exception: bool
    message: str
    suggested_action: str | None = None

    @property
    def is_within_geofence(self) -> bool:
        return self.compliance_level != GeofenceComplianceLevel.VIOLATION

    @property
    def passed(self) -> bool:
        return self.compliance_level == GeofenceComplianceLevel.COMPLIANT

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "validation_type": self.validation_type.value,
            "compliance_level": self.compliance_level.value,
            "distance_meters": _round(self.distance_meters),
            "base_radius_meters": _round(self.base_radius_meters),
            "effective_radius_meters": _round(self.effective_radius_meters),
            "gps_accuracy_meters": _round(self.gps_accuracy_meters),
            "requires_exception": self.requires_exception,
            "message": self.message,
            "suggested_action": self.suggested_action,
        }


def _round(value: float | None) -> float | None:
    return None if value is None else round(value, 2)


class GeofenceValidator:
    """Validates observed locations against a circular geofence."""

    def __init__(self, config: GeofenceValidatorConfig | None = None):
        self.config = config or GeofenceValidatorConfig()

    def validate(
        self,
        observed: LocationSample,
        expected: ExpectedLocation,
        base_radius_meters: float | None = None,
        allowed_variance_meters: float | None = None,
    ) -> GeofenceValidationResult:
        """Classify one observed location against the expected location."""
        base_radius = float(
            base_radius_meters
            if base_radius_meters is not None
            else expected.radius_meters or self.config.base_radius_meters
        )
        variance = max(
            float(
                allowed_variance_meters
                if allowed_variance_meters is not None
                else expected.allowed_variance_meters
            ),
            0.0,
        )
        accuracy = _accuracy(observed.accuracy_meters)
        effective_radius = base_radius + accuracy + variance

        # Fail closed on anything we cannot measure
        if not (
            coordinates_valid(observed.latitude, observed.longitude)
            and coordinates_valid(expected.latitude, expected.longitude)
        ):
            return GeofenceValidationResult(
                is_valid=False,
                validation_type=GeofenceValidationType.OUTSIDE_GEOFENCE,
                compliance_level=GeofenceComplianceLevel.VIOLATION,
                distance_meters=None,
                base_radius_meters=base_radius,
                effective_radius_meters=effective_radius,
                gps_accuracy_meters=accuracy,
                requires_exception=True,
                message=(
                    "Location coordinates are missing or invalid; location cannot be "
                    "verified and the visit requires exception handling."
                ),
                suggested_action=(
                    "Verify service location coordinates and device GPS, then retry "
                    "or submit a VMUR with supervisor review."
                ),
            )

        max_accuracy = self.config.max_gps_accuracy_meters
        if self.config.strict_mode and accuracy > max_accuracy:
            distance = haversine_meters(
                observed.latitude, observed.longitude, expected.latitude, expected.longitude
            )
            return GeofenceValidationResult(
                is_valid=False,
                validation_type=GeofenceValidationType.GPS_ACCURACY_EXCEEDED,
                compliance_level=GeofenceComplianceLevel.VIOLATION,
                distance_meters=distance,
                base_radius_meters=base_radius,
                effective_radius_meters=effective_radius,
                gps_accuracy_meters=accuracy,
                requires_exception=True,
                message=(
                    f"GPS accuracy ({accuracy:.0f}m) exceeds {max_accuracy:.0f}m "
                    "requirement. Location cannot be verified."
                ),
                suggested_action=(
                    "Move to an area with better GPS signal and retry, or submit a "
                    "VMUR documenting GPS unavailability."
                ),
            )

        distance = haversine_meters(
            observed.latitude, observed.longitude, expected.latitude, expected.longitude
        )

        if distance <= base_radius:
            return GeofenceValidationResult(
                is_valid=True,
                validation_type=GeofenceValidationType.WITHIN_BASE_RADIUS,
                compliance_level=GeofenceComplianceLevel.COMPLIANT,
                distance_meters=distance,
                base_radius_meters=base_radius,
                effective_radius_meters=effective_radius,
                gps_accuracy_meters=accuracy,
                requires_exception=False,
                message=(
                    f"Fully compliant: location is {distance:.0f}m from the service "
                    f"address, within the {base_radius:.0f}m geofence."
                ),
            )

        if distance <= effective_radius:
            return GeofenceValidationResult(
                is_valid=True,
                validation_type=GeofenceValidationType.WITHIN_ACCURACY_ALLOWANCE,
                compliance_level=GeofenceComplianceLevel.WARNING,
                distance_meters=distance,
                base_radius_meters=base_radius,
                effective_radius_meters=effective_radius,
                gps_accuracy_meters=accuracy,
                requires_exception=False,
                message=(
                    f"Location is {distance:.0f}m from the service address, beyond base "
                    f"geofence ({base_radius:.0f}m) but within GPS accuracy allowance "
                    f"({effective_radius:.0f}m). Acceptable with warning."
                ),
                suggested_action=(
                    "Review location accuracy. If the caregiver was at the service "
                    "location, no further action is needed."
                ),
            )

        overshoot = distance - effective_radius
        return GeofenceValidationResult(
            is_valid=False,
            validation_type=GeofenceValidationType.OUTSIDE_GEOFENCE,
            compliance_level=GeofenceComplianceLevel.VIOLATION,
            distance_meters=distance,
            base_radius_meters=base_radius,
            effective_radius_meters=effective_radius,
            gps_accuracy_meters=accuracy,
            requires_exception=True,
            message=(
                f"Location is {distance:.0f}m from the service address, beyond geofence "
                f"limits ({effective_radius:.0f}m). Visit requires exception handling."
            ),
            suggested_action=(
                f"Location is {overshoot:.0f}m outside the verified boundary; supervisor "
                "review required. Verify service location or submit a VMUR with "
                "documented reason."
            ),
        )

    def validate_multiple(
        self,
        samples: Iterable[LocationSample],
        expected: ExpectedLocation,
        base_radius_meters: float | None = None,
        allowed_variance_meters: float | None = None,
    ) -> list[GeofenceValidationResult]:
        """Validate several samples (e.g. clock-in, pause, clock-out)."""
        return [
            self.validate(sample, expected, base_radius_meters, allowed_variance_meters)
            for sample in samples
        ]


def _accuracy(value: float | None) -> float:
    """Missing accuracy counts as 0; negative or non-finite values clamp to 0."""
    if value is None:
        return 0.0
    try:
        accuracy = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(accuracy) or accuracy < 0:
        return 0.0
    return accuracy


def overall_compliance(
    results: Sequence[GeofenceValidationResult],
) -> GeofenceComplianceLevel:
    """Worst compliance level across results; VIOLATION when there are none."""
    if not results:
        return GeofenceComplianceLevel.VIOLATION
    return max((r.compliance_level for r in results), key=_LEVEL_RANK.__getitem__)


def requires_exception(results: Sequence[GeofenceValidationResult]) -> bool:
    """True if any result needs exception handling."""
    return any(r.requires_exception for r in results)
