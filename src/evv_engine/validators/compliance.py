"""Compliance aggregator.

Combines geofence, six-elements and grace-period validation plus record age
into a single verdict: level, flags, required actions and recommendations.

The aggregator is stateless. Given the same snapshot, scheduled window,
expected location and as_of it always returns an equal result, so
compliance can be recomputed on demand instead of cached.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from evv_engine.validators.geofence import (
    GeofenceComplianceLevel,
    GeofenceValidationResult,
    GeofenceValidationType,
    GeofenceValidator,
    GeofenceValidatorConfig,
)
from evv_engine.validators.grace_period import (
    GracePeriodValidationResult,
    validate_grace_period,
)
from evv_engine.validators.profiles import JurisdictionProfile, get_jurisdiction
from evv_engine.validators.six_elements import (
    EVVDataInput,
    SixElementsValidationResult,
    SixElementsValidator,
)
from evv_engine.validators.types import (
    ComplianceFlag,
    EVVRecordSnapshot,
    ExpectedLocation,
    LocationSample,
    OverallComplianceLevel,
)

# Flags that make a record NON_COMPLIANT
CRITICAL_FLAGS = frozenset(
    {
        ComplianceFlag.GEOFENCE_VIOLATION.value,
        ComplianceFlag.GPS_ACCURACY_EXCEEDED.value,
        ComplianceFlag.MISSING_ELEMENTS.value,
        ComplianceFlag.GRACE_PERIOD_VIOLATION.value,
    }
)

# Flags that require someone to act before submission
ACTION_FLAGS = frozenset(
    {
        ComplianceFlag.REQUIRES_SUPERVISOR.value,
        ComplianceFlag.REQUIRES_VMUR.value,
        ComplianceFlag.GEOFENCE_VIOLATION.value,
        ComplianceFlag.GPS_ACCURACY_EXCEEDED.value,
        ComplianceFlag.MISSING_ELEMENTS.value,
    }
)


@dataclass(frozen=True)
class ComplianceResult:
    """Compliance verdict for one EVV record."""

    is_compliant: bool
    compliance_level: OverallComplianceLevel
    requires_action: bool
    geofence_validation: GeofenceValidationResult
    elements_validation: SixElementsValidationResult
    grace_period_validation: GracePeriodValidationResult | None
    flags: list[str]
    summary: str
    recommendations: list[str]
    jurisdiction_code: str
    clock_out_geofence_validation: GeofenceValidationResult | None = None
    record_age_days: float = field(default=0.0)

    @property
    def aggregator_ready(self) -> bool:
        return ComplianceFlag.AGGREGATOR_READY.value in self.flags

    def to_dict(self) -> dict[str, Any]:
        """JSON-stable rendering of the verdict."""
        return {
            "is_compliant": self.is_compliant,
            "compliance_level": self.compliance_level.value,
            "requires_action": self.requires_action,
            "flags": list(self.flags),
            "summary": self.summary,
            "recommendations": list(self.recommendations),
            "jurisdiction_code": self.jurisdiction_code,
            "record_age_days": round(self.record_age_days, 4),
            "geofence_validation": self.geofence_validation.to_dict(),
            "clock_out_geofence_validation": (
                self.clock_out_geofence_validation.to_dict()
                if self.clock_out_geofence_validation
                else None
            ),
            "elements_validation": self.elements_validation.to_dict(),
            "grace_period_validation": (
                self.grace_period_validation.to_dict()
                if self.grace_period_validation
                else None
            ),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


def _add(flags: list[str], *new: ComplianceFlag) -> None:
    for flag in new:
        if flag.value not in flags:
            flags.append(flag.value)


class ComplianceAggregator:
    """Evaluates EVV records against a jurisdiction profile."""

    def __init__(self, jurisdiction: JurisdictionProfile | None = None):
        self.jurisdiction = jurisdiction or get_jurisdiction(None)
        self.geofence_validator = GeofenceValidator(
            GeofenceValidatorConfig(
                base_radius_meters=self.jurisdiction.geofence_radius_meters,
                max_gps_accuracy_meters=self.jurisdiction.max_gps_accuracy_meters,
                strict_mode=self.jurisdiction.strict_gps_accuracy,
            )
        )
        self.elements_validator = SixElementsValidator(self.jurisdiction.elements)

    def validate_compliance(
        self,
        record: EVVRecordSnapshot,
        scheduled_start: datetime,
        scheduled_end: datetime,
        expected_location: ExpectedLocation,
        as_of: datetime | None = None,
    ) -> ComplianceResult:
        """Compute the compliance verdict for a record."""
        as_of = as_of or datetime.now(timezone.utc)
        profile = self.jurisdiction

        geofence = self._check_location(record.clock_in_location, expected_location)
        clock_out_geofence = (
            self._check_location(record.clock_out_location, expected_location)
            if record.clock_out_location is not None
            else None
        )
        elements = self.elements_validator.validate(EVVDataInput.from_snapshot(record))
        grace = (
            validate_grace_period(
                record.clock_in_time,
                record.clock_out_time,
                scheduled_start,
                scheduled_end,
                profile.grace_period_minutes,
            )
            if record.clock_in_time is not None
            else None
        )
        age = as_of - record.recorded_at
        age_days = age.total_seconds() / 86400

        flags: list[str] = []
        if geofence.validation_type == GeofenceValidationType.GPS_ACCURACY_EXCEEDED:
            _add(flags, ComplianceFlag.GPS_ACCURACY_EXCEEDED, ComplianceFlag.REQUIRES_SUPERVISOR)
        elif geofence.validation_type == GeofenceValidationType.OUTSIDE_GEOFENCE:
            _add(flags, ComplianceFlag.GEOFENCE_VIOLATION, ComplianceFlag.REQUIRES_SUPERVISOR)
        elif geofence.validation_type == GeofenceValidationType.WITHIN_ACCURACY_ALLOWANCE:
            _add(flags, ComplianceFlag.GEOFENCE_WARNING)

        if not elements.all_elements_present:
            _add(flags, ComplianceFlag.MISSING_ELEMENTS, ComplianceFlag.REQUIRES_SUPERVISOR)

        if grace is not None and not grace.is_valid:
            _add(flags, ComplianceFlag.GRACE_PERIOD_VIOLATION)

        if record.clock_out_time is None:
            _add(flags, ComplianceFlag.INCOMPLETE_VISIT)

        if age > timedelta(days=profile.vmur_threshold_days) and flags:
            _add(flags, ComplianceFlag.REQUIRES_VMUR)

        fully_compliant = (
            geofence.compliance_level == GeofenceComplianceLevel.COMPLIANT
            and elements.meets_profile
            and grace is not None
            and grace.is_valid
            and record.clock_out_time is not None
        )
        if fully_compliant:
            flags = [ComplianceFlag.COMPLIANT.value, ComplianceFlag.AGGREGATOR_READY.value]

        if ComplianceFlag.COMPLIANT.value in flags:
            level = OverallComplianceLevel.COMPLIANT
        elif CRITICAL_FLAGS.intersection(flags):
            level = OverallComplianceLevel.NON_COMPLIANT
        else:
            level = OverallComplianceLevel.WARNING

        return ComplianceResult(
            is_compliant=level == OverallComplianceLevel.COMPLIANT,
            compliance_level=level,
            requires_action=bool(ACTION_FLAGS.intersection(flags)),
            geofence_validation=geofence,
            clock_out_geofence_validation=clock_out_geofence,
            elements_validation=elements,
            grace_period_validation=grace,
            flags=flags,
            summary=self._summary(level, flags),
            recommendations=self._recommendations(
                fully_compliant, flags, geofence, elements, grace
            ),
            jurisdiction_code=profile.code,
            record_age_days=age_days,
        )

    def _check_location(
        self, sample: LocationSample | None, expected: ExpectedLocation
    ) -> GeofenceValidationResult:
        # No sample at all is unverifiable and fails closed like bad coordinates
        if sample is None:
            sample = LocationSample(latitude=float("nan"), longitude=float("nan"))
        return self.geofence_validator.validate(sample, expected)

    def _recommendations(
        self,
        fully_compliant: bool,
        flags: list[str],
        geofence: GeofenceValidationResult,
        elements: SixElementsValidationResult,
        grace: GracePeriodValidationResult | None,
    ) -> list[str]:
        if fully_compliant:
            return []

        recommendations: list[str] = []
        if geofence.suggested_action:
            recommendations.append(geofence.suggested_action)
        if elements.missing_elements:
            recommendations.append(
                "Complete missing EVV elements: "
                + ", ".join(e.value for e in elements.missing_elements)
                + "."
            )
        if elements.invalid_elements and not elements.meets_profile:
            recommendations.append(
                "Correct invalid EVV elements: "
                + ", ".join(e.value for e in elements.invalid_elements)
                + "."
            )
        if grace is not None and not grace.is_valid:
            recommendations.append(
                "Document reason for clock-in/out time variance. Consider supervisor review."
            )
        if ComplianceFlag.INCOMPLETE_VISIT.value in flags:
            recommendations.append("Record clock-out to complete the visit before submission.")

        requires_vmur = ComplianceFlag.REQUIRES_VMUR.value in flags
        if requires_vmur:
            recommendations.append(
                f"Record is older than {self.jurisdiction.vmur_threshold_days} days. Use VMUR "
                "(Visit Maintenance Unlock Request) workflow for corrections."
            )
        if ComplianceFlag.REQUIRES_SUPERVISOR.value in flags and not requires_vmur:
            recommendations.append(
                "Supervisor review and approval required before submission to aggregator."
            )
        return recommendations

    def _summary(self, level: OverallComplianceLevel, flags: list[str]) -> str:
        if level == OverallComplianceLevel.COMPLIANT:
            return (
                f"Visit is fully compliant with {self.jurisdiction.name} EVV requirements "
                "and ready for aggregator submission."
            )
        outcome = (
            "Cannot submit to aggregator without resolution."
            if level == OverallComplianceLevel.NON_COMPLIANT
            else "May submit with warnings."
        )
        return f"Visit has compliance issues: {', '.join(flags)}. {outcome}"


def validate_compliance(
    record: EVVRecordSnapshot,
    scheduled_start: datetime,
    scheduled_end: datetime,
    expected_location: ExpectedLocation,
    jurisdiction: JurisdictionProfile | None = None,
    as_of: datetime | None = None,
) -> ComplianceResult:
    """Convenience wrapper around ComplianceAggregator.validate_compliance."""
    return ComplianceAggregator(jurisdiction).validate_compliance(
        record, scheduled_start, scheduled_end, expected_location, as_of=as_of
    )
