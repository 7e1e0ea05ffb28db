"""Six required EVV elements validator.

The federal minimum data set for an EVV record:

1. SERVICE_TYPE     - type of service performed
2. CLIENT           - individual receiving the service
3. CAREGIVER        - individual providing the service
4. SERVICE_DATE     - date of service
5. SERVICE_LOCATION - where the service was delivered
6. SERVICE_TIME     - when the service began and ended

A single validator handles every jurisdiction. State enhancements are four
independent toggles on ElementsProfile, so a new jurisdiction is a new
profile value, not a new class.

An unmet enhancement makes its element missing (not merely invalid). A
present element can still be invalid: a malformed NPI, out-of-range
coordinates or a clock-out before clock-in.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from evv_engine.validators.types import EVVRecordSnapshot, coordinates_valid

NPI_PATTERN = re.compile(r"^\d{10}$")


class EVVElement(str, Enum):
    """The six federally mandated EVV elements."""

    SERVICE_TYPE = "SERVICE_TYPE"
    CLIENT = "CLIENT"
    CAREGIVER = "CAREGIVER"
    SERVICE_DATE = "SERVICE_DATE"
    SERVICE_LOCATION = "SERVICE_LOCATION"
    SERVICE_TIME = "SERVICE_TIME"


class ElementsComplianceLevel(str, Enum):
    COMPLIANT = "COMPLIANT"
    PARTIAL = "PARTIAL"
    NON_COMPLIANT = "NON_COMPLIANT"


@dataclass(frozen=True)
class ElementsProfile:
    """
    Regulatory profile for the six-elements check.

    Attributes:
        name: Human readable profile name.
        require_medicaid_id: CLIENT also needs a payer/Medicaid identifier.
        require_npi: CAREGIVER also needs a national provider identifier.
        require_gps_verification: SERVICE_LOCATION needs GPS coordinates and
            a recorded verification method.
        require_completed_visit: SERVICE_TIME needs a clock-out.
    """

    name: str = "Federal minimum"
    require_medicaid_id: bool = False
    require_npi: bool = False
    require_gps_verification: bool = False
    require_completed_visit: bool = False

    @property
    def is_enhanced(self) -> bool:
        return (
            self.require_medicaid_id
            or self.require_npi
            or self.require_gps_verification
            or self.require_completed_visit
        )


FEDERAL_PROFILE = ElementsProfile(name="Federal minimum")

STATE_ENHANCED_PROFILE = ElementsProfile(
    name="Texas HHSC enhanced",
    require_medicaid_id=True,
    require_npi=True,
    require_gps_verification=True,
    require_completed_visit=False,
)


@dataclass(frozen=True)
class EVVDataInput:
    """Raw values for the six elements."""

    service_type_code: str | None = None
    service_type_name: str | None = None
    client_id: Any = None
    client_name: str | None = None
    client_medicaid_id: str | None = None
    caregiver_id: Any = None
    caregiver_name: str | None = None
    caregiver_employee_id: str | None = None
    caregiver_npi: str | None = None
    service_date: date | None = None
    service_address: str | None = None
    service_latitude: float | None = None
    service_longitude: float | None = None
    location_verification_method: str | None = None
    clock_in_time: datetime | None = None
    clock_out_time: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: EVVRecordSnapshot) -> EVVDataInput:
        """Build element input from a record snapshot.

        GPS coordinates come from the clock-in sample when one exists, else
        from the registered service address.
        """
        latitude = snapshot.service_latitude
        longitude = snapshot.service_longitude
        method = snapshot.verification_method
        if snapshot.clock_in_location is not None:
            latitude = snapshot.clock_in_location.latitude
            longitude = snapshot.clock_in_location.longitude
            method = method or snapshot.clock_in_location.method
        return cls(
            service_type_code=snapshot.service_type_code,
            service_type_name=snapshot.service_type_name,
            client_id=snapshot.client_id,
            client_name=snapshot.client_name,
            client_medicaid_id=snapshot.client_medicaid_id,
            caregiver_id=snapshot.caregiver_id,
            caregiver_name=snapshot.caregiver_name,
            caregiver_employee_id=snapshot.caregiver_employee_id,
            caregiver_npi=snapshot.caregiver_npi,
            service_date=snapshot.service_date,
            service_address=snapshot.service_address_line1,
            service_latitude=latitude,
            service_longitude=longitude,
            location_verification_method=method,
            clock_in_time=snapshot.clock_in_time,
            clock_out_time=snapshot.clock_out_time,
        )


@dataclass(frozen=True)
class ElementValidationResult:
    element: EVVElement
    is_present: bool
    is_valid: bool
    validation_message: str
    required: bool = True
    state_enhanced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "element": self.element.value,
            "is_present": self.is_present,
            "is_valid": self.is_valid,
            "validation_message": self.validation_message,
            "required": self.required,
            "state_enhanced": self.state_enhanced,
        }


@dataclass(frozen=True)
class SixElementsValidationResult:
    is_valid: bool
    all_elements_present: bool
    missing_elements: list[EVVElement]
    invalid_elements: list[EVVElement]
    element_results: list[ElementValidationResult]
    compliance_level: ElementsComplianceLevel
    message: str
    federal_compliant: bool
    meets_profile: bool
    profile_name: str = field(default="")

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "all_elements_present": self.all_elements_present,
            "missing_elements": [e.value for e in self.missing_elements],
            "invalid_elements": [e.value for e in self.invalid_elements],
            "element_results": [r.to_dict() for r in self.element_results],
            "compliance_level": self.compliance_level.value,
            "message": self.message,
            "federal_compliant": self.federal_compliant,
            "meets_profile": self.meets_profile,
            "profile_name": self.profile_name,
        }


def _has_text(value: Any) -> bool:
    if value is None:
        return False
    return bool(str(value).strip())


class SixElementsValidator:
    """Checks presence and validity of the six EVV elements under a profile."""

    def __init__(self, profile: ElementsProfile | None = None):
        self.profile = profile or FEDERAL_PROFILE

    def validate(self, data: EVVDataInput) -> SixElementsValidationResult:
        """Validate all six elements and aggregate the outcome."""
        results = [
            self._service_type(data),
            self._client(data),
            self._caregiver(data),
            self._service_date(data),
            self._service_location(data),
            self._service_time(data),
        ]

        missing = [r.element for r in results if not r.is_present]
        invalid = [r.element for r in results if r.is_present and not r.is_valid]
        all_present = not missing
        is_valid = all_present and not invalid

        federal_compliant = all(
            r.is_present and r.is_valid
            for r in results
            if r.required and not r.state_enhanced
        )
        if self.profile.is_enhanced:
            meets_profile = is_valid
        else:
            meets_profile = federal_compliant

        if is_valid:
            level = ElementsComplianceLevel.COMPLIANT
        elif all_present:
            level = ElementsComplianceLevel.PARTIAL
        else:
            level = ElementsComplianceLevel.NON_COMPLIANT

        return SixElementsValidationResult(
            is_valid=is_valid,
            all_elements_present=all_present,
            missing_elements=missing,
            invalid_elements=invalid,
            element_results=results,
            compliance_level=level,
            message=self._message(is_valid, missing, invalid, federal_compliant, meets_profile),
            federal_compliant=federal_compliant,
            meets_profile=meets_profile,
            profile_name=self.profile.name,
        )

    def _service_type(self, data: EVVDataInput) -> ElementValidationResult:
        present = _has_text(data.service_type_code)
        if present:
            suffix = f" ({data.service_type_name})" if data.service_type_name else ""
            message = f"Service type code: {data.service_type_code}{suffix}"
        else:
            message = "Service type code is required"
        return ElementValidationResult(EVVElement.SERVICE_TYPE, present, present, message)

    def _client(self, data: EVVDataInput) -> ElementValidationResult:
        enhanced = self.profile.require_medicaid_id
        has_id = _has_text(data.client_id)
        has_medicaid = _has_text(data.client_medicaid_id)
        present = has_id and (has_medicaid or not enhanced)

        if not has_id:
            message = "Client ID is required"
        elif not present:
            message = f"Client Medicaid ID is required under {self.profile.name}"
        else:
            label = data.client_name or data.client_id
            message = f"Client: {label}" + (" (Medicaid ID present)" if has_medicaid else "")
        return ElementValidationResult(
            EVVElement.CLIENT, present, present, message, state_enhanced=enhanced
        )

    def _caregiver(self, data: EVVDataInput) -> ElementValidationResult:
        enhanced = self.profile.require_npi
        has_id = _has_text(data.caregiver_id)
        has_employee_id = _has_text(data.caregiver_employee_id)
        has_npi = _has_text(data.caregiver_npi)
        present = has_id and has_employee_id and (has_npi or not enhanced)
        valid = present

        if not has_id:
            message = "Caregiver ID is required"
        elif not has_employee_id:
            message = "Caregiver employee ID is required"
        elif not present:
            message = (
                "Caregiver NPI (National Provider Identifier) is required under "
                f"{self.profile.name}"
            )
        elif has_npi and not NPI_PATTERN.match(str(data.caregiver_npi).strip()):
            valid = False
            message = f"Caregiver NPI '{data.caregiver_npi}' must be exactly 10 digits"
        else:
            label = data.caregiver_name or data.caregiver_id
            message = f"Caregiver: {label} (Employee ID: {data.caregiver_employee_id})"
            if has_npi:
                message += f" (NPI: {data.caregiver_npi})"
        return ElementValidationResult(
            EVVElement.CAREGIVER, present, valid, message, state_enhanced=enhanced
        )

    def _service_date(self, data: EVVDataInput) -> ElementValidationResult:
        value = data.service_date
        present = isinstance(value, date)
        if present:
            as_date = value.date() if isinstance(value, datetime) else value
            message = f"Service date: {as_date.isoformat()}"
        else:
            message = "Valid service date is required"
        return ElementValidationResult(EVVElement.SERVICE_DATE, present, present, message)

    def _service_location(self, data: EVVDataInput) -> ElementValidationResult:
        enhanced = self.profile.require_gps_verification
        has_address = _has_text(data.service_address)
        has_coordinates = data.service_latitude is not None and data.service_longitude is not None
        has_method = _has_text(data.location_verification_method)

        if enhanced:
            present = has_coordinates and has_method
        else:
            present = has_address or has_coordinates
        valid = present

        if not (has_address or has_coordinates):
            message = "Service location (address or coordinates) is required"
        elif not present:
            message = (
                "GPS coordinates and a location verification method are required under "
                f"{self.profile.name}"
            )
        elif has_coordinates and not coordinates_valid(
            data.service_latitude, data.service_longitude
        ):
            valid = False
            message = (
                f"Service location coordinates ({data.service_latitude}, "
                f"{data.service_longitude}) are out of range"
            )
        else:
            parts = []
            if has_address:
                parts.append(str(data.service_address))
            if has_coordinates:
                parts.append(f"({data.service_latitude:.6f}, {data.service_longitude:.6f})")
            if has_method:
                parts.append(f"verified by {data.location_verification_method}")
            message = "Service location: " + " ".join(parts)
        return ElementValidationResult(
            EVVElement.SERVICE_LOCATION, present, valid, message, state_enhanced=enhanced
        )

    def _service_time(self, data: EVVDataInput) -> ElementValidationResult:
        enhanced = self.profile.require_completed_visit
        has_clock_in = isinstance(data.clock_in_time, datetime)
        has_clock_out = isinstance(data.clock_out_time, datetime)
        present = has_clock_in and (has_clock_out or not enhanced)
        valid = present

        if not has_clock_in:
            message = "Clock-in time is required"
        elif not present:
            message = f"Clock-out time is required under {self.profile.name} (visit in progress)"
        elif has_clock_out and data.clock_out_time < data.clock_in_time:
            valid = False
            message = "Clock-out time is before clock-in time"
        elif has_clock_out:
            minutes = (data.clock_out_time - data.clock_in_time).total_seconds() / 60
            message = (
                f"Service time: {data.clock_in_time.isoformat()} to "
                f"{data.clock_out_time.isoformat()} ({round(minutes)} minutes)"
            )
        else:
            message = f"Service time: started {data.clock_in_time.isoformat()} (in progress)"
        return ElementValidationResult(
            EVVElement.SERVICE_TIME, present, valid, message, state_enhanced=enhanced
        )

    def _message(
        self,
        is_valid: bool,
        missing: list[EVVElement],
        invalid: list[EVVElement],
        federal_compliant: bool,
        meets_profile: bool,
    ) -> str:
        if is_valid:
            return f"All six required EVV elements are present and valid ({self.profile.name})."
        parts: list[str] = []
        if missing:
            parts.append("Missing elements: " + ", ".join(e.value for e in missing) + ".")
        if invalid:
            parts.append("Invalid elements: " + ", ".join(e.value for e in invalid) + ".")
        if federal_compliant and not meets_profile:
            parts.append(f"Meets federal minimum but not {self.profile.name} requirements.")
        elif not federal_compliant:
            parts.append("Does not meet federal EVV requirements.")
        return " ".join(parts)
