"""Tests for the six required EVV elements validator."""

from datetime import timedelta

import pytest

from evv_engine.validators.six_elements import (
    FEDERAL_PROFILE,
    STATE_ENHANCED_PROFILE,
    ElementsComplianceLevel,
    ElementsProfile,
    EVVDataInput,
    EVVElement,
    SixElementsValidator,
)
from tests.conftest import CENTER_LAT, CENTER_LON, make_snapshot


def enhanced_input(**overrides) -> EVVDataInput:
    return EVVDataInput.from_snapshot(make_snapshot(**overrides))


class TestFullRecord:
    """A complete record passes both profiles."""

    @pytest.mark.parametrize("profile", [FEDERAL_PROFILE, STATE_ENHANCED_PROFILE])
    def test_all_elements_valid(self, profile):
        result = SixElementsValidator(profile).validate(enhanced_input())

        assert result.is_valid is True
        assert result.all_elements_present is True
        assert result.missing_elements == []
        assert result.invalid_elements == []
        assert result.compliance_level == ElementsComplianceLevel.COMPLIANT
        assert result.federal_compliant is True
        assert result.meets_profile is True
        assert result.profile_name == profile.name

    def test_element_results_in_fixed_order(self):
        result = SixElementsValidator().validate(enhanced_input())
        assert [r.element for r in result.element_results] == list(EVVElement)


class TestMissingElements:
    """Removing any one base element makes the record non-compliant."""

    @pytest.mark.parametrize(
        "field,element",
        [
            ("service_type_code", EVVElement.SERVICE_TYPE),
            ("client_id", EVVElement.CLIENT),
            ("caregiver_id", EVVElement.CAREGIVER),
            ("caregiver_employee_id", EVVElement.CAREGIVER),
            ("service_date", EVVElement.SERVICE_DATE),
            ("clock_in_time", EVVElement.SERVICE_TIME),
        ],
    )
    def test_single_element_removed(self, field, element):
        result = SixElementsValidator().validate(enhanced_input(**{field: None}))

        assert result.compliance_level == ElementsComplianceLevel.NON_COMPLIANT
        assert result.missing_elements == [element]
        assert result.federal_compliant is False
        assert "Does not meet federal EVV requirements." in result.message

    def test_blank_string_counts_as_missing(self):
        result = SixElementsValidator().validate(enhanced_input(service_type_code="   "))
        assert EVVElement.SERVICE_TYPE in result.missing_elements

    def test_location_missing_entirely(self):
        data = EVVDataInput.from_snapshot(
            make_snapshot(
                service_address_line1=None,
                service_latitude=None,
                service_longitude=None,
                clock_in_location=None,
            )
        )
        result = SixElementsValidator().validate(data)
        assert result.missing_elements == [EVVElement.SERVICE_LOCATION]

    def test_address_alone_satisfies_federal_location(self):
        data = EVVDataInput.from_snapshot(
            make_snapshot(
                service_latitude=None,
                service_longitude=None,
                clock_in_location=None,
                verification_method=None,
            )
        )
        assert SixElementsValidator().validate(data).is_valid is True


class TestStateEnhancements:
    """Enhancement toggles turn a present element into a missing one."""

    def test_missing_medicaid_id_only_fails_enhanced_profile(self):
        data = enhanced_input(client_medicaid_id=None)

        federal = SixElementsValidator(FEDERAL_PROFILE).validate(data)
        enhanced = SixElementsValidator(STATE_ENHANCED_PROFILE).validate(data)

        assert federal.is_valid is True
        assert enhanced.missing_elements == [EVVElement.CLIENT]
        assert enhanced.federal_compliant is True
        assert enhanced.meets_profile is False
        assert "Meets federal minimum but not Texas HHSC enhanced requirements." in enhanced.message

    def test_missing_npi_under_enhanced_profile(self):
        result = SixElementsValidator(STATE_ENHANCED_PROFILE).validate(
            enhanced_input(caregiver_npi=None)
        )

        assert result.missing_elements == [EVVElement.CAREGIVER]
        caregiver = result.element_results[2]
        assert caregiver.state_enhanced is True
        assert "NPI" in caregiver.validation_message

    def test_missing_verification_method_under_enhanced_profile(self):
        data = EVVDataInput(
            service_type_code="S5130",
            client_id="c1",
            client_medicaid_id="TX1",
            caregiver_id="a1",
            caregiver_employee_id="EMP-1",
            caregiver_npi="1234567893",
            service_date=make_snapshot().service_date,
            service_latitude=CENTER_LAT,
            service_longitude=CENTER_LON,
            clock_in_time=make_snapshot().clock_in_time,
        )
        result = SixElementsValidator(STATE_ENHANCED_PROFILE).validate(data)
        assert result.missing_elements == [EVVElement.SERVICE_LOCATION]

    def test_completed_visit_profile_requires_clock_out(self):
        profile = ElementsProfile(name="Completed visits", require_completed_visit=True)
        result = SixElementsValidator(profile).validate(enhanced_input(clock_out_time=None))

        assert result.missing_elements == [EVVElement.SERVICE_TIME]
        assert "visit in progress" in result.element_results[5].validation_message

    def test_in_progress_visit_passes_default_profiles(self):
        result = SixElementsValidator(STATE_ENHANCED_PROFILE).validate(
            enhanced_input(clock_out_time=None)
        )
        assert result.is_valid is True
        assert "in progress" in result.element_results[5].validation_message


class TestInvalidElements:
    """Present but malformed values make the record partial."""

    @pytest.mark.parametrize("npi", ["12345", "12345678901", "12345abcde", "NPI1234567"])
    def test_malformed_npi(self, npi):
        result = SixElementsValidator(STATE_ENHANCED_PROFILE).validate(
            enhanced_input(caregiver_npi=npi)
        )

        assert result.compliance_level == ElementsComplianceLevel.PARTIAL
        assert result.all_elements_present is True
        assert result.invalid_elements == [EVVElement.CAREGIVER]
        assert "exactly 10 digits" in result.element_results[2].validation_message

    def test_malformed_npi_is_invalid_even_when_optional(self):
        result = SixElementsValidator(FEDERAL_PROFILE).validate(enhanced_input(caregiver_npi="123"))
        assert result.invalid_elements == [EVVElement.CAREGIVER]

    def test_clock_out_before_clock_in(self):
        snapshot = make_snapshot()
        result = SixElementsValidator().validate(
            enhanced_input(clock_out_time=snapshot.clock_in_time - timedelta(minutes=5))
        )

        assert result.invalid_elements == [EVVElement.SERVICE_TIME]
        assert result.compliance_level == ElementsComplianceLevel.PARTIAL
        assert "Invalid elements: SERVICE_TIME." in result.message

    def test_out_of_range_coordinates(self):
        data = EVVDataInput.from_snapshot(
            make_snapshot(service_latitude=95.0, clock_in_location=None)
        )
        result = SixElementsValidator().validate(data)

        assert result.invalid_elements == [EVVElement.SERVICE_LOCATION]
        assert "out of range" in result.element_results[4].validation_message


class TestFromSnapshot:
    """Element input prefers observed clock-in coordinates."""

    def test_clock_in_location_overrides_service_coordinates(self):
        snapshot = make_snapshot(service_latitude=0.0, service_longitude=0.0)
        data = EVVDataInput.from_snapshot(snapshot)

        assert data.service_latitude == snapshot.clock_in_location.latitude
        assert data.location_verification_method == "GPS"

    def test_method_falls_back_to_sample_method(self):
        data = EVVDataInput.from_snapshot(make_snapshot(verification_method=None))
        assert data.location_verification_method == "GPS"

    def test_to_dict(self):
        data = SixElementsValidator(STATE_ENHANCED_PROFILE).validate(
            enhanced_input(caregiver_npi=None)
        ).to_dict()

        assert data["compliance_level"] == "NON_COMPLIANT"
        assert data["missing_elements"] == ["CAREGIVER"]
        assert len(data["element_results"]) == 6
