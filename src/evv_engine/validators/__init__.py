"""Pure EVV validators: geofence, six elements, grace period and the aggregator."""

from evv_engine.validators.compliance import (
    ComplianceAggregator,
    ComplianceResult,
    validate_compliance,
)
from evv_engine.validators.geofence import (
    GeofenceComplianceLevel,
    GeofenceValidationResult,
    GeofenceValidationType,
    GeofenceValidator,
    GeofenceValidatorConfig,
    haversine_meters,
)
from evv_engine.validators.grace_period import (
    GracePeriodValidationResult,
    GraceStatus,
    validate_grace_period,
)
from evv_engine.validators.profiles import (
    FEDERAL,
    FLORIDA,
    TEXAS,
    JurisdictionProfile,
    get_jurisdiction,
    register_jurisdiction,
)
from evv_engine.validators.six_elements import (
    FEDERAL_PROFILE,
    STATE_ENHANCED_PROFILE,
    ElementsComplianceLevel,
    ElementsProfile,
    EVVDataInput,
    EVVElement,
    SixElementsValidationResult,
    SixElementsValidator,
)
from evv_engine.validators.types import (
    ComplianceFlag,
    EVVRecordSnapshot,
    ExpectedLocation,
    LocationMethod,
    LocationSample,
    OverallComplianceLevel,
)

__all__ = [
    "ComplianceAggregator",
    "ComplianceFlag",
    "ComplianceResult",
    "ElementsComplianceLevel",
    "ElementsProfile",
    "EVVDataInput",
    "EVVElement",
    "EVVRecordSnapshot",
    "ExpectedLocation",
    "FEDERAL",
    "FEDERAL_PROFILE",
    "FLORIDA",
    "GeofenceComplianceLevel",
    "GeofenceValidationResult",
    "GeofenceValidationType",
    "GeofenceValidator",
    "GeofenceValidatorConfig",
    "GracePeriodValidationResult",
    "GraceStatus",
    "JurisdictionProfile",
    "LocationMethod",
    "LocationSample",
    "OverallComplianceLevel",
    "SixElementsValidationResult",
    "SixElementsValidator",
    "STATE_ENHANCED_PROFILE",
    "TEXAS",
    "get_jurisdiction",
    "haversine_meters",
    "register_jurisdiction",
    "validate_compliance",
    "validate_grace_period",
]
