"""EVV engine services."""

from evv_engine.services.capture_service import (
    AmendmentInput,
    CaptureResult,
    ClockInInput,
    ClockOutInput,
    CreateGeofenceInput,
    DeviceInfo,
    EVVCaptureService,
    ManualOverrideInput,
    PauseInput,
)
from evv_engine.services.integrity import IntegrityCheckResult, verify_integrity
from evv_engine.services.reporting import (
    ComplianceDashboard,
    build_compliance_dashboard,
    load_compliance_dashboard,
)
from evv_engine.services.state_machine import (
    EVVRecordStateMachine,
    EVVRecordStatus,
    InvalidTransitionError,
    TimeEntryStatus,
    TimeEntryType,
    VerificationLevel,
)
from evv_engine.services.vmur_service import (
    CreateVMURInput,
    VMURReasonCode,
    VMURService,
    VMURStatus,
)

__all__ = [
    "AmendmentInput",
    "CaptureResult",
    "ClockInInput",
    "ClockOutInput",
    "ComplianceDashboard",
    "CreateGeofenceInput",
    "CreateVMURInput",
    "DeviceInfo",
    "EVVCaptureService",
    "EVVRecordStateMachine",
    "EVVRecordStatus",
    "IntegrityCheckResult",
    "InvalidTransitionError",
    "ManualOverrideInput",
    "PauseInput",
    "TimeEntryStatus",
    "TimeEntryType",
    "VMURReasonCode",
    "VMURService",
    "VMURStatus",
    "VerificationLevel",
    "build_compliance_dashboard",
    "load_compliance_dashboard",
    "verify_integrity",
]
