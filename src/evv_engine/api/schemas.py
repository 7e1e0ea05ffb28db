"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from evv_engine.services.capture_service import DeviceInfo
from evv_engine.validators.types import LocationSample


# ============================================================================
# Capture inputs
# ============================================================================


class LocationIn(BaseModel):
    """Device location as captured."""

    latitude: float
    longitude: float
    accuracy_meters: float | None = None
    captured_at: datetime | None = None
    method: str = "GPS"
    mocked: bool = False

    def to_sample(self) -> LocationSample:
        return LocationSample(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy_meters=self.accuracy_meters,
            captured_at=self.captured_at,
            method=self.method,
            mocked=self.mocked,
        )


class DeviceIn(BaseModel):
    device_id: str = Field(min_length=1)
    device_model: str | None = None
    device_os: str | None = None
    app_version: str | None = None

    def to_info(self) -> DeviceInfo:
        return DeviceInfo(
            device_id=self.device_id,
            device_model=self.device_model,
            device_os=self.device_os,
            app_version=self.app_version,
        )


class ClockInRequest(BaseModel):
    """Schema for a clock-in event."""

    visit_id: UUID
    caregiver_id: UUID
    location: LocationIn
    device: DeviceIn
    captured_at: datetime | None = None
    offline_recorded: bool = False


class ClockOutRequest(ClockInRequest):
    """Schema for a clock-out event with optional client attestation."""

    client_signature: str | None = None
    client_present: bool = True
    attestation_notes: str | None = None


class PauseRequest(ClockInRequest):
    reason: str | None = None


class ManualOverrideRequest(BaseModel):
    reason: str = Field(min_length=1)
    supervisor_notes: str | None = None
    approval_authority: str | None = None


class AmendmentRequest(BaseModel):
    reason: str = Field(min_length=1)
    corrections: dict[str, Any]


class GeofenceCreate(BaseModel):
    address_id: UUID
    latitude: float
    longitude: float
    organization_id: UUID | None = None
    radius_meters: float | None = None
    allowed_variance_meters: float = 0.0
    shape: str = "CIRCLE"
    polygon_points: list[Any] | None = None
    notes: str | None = None


# ============================================================================
# EVV record schemas
# ============================================================================


class EVVRecordResponse(BaseModel):
    """Schema for an EVV record."""

    model_config = ConfigDict(from_attributes=True)

    evv_record_id: UUID
    visit_id: UUID
    organization_id: UUID | None = None
    jurisdiction_code: str
    service_type_code: str
    service_type_name: str | None = None
    client_id: UUID
    client_name: str | None = None
    caregiver_id: UUID
    caregiver_name: str | None = None
    service_date: date
    clock_in_time: datetime
    clock_out_time: datetime | None = None
    total_duration_minutes: int | None = None
    clock_in_verification: dict[str, Any]
    clock_out_verification: dict[str, Any] | None = None
    record_status: str
    verification_level: str
    compliance_flags: list[Any]
    integrity_hash: str
    integrity_checksum: str
    client_attestation: dict[str, Any] | None = None
    sync_metadata: dict[str, Any]
    recorded_at: datetime
    updated_at: datetime
    version: int


class TimeEntryResponse(BaseModel):
    """Schema for a captured time entry."""

    model_config = ConfigDict(from_attributes=True)

    time_entry_id: UUID
    visit_id: UUID
    evv_record_id: UUID | None = None
    caregiver_id: UUID
    entry_type: str
    entry_timestamp: datetime
    latitude: float | None = None
    longitude: float | None = None
    accuracy_meters: float | None = None
    device_id: str
    offline_recorded: bool
    distance_from_address_meters: float | None = None
    is_within_geofence: bool
    verification_passed: bool
    verification_issues: list[Any]
    status: str
    manual_override: dict[str, Any] | None = None
    integrity_hash: str


class CaptureResponse(BaseModel):
    """Result of a clock-in or clock-out."""

    evv_record: EVVRecordResponse
    time_entry: TimeEntryResponse
    verification: dict[str, Any]
    compliance: dict[str, Any] | None = None


class IntegrityResponse(BaseModel):
    hash_valid: bool
    checksum_valid: bool
    amendments_valid: bool
    is_intact: bool
    issues: list[str]


class AmendmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    amendment_id: UUID
    evv_record_id: UUID
    amendment_number: int
    source: str
    vmur_id: UUID | None = None
    reason: str
    original_values: dict[str, Any]
    corrected_values: dict[str, Any]
    changes_summary: list[Any]
    corrected_checksum: str
    amended_by: UUID
    amended_at: datetime


class GeofenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    geofence_id: UUID
    address_id: UUID
    center_latitude: float
    center_longitude: float
    radius_meters: float
    allowed_variance_meters: float
    shape: str
    status: str
    verification_count: int
    successful_verifications: int
    failed_verifications: int
    average_accuracy: float | None = None


# ============================================================================
# VMUR schemas
# ============================================================================


class VMURCreate(BaseModel):
    evv_record_id: UUID
    reason_code: str
    reason_details: str = Field(min_length=1)
    corrections: dict[str, Any]


class VMURDenyRequest(BaseModel):
    reason: str = Field(min_length=1)


class VMURResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vmur_id: UUID
    evv_record_id: UUID
    visit_id: UUID
    requested_by: UUID
    requested_at: datetime
    request_reason: str
    reason_details: str
    status: str
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    denied_by: UUID | None = None
    denied_at: datetime | None = None
    denial_reason: str | None = None
    original_data: dict[str, Any]
    corrected_data: dict[str, Any]
    changes_summary: list[Any]
    expires_at: datetime
    amendment_id: UUID | None = None


# ============================================================================
# Sync schemas
# ============================================================================


class SyncRequest(BaseModel):
    """Device copies of EVV records to reconcile."""

    records: list[dict[str, Any]]


class SyncRecordResponse(BaseModel):
    record_id: str
    outcome: str
    attempts: int
    strategy: str | None = None
    requires_manual_review: bool = False
    field_conflicts: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None
    server_record: dict[str, Any] | None = None


class SyncReportResponse(BaseModel):
    device_id: str
    synced: int
    conflicts: int
    failed: int
    results: list[SyncRecordResponse]


class SyncHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sync_history_id: UUID
    device_id: str
    record_type: str
    record_id: str
    outcome: str
    strategy: str | None = None
    attempts: int
    requires_manual_review: bool
    field_conflicts: list[Any]
    error_message: str | None = None
    created_at: datetime


class ManualResolutionRequest(BaseModel):
    selected_strategy: str = Field(pattern="^(client|server|field_by_field)$")
    field_resolutions: dict[str, Any] = Field(default_factory=dict)


class ResolveRequest(BaseModel):
    """Stateless conflict resolution of two copies of a record."""

    client_record: dict[str, Any]
    server_record: dict[str, Any]
    record_type: str


class ConflictCheckRequest(BaseModel):
    local_record: dict[str, Any]
    server_record: dict[str, Any]


class PotentialConflictsResponse(BaseModel):
    has_conflict: bool
    conflicting_fields: list[str]
    severity: str


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    detail: str
    code: str
    details: dict[str, Any] | None = None
