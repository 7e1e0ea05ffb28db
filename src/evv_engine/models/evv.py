"""EVV capture models: geofences, time entries, EVV records and corrections."""

from __future__ import annotations

from dataclasses import fields, replace
from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from evv_engine.models.base import (
    Base,
    JSONDocument,
    TimestampMixin,
    UTCDateTime,
    utc_now,
)
from evv_engine.validators.types import EVVRecordSnapshot, LocationSample

DATETIME_FIELDS = frozenset({"clock_in_time", "clock_out_time"})
SNAPSHOT_FIELDS = frozenset(f.name for f in fields(EVVRecordSnapshot))


# ===== Geofences =====


class Geofence(Base, TimestampMixin):
    """Verification boundary around one service address.

    Never deleted; retired geofences are ARCHIVED. At most one geofence per
    address is ACTIVE. Counters are only ever changed through atomic UPDATE
    statements (see EVVCaptureService._record_geofence_verification).
    """

    __tablename__ = "geofence"

    geofence_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)
    address_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    center_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    center_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    radius_meters: Mapped[float] = mapped_column(Float, nullable=False, default=100.0)
    radius_type: Mapped[str] = mapped_column(String, nullable=False, default="STANDARD")
    shape: Mapped[str] = mapped_column(String, nullable=False, default="CIRCLE")
    polygon_points: Mapped[list[Any] | None] = mapped_column(JSONDocument, nullable=True)
    allowed_variance_meters: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    verification_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_verifications: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_verifications: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="ACTIVE")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "radius_meters >= 10 AND radius_meters <= 500",
            name="geofence_radius_check",
        ),
        CheckConstraint("shape IN ('CIRCLE', 'POLYGON')", name="geofence_shape_check"),
        CheckConstraint(
            "status IN ('ACTIVE', 'SUSPENDED', 'ARCHIVED')",
            name="geofence_status_check",
        ),
        CheckConstraint(
            "successful_verifications + failed_verifications <= verification_count",
            name="geofence_counters_check",
        ),
        Index(
            "geofence_active_address_unique",
            "address_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )


# ===== EVV records =====


class EVVRecord(Base, TimestampMixin):
    """Unit of compliance evaluation for one visit (1:1 with visit)."""

    __tablename__ = "evv_record"

    evv_record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    visit_id: Mapped[UUID] = mapped_column(nullable=False)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)
    branch_id: Mapped[UUID | None] = mapped_column(nullable=True)
    jurisdiction_code: Mapped[str] = mapped_column(String, nullable=False, default="FEDERAL")

    # Element 1: service type
    service_type_code: Mapped[str] = mapped_column(String, nullable=False)
    service_type_name: Mapped[str | None] = mapped_column(String, nullable=True)

    # Element 2: client
    client_id: Mapped[UUID] = mapped_column(nullable=False)
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    client_medicaid_id: Mapped[str | None] = mapped_column(String, nullable=True)

    # Element 3: caregiver
    caregiver_id: Mapped[UUID] = mapped_column(nullable=False)
    caregiver_name: Mapped[str | None] = mapped_column(String, nullable=True)
    caregiver_employee_id: Mapped[str | None] = mapped_column(String, nullable=True)
    caregiver_npi: Mapped[str | None] = mapped_column(String, nullable=True)

    # Element 4: date
    service_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Element 5: location
    service_address: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    geofence_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("geofence.geofence_id"), nullable=True
    )

    # Element 6: time
    clock_in_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    clock_out_time: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    total_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    clock_in_verification: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    clock_out_verification: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument, nullable=True
    )
    pause_events: Mapped[list[Any]] = mapped_column(JSONDocument, nullable=False, default=list)

    record_status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    verification_level: Mapped[str] = mapped_column(String, nullable=False, default="FULL")
    compliance_flags: Mapped[list[Any]] = mapped_column(
        JSONDocument, nullable=False, default=list
    )

    integrity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    integrity_checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    client_attestation: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument, nullable=True
    )
    sync_metadata: Mapped[dict[str, Any]] = mapped_column(
        JSONDocument, nullable=False, default=dict
    )

    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    recorded_by: Mapped[UUID] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )
    updated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    time_entries: Mapped[list[TimeEntry]] = relationship(
        back_populates="evv_record", order_by="TimeEntry.entry_timestamp"
    )
    amendments: Mapped[list[EVVRecordAmendment]] = relationship(
        back_populates="evv_record", order_by="EVVRecordAmendment.amended_at"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("visit_id", name="evv_record_visit_unique"),
        CheckConstraint(
            "record_status IN ('PENDING', 'COMPLETE', 'SUBMITTED', 'APPROVED', "
            "'REJECTED', 'DISPUTED', 'AMENDED', 'VOIDED')",
            name="evv_record_status_check",
        ),
        CheckConstraint(
            "verification_level IN ('FULL', 'PARTIAL', 'MANUAL', 'PHONE', 'EXCEPTION')",
            name="evv_record_verification_level_check",
        ),
        CheckConstraint(
            "clock_out_time IS NULL OR clock_out_time >= clock_in_time",
            name="evv_record_clock_order_check",
        ),
    )

    @property
    def clock_in_location(self) -> LocationSample | None:
        return _location_from(self.clock_in_verification)

    @property
    def clock_out_location(self) -> LocationSample | None:
        return _location_from(self.clock_out_verification)

    def to_snapshot(self, corrections: dict[str, Any] | None = None) -> EVVRecordSnapshot:
        """Immutable view for the compliance aggregator.

        corrections are the merged corrected values of the record's
        amendments; they replace the captured values in the view only.
        """
        address = self.service_address or {}
        verification = self.clock_in_verification or {}
        snapshot = EVVRecordSnapshot(
            visit_id=self.visit_id,
            service_type_code=self.service_type_code,
            service_type_name=self.service_type_name,
            client_id=self.client_id,
            client_name=self.client_name,
            client_medicaid_id=self.client_medicaid_id,
            caregiver_id=self.caregiver_id,
            caregiver_name=self.caregiver_name,
            caregiver_employee_id=self.caregiver_employee_id,
            caregiver_npi=self.caregiver_npi,
            service_date=self.service_date,
            service_address_line1=address.get("line1"),
            service_latitude=address.get("latitude"),
            service_longitude=address.get("longitude"),
            clock_in_time=self.clock_in_time,
            clock_out_time=self.clock_out_time,
            clock_in_location=self.clock_in_location,
            clock_out_location=self.clock_out_location,
            recorded_at=self.recorded_at,
            verification_method=verification.get("verification_method"),
            jurisdiction_code=self.jurisdiction_code,
        )
        if not corrections:
            return snapshot
        overlay = {
            name: value
            for name, value in typed_corrections(corrections).items()
            if name in SNAPSHOT_FIELDS
        }
        return replace(snapshot, **overlay)


def typed_corrections(values: dict[str, Any]) -> dict[str, Any]:
    """Convert JSON-stored corrected values back to their column types."""
    typed: dict[str, Any] = {}
    for name, value in values.items():
        if value is not None and name in DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif value is not None and name == "service_date" and isinstance(value, str):
            value = date.fromisoformat(value)
        elif value is not None and name == "total_duration_minutes":
            value = int(value)
        typed[name] = value
    return typed


def _location_from(verification: dict[str, Any] | None) -> LocationSample | None:
    if not verification or not verification.get("location"):
        return None
    return LocationSample.from_dict(verification["location"])


# ===== Time entries (append-only event log) =====


class TimeEntry(Base, TimestampMixin):
    """One captured clock event.

    Append-only. After insert only evv_record_id (link) and the override
    columns may change.
    """

    __tablename__ = "time_entry"

    time_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    visit_id: Mapped[UUID] = mapped_column(nullable=False)
    evv_record_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("evv_record.evv_record_id"), nullable=True
    )
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)
    caregiver_id: Mapped[UUID] = mapped_column(nullable=False)
    client_id: Mapped[UUID] = mapped_column(nullable=False)

    entry_type: Mapped[str] = mapped_column(String, nullable=False)
    entry_timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_method: Mapped[str | None] = mapped_column(String, nullable=True)
    location_captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    mocked_location: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    device_id: Mapped[str] = mapped_column(String, nullable=False)
    device_model: Mapped[str | None] = mapped_column(String, nullable=True)
    device_os: Mapped[str | None] = mapped_column(String, nullable=True)
    app_version: Mapped[str | None] = mapped_column(String, nullable=True)
    offline_recorded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    geofence_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("geofence.geofence_id"), nullable=True
    )
    distance_from_address_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_within_geofence: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_issues: Mapped[list[Any]] = mapped_column(
        JSONDocument, nullable=False, default=list
    )

    integrity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    manual_override: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)

    evv_record: Mapped[EVVRecord | None] = relationship(back_populates="time_entries")

    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('CLOCK_IN', 'CLOCK_OUT', 'PAUSE', 'RESUME')",
            name="time_entry_type_check",
        ),
        CheckConstraint(
            "status IN ('PENDING', 'VERIFIED', 'FLAGGED', 'OVERRIDDEN', 'REJECTED', 'SYNCED')",
            name="time_entry_status_check",
        ),
        Index("time_entry_visit_idx", "visit_id", "entry_timestamp"),
    )


# ===== Corrections =====


class EVVRecordAmendment(Base, TimestampMixin):
    """A correction to an EVV record.

    History is never edited in place: the original values are captured
    here next to the corrected ones, pointing back at the original record.
    """

    __tablename__ = "evv_record_amendment"

    amendment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    evv_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("evv_record.evv_record_id"), nullable=False
    )
    amendment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False, default="REVISION")
    vmur_id: Mapped[UUID | None] = mapped_column(nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    original_values: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    corrected_values: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    changes_summary: Mapped[list[Any]] = mapped_column(JSONDocument, nullable=False, default=list)
    integrity_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    # record_checksum of the corrected view once this amendment applies
    corrected_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    amended_by: Mapped[UUID] = mapped_column(nullable=False)
    amended_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    evv_record: Mapped[EVVRecord] = relationship(back_populates="amendments")

    __table_args__ = (
        UniqueConstraint("evv_record_id", "amendment_number", name="evv_amendment_number_unique"),
        CheckConstraint("source IN ('REVISION', 'VMUR')", name="evv_amendment_source_check"),
    )


class VisitMaintenanceRequest(Base, TimestampMixin):
    """VMUR: formal unlock request for records past their edit window."""

    __tablename__ = "visit_maintenance_request"

    vmur_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    evv_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("evv_record.evv_record_id"), nullable=False, index=True
    )
    visit_id: Mapped[UUID] = mapped_column(nullable=False)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)

    requested_by: Mapped[UUID] = mapped_column(nullable=False)
    requested_by_name: Mapped[str | None] = mapped_column(String, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    request_reason: Mapped[str] = mapped_column(String, nullable=False)
    reason_details: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    denied_by: Mapped[UUID | None] = mapped_column(nullable=True)
    denied_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    denial_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    original_data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    corrected_data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    changes_summary: Mapped[list[Any]] = mapped_column(JSONDocument, nullable=False, default=list)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    amendment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("evv_record_amendment.amendment_id"), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'DENIED', 'EXPIRED')",
            name="vmur_status_check",
        ),
    )


# ===== Sync history =====


class SyncHistoryEntry(Base, TimestampMixin):
    """Outcome of one record reconciliation during a device sync."""

    __tablename__ = "evv_sync_history"

    sync_history_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    device_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    record_type: Mapped[str] = mapped_column(String, nullable=False)
    record_id: Mapped[str] = mapped_column(String, nullable=False)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    strategy: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    field_conflicts: Mapped[list[Any]] = mapped_column(JSONDocument, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "outcome IN ('SYNCED', 'CONFLICT', 'FAILED')",
            name="evv_sync_history_outcome_check",
        ),
    )
