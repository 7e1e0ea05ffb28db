"""EVV capture service: clock-in, clock-out, pauses and manual overrides.

This is the only component that mutates EVV state. Per-visit
serialization comes from the unique constraint on evv_record.visit_id plus
the optimistic version column; unrelated visits never contend. Geofence
counters are updated with a single atomic UPDATE so concurrent clock-ins
at the same address do not lose increments.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from evv_engine.auth import Permission, UserContext
from evv_engine.config import get_settings
from evv_engine.errors import (
    CollaboratorUnavailableError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from evv_engine.models import EVVRecord, EVVRecordAmendment, Geofence, TimeEntry, utc_now
from evv_engine.providers.base import (
    CaregiverProvider,
    ClientProvider,
    ServiceAddress,
    VisitForEVV,
    VisitProvider,
)
from evv_engine.services.amendment import (
    load_amendments,
    load_corrections,
    worked_minutes,
    write_amendment,
)
from evv_engine.services.integrity import (
    IntegrityCheckResult,
    core_data_hash,
    record_checksum,
    time_entry_hash,
    verify_integrity,
)
from evv_engine.services.state_machine import (
    EVVRecordStateMachine,
    EVVRecordStatus,
    GeofenceStatus,
    TimeEntryStatus,
    TimeEntryType,
    VerificationLevel,
    is_edit_window_closed,
)
from evv_engine.validators.compliance import ComplianceAggregator, ComplianceResult
from evv_engine.validators.geofence import (
    GeofenceValidationResult,
    GeofenceValidator,
    GeofenceValidatorConfig,
)
from evv_engine.validators.profiles import (
    JurisdictionProfile,
    find_jurisdiction,
    get_jurisdiction,
)
from evv_engine.validators.types import (
    ComplianceFlag,
    ExpectedLocation,
    LocationSample,
    coordinates_valid,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Flags that record something that happened to the record rather than a
# property of its data; they survive recomputation.
STICKY_FLAGS = (
    ComplianceFlag.MANUAL_OVERRIDE.value,
    ComplianceFlag.AMENDED.value,
    ComplianceFlag.SYNC_CONFLICT.value,
)


@dataclass(frozen=True)
class DeviceInfo:
    device_id: str
    device_model: str | None = None
    device_os: str | None = None
    app_version: str | None = None


@dataclass(frozen=True)
class ClockInInput:
    """Clock-in request.

    captured_at is the device clock. It becomes the clock-in time only when
    the event was recorded offline; online events use server time.
    """

    visit_id: UUID
    caregiver_id: UUID
    location: LocationSample
    device: DeviceInfo
    captured_at: datetime | None = None
    offline_recorded: bool = False


@dataclass(frozen=True)
class ClockOutInput:
    visit_id: UUID
    caregiver_id: UUID
    location: LocationSample
    device: DeviceInfo
    captured_at: datetime | None = None
    offline_recorded: bool = False
    client_signature: str | None = None
    client_present: bool = True
    attestation_notes: str | None = None


@dataclass(frozen=True)
class PauseInput:
    visit_id: UUID
    caregiver_id: UUID
    location: LocationSample
    device: DeviceInfo
    reason: str | None = None
    captured_at: datetime | None = None
    offline_recorded: bool = False


@dataclass(frozen=True)
class ManualOverrideInput:
    time_entry_id: UUID
    reason: str
    supervisor_notes: str | None = None
    approval_authority: str | None = None


@dataclass(frozen=True)
class CreateGeofenceInput:
    address_id: UUID
    latitude: float
    longitude: float
    organization_id: UUID | None = None
    radius_meters: float | None = None
    allowed_variance_meters: float = 0.0
    shape: str = "CIRCLE"
    polygon_points: list[Any] | None = None
    notes: str | None = None


@dataclass(frozen=True)
class AmendmentInput:
    evv_record_id: UUID
    reason: str
    corrections: dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    """What clock-in/clock-out hand back to the caller."""

    evv_record: EVVRecord
    time_entry: TimeEntry
    verification: GeofenceValidationResult
    compliance: ComplianceResult | None = None


def address_fallback_id(address: ServiceAddress) -> UUID:
    """Stable id for addresses the visit service did not identify."""
    key = "|".join(
        part.strip().lower()
        for part in (address.line1, address.city, address.state, address.postal_code)
    )
    return uuid.uuid5(uuid.NAMESPACE_URL, f"evv-address:{key}")


class EVVCaptureService:
    """Orchestrates EVV capture against the database and collaborators."""

    def __init__(
        self,
        session: AsyncSession,
        visit_provider: VisitProvider,
        client_provider: ClientProvider,
        caregiver_provider: CaregiverProvider,
        jurisdiction: JurisdictionProfile | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = get_settings()
        self.session = session
        self.visits = visit_provider
        self.clients = client_provider
        self.caregivers = caregiver_provider
        self.jurisdiction = jurisdiction
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.collaborator_timeout_seconds
        )
        self.default_jurisdiction_code = settings.default_jurisdiction
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # Clock-in / clock-out
    # ------------------------------------------------------------------

    async def clock_in(self, data: ClockInInput, user: UserContext) -> CaptureResult:
        """Start a visit: verify location, append CLOCK_IN, create the EVV record."""
        self._validate_sample(data.location, data.device)
        self._require_permission(user, Permission.CLOCK_IN)
        self._require_self_or_supervisor(user, data.caregiver_id)

        visit = await self._get_visit(data.visit_id)
        if (
            visit.assigned_caregiver_id is not None
            and visit.assigned_caregiver_id != data.caregiver_id
            and not user.is_supervisor
        ):
            raise PermissionDeniedError(
                "Caregiver is not assigned to this visit",
                {"visit_id": str(visit.visit_id), "caregiver_id": str(data.caregiver_id)},
            )

        existing = await self.get_record_for_visit(data.visit_id)
        if existing is not None:
            raise ConflictError(
                "Visit is already clocked in",
                {
                    "visit_id": str(data.visit_id),
                    "evv_record_id": str(existing.evv_record_id),
                    "record_status": existing.record_status,
                },
            )

        authorization = await self._call(
            "can_provide_service",
            self.caregivers.can_provide_service(
                data.caregiver_id, visit.service_type_code, visit.client_id
            ),
        )
        if not authorization.authorized:
            raise PermissionDeniedError(
                authorization.reason or "Caregiver is not authorized to provide this service",
                {
                    "missing_credentials": list(authorization.missing_credentials),
                    "blocked_reasons": list(authorization.blocked_reasons),
                },
            )

        client = await self._call(
            "get_client_for_evv", self.clients.get_client_for_evv(visit.client_id)
        )
        if client is None:
            raise NotFoundError("Client", visit.client_id)
        caregiver = await self._call(
            "get_caregiver_for_evv", self.caregivers.get_caregiver_for_evv(data.caregiver_id)
        )
        if caregiver is None:
            raise NotFoundError("Caregiver", data.caregiver_id)

        address = visit.service_address
        if not address.has_coordinates or not coordinates_valid(address.latitude, address.longitude):
            raise ValidationError(
                "Service address must have valid geocoded coordinates for EVV",
                {"address_id": str(address.address_id) if address.address_id else None},
            )

        jurisdiction = self._jurisdiction_for_state(address.state)
        geofence = await self._get_or_create_geofence(visit, jurisdiction, user)
        verification = self._verify(data.location, geofence, jurisdiction)
        await self._record_geofence_verification(geofence, verification)

        now = self.clock()
        clock_time = self._event_time(data.captured_at, data.offline_recorded, now)
        issues = self._verification_issues(verification, data.location)
        passed = not issues

        entry = self._new_time_entry(
            entry_type=TimeEntryType.CLOCK_IN,
            visit=visit,
            caregiver_id=data.caregiver_id,
            location=data.location,
            device=data.device,
            timestamp=clock_time,
            offline_recorded=data.offline_recorded,
            geofence=geofence,
            verification=verification,
            issues=issues,
            now=now,
        )
        self.session.add(entry)

        record = EVVRecord(
            evv_record_id=uuid.uuid4(),
            visit_id=visit.visit_id,
            organization_id=visit.organization_id,
            branch_id=visit.branch_id,
            jurisdiction_code=jurisdiction.code,
            service_type_code=visit.service_type_code,
            service_type_name=visit.service_type_name,
            client_id=client.client_id,
            client_name=client.name,
            client_medicaid_id=client.medicaid_id,
            caregiver_id=caregiver.caregiver_id,
            caregiver_name=caregiver.name,
            caregiver_employee_id=caregiver.employee_id,
            caregiver_npi=caregiver.national_provider_id,
            service_date=visit.service_date,
            service_address={**address.to_dict(), "address_id": str(geofence.address_id)},
            geofence_id=geofence.geofence_id,
            clock_in_time=clock_time,
            clock_in_verification=self._verification_document(
                data.location, data.device, geofence, verification, issues, clock_time
            ),
            pause_events=[],
            record_status=EVVRecordStatus.PENDING.value,
            verification_level=(
                VerificationLevel.FULL.value if passed else VerificationLevel.PARTIAL.value
            ),
            compliance_flags=[],
            sync_metadata={
                "sync_id": str(uuid.uuid4()),
                "last_synced_at": now.isoformat(),
                "sync_status": "SYNCED",
                "source_device_id": data.device.device_id,
                "offline_recorded": data.offline_recorded,
                "revision": 1,
            },
            recorded_at=now,
            recorded_by=user.user_id,
            updated_by=user.user_id,
            integrity_hash="",
            integrity_checksum="",
        )
        record.integrity_hash = core_data_hash(record)
        record.integrity_checksum = record_checksum(record)
        compliance = self._apply_compliance(record, visit, geofence)
        self.session.add(record)

        try:
            await self.session.flush()
        except IntegrityError as exc:
            # A concurrent clock-in for the same visit won the unique constraint
            raise ConflictError(
                "Visit is already clocked in", {"visit_id": str(data.visit_id)}
            ) from exc

        entry.evv_record_id = record.evv_record_id
        await self.session.flush()

        logger.info(
            "Clock-in recorded for visit %s by caregiver %s (%s, %.0fm)",
            visit.visit_id,
            data.caregiver_id,
            verification.validation_type.value,
            verification.distance_meters or -1,
        )
        return CaptureResult(record, entry, verification, compliance)

    async def clock_out(self, data: ClockOutInput, user: UserContext) -> CaptureResult:
        """Finish a visit: verify location, append CLOCK_OUT, seal the record."""
        self._validate_sample(data.location, data.device)
        self._require_permission(user, Permission.CLOCK_OUT)
        self._require_self_or_supervisor(user, data.caregiver_id)

        record = await self.get_record_for_visit(data.visit_id)
        if record is None:
            raise NotFoundError("EVV record for visit", data.visit_id)
        if record.caregiver_id != data.caregiver_id and not user.is_supervisor:
            raise PermissionDeniedError(
                "Only the caregiver who clocked in can clock out",
                {"evv_record_id": str(record.evv_record_id)},
            )
        if record.record_status != EVVRecordStatus.PENDING:
            raise ConflictError(
                "Visit is already clocked out",
                {
                    "evv_record_id": str(record.evv_record_id),
                    "record_status": record.record_status,
                },
            )

        visit = await self._get_visit(data.visit_id)
        geofence = await self._get_geofence(record.geofence_id)
        jurisdiction = get_jurisdiction(record.jurisdiction_code)
        verification = self._verify(data.location, geofence, jurisdiction)
        await self._record_geofence_verification(geofence, verification)

        now = self.clock()
        clock_time = self._event_time(data.captured_at, data.offline_recorded, now)
        if clock_time < record.clock_in_time:
            raise ValidationError(
                "Clock-out time cannot be before clock-in time",
                {
                    "clock_in_time": record.clock_in_time.isoformat(),
                    "clock_out_time": clock_time.isoformat(),
                },
            )
        issues = self._verification_issues(verification, data.location)

        entry = self._new_time_entry(
            entry_type=TimeEntryType.CLOCK_OUT,
            visit=visit,
            caregiver_id=data.caregiver_id,
            location=data.location,
            device=data.device,
            timestamp=clock_time,
            offline_recorded=data.offline_recorded,
            geofence=geofence,
            verification=verification,
            issues=issues,
            now=now,
            evv_record_id=record.evv_record_id,
        )
        self.session.add(entry)

        EVVRecordStateMachine.validate_transition(record.record_status, EVVRecordStatus.COMPLETE)
        record.clock_out_time = clock_time
        record.total_duration_minutes = self._duration_minutes(record, clock_time)
        record.clock_out_verification = self._verification_document(
            data.location, data.device, geofence, verification, issues, clock_time
        )
        record.record_status = EVVRecordStatus.COMPLETE.value
        if issues and record.verification_level == VerificationLevel.FULL:
            record.verification_level = VerificationLevel.PARTIAL.value
        if data.client_signature:
            record.client_attestation = {
                "attested_at": now.isoformat(),
                "client_present": data.client_present,
                "signature_hash": hashlib.sha256(data.client_signature.encode()).hexdigest(),
                "notes": data.attestation_notes,
            }
        record.updated_by = user.user_id
        record.integrity_checksum = record_checksum(record)

        compliance = self._apply_compliance(record, visit, geofence)
        await self._flush_record(record)

        logger.info(
            "Clock-out recorded for visit %s (%s minutes, flags=%s)",
            visit.visit_id,
            record.total_duration_minutes,
            ",".join(record.compliance_flags),
        )
        return CaptureResult(record, entry, verification, compliance)

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def record_pause(self, data: PauseInput, user: UserContext) -> TimeEntry:
        """Append a PAUSE entry (e.g. caregiver leaves for an errand)."""
        return await self._pause_or_resume(TimeEntryType.PAUSE, data, user)

    async def record_resume(self, data: PauseInput, user: UserContext) -> TimeEntry:
        """Append a RESUME entry closing the open pause."""
        return await self._pause_or_resume(TimeEntryType.RESUME, data, user)

    async def _pause_or_resume(
        self, entry_type: TimeEntryType, data: PauseInput, user: UserContext
    ) -> TimeEntry:
        self._validate_sample(data.location, data.device)
        self._require_permission(user, Permission.CLOCK_IN)
        self._require_self_or_supervisor(user, data.caregiver_id)

        record = await self.get_record_for_visit(data.visit_id)
        if record is None:
            raise NotFoundError("EVV record for visit", data.visit_id)
        if record.record_status != EVVRecordStatus.PENDING:
            raise ConflictError(
                "Visit is not in progress", {"record_status": record.record_status}
            )

        events = list(record.pause_events or [])
        paused = bool(events) and events[-1].get("resumed_at") is None
        if entry_type == TimeEntryType.PAUSE and paused:
            raise ConflictError("Visit is already paused", {"visit_id": str(data.visit_id)})
        if entry_type == TimeEntryType.RESUME and not paused:
            raise ConflictError("Visit is not paused", {"visit_id": str(data.visit_id)})

        visit = await self._get_visit(data.visit_id)
        geofence = await self._get_geofence(record.geofence_id)
        verification = self._verify(
            data.location, geofence, get_jurisdiction(record.jurisdiction_code)
        )
        await self._record_geofence_verification(geofence, verification)

        now = self.clock()
        timestamp = self._event_time(data.captured_at, data.offline_recorded, now)
        issues = self._verification_issues(verification, data.location)
        entry = self._new_time_entry(
            entry_type=entry_type,
            visit=visit,
            caregiver_id=data.caregiver_id,
            location=data.location,
            device=data.device,
            timestamp=timestamp,
            offline_recorded=data.offline_recorded,
            geofence=geofence,
            verification=verification,
            issues=issues,
            now=now,
            evv_record_id=record.evv_record_id,
        )
        self.session.add(entry)

        if entry_type == TimeEntryType.PAUSE:
            events.append(
                {"paused_at": timestamp.isoformat(), "resumed_at": None, "reason": data.reason}
            )
        else:
            if timestamp < datetime.fromisoformat(events[-1]["paused_at"]):
                raise ValidationError("Resume time cannot be before pause time")
            events[-1] = {**events[-1], "resumed_at": timestamp.isoformat()}
        record.pause_events = events
        record.updated_by = user.user_id
        await self._flush_record(record)
        return entry

    # ------------------------------------------------------------------
    # Overrides, geofences, amendments
    # ------------------------------------------------------------------

    async def apply_manual_override(
        self, data: ManualOverrideInput, user: UserContext
    ) -> TimeEntry:
        """Supervisor override of a flagged time entry.

        The entry is marked OVERRIDDEN and verification_passed is forced to
        True. The original verification issues stay on the entry.
        """
        if not user.is_supervisor:
            raise PermissionDeniedError("Only supervisors can apply manual overrides")
        if not data.reason or not data.reason.strip():
            raise ValidationError("Override reason is required")

        entry = await self.session.get(TimeEntry, data.time_entry_id)
        if entry is None:
            raise NotFoundError("Time entry", data.time_entry_id)
        if entry.status == TimeEntryStatus.OVERRIDDEN:
            raise ConflictError(
                "Time entry is already overridden", {"time_entry_id": str(entry.time_entry_id)}
            )

        now = self.clock()
        entry.manual_override = {
            "overridden_by": str(user.user_id),
            "overridden_by_name": user.name,
            "overridden_at": now.isoformat(),
            "reason": data.reason.strip(),
            "supervisor_notes": data.supervisor_notes,
            "approval_authority": data.approval_authority,
            "original_status": entry.status,
            "original_verification_passed": entry.verification_passed,
        }
        entry.status = TimeEntryStatus.OVERRIDDEN.value
        entry.verification_passed = True

        if entry.evv_record_id is not None:
            record = await self.get_record(entry.evv_record_id)
            if ComplianceFlag.MANUAL_OVERRIDE.value not in record.compliance_flags:
                record.compliance_flags = [
                    *record.compliance_flags,
                    ComplianceFlag.MANUAL_OVERRIDE.value,
                ]
            if record.verification_level == VerificationLevel.PARTIAL:
                record.verification_level = VerificationLevel.MANUAL.value
            record.updated_by = user.user_id
            await self._flush_record(record)
        else:
            await self.session.flush()

        logger.info(
            "Manual override applied to time entry %s by %s: %s",
            entry.time_entry_id,
            user.user_id,
            data.reason,
        )
        return entry

    async def create_geofence(self, data: CreateGeofenceInput, user: UserContext) -> Geofence:
        """Register a geofence for an address, archiving any active one."""
        if not (user.is_supervisor or user.has_permission(Permission.GEOFENCE_MANAGE)):
            raise PermissionDeniedError("Not allowed to manage geofences")
        if not coordinates_valid(data.latitude, data.longitude):
            raise ValidationError("Geofence center coordinates are invalid")
        radius = (
            data.radius_meters
            if data.radius_meters is not None
            else self._jurisdiction_for_state(None).geofence_radius_meters
        )
        if not 10 <= radius <= 500:
            raise ValidationError("Geofence radius must be between 10 and 500 meters")
        if data.shape not in ("CIRCLE", "POLYGON"):
            raise ValidationError(f"Unsupported geofence shape: {data.shape}")
        if data.shape == "POLYGON" and not data.polygon_points:
            raise ValidationError("Polygon geofences require polygon_points")

        current = await self._active_geofence_for_address(data.address_id)
        if current is not None:
            current.status = GeofenceStatus.ARCHIVED.value
            await self.session.flush()

        geofence = Geofence(
            geofence_id=uuid.uuid4(),
            organization_id=data.organization_id,
            address_id=data.address_id,
            center_latitude=data.latitude,
            center_longitude=data.longitude,
            radius_meters=radius,
            shape=data.shape,
            polygon_points=data.polygon_points,
            allowed_variance_meters=max(data.allowed_variance_meters, 0.0),
            notes=data.notes,
            created_by=user.user_id,
        )
        self.session.add(geofence)
        await self.session.flush()
        return geofence

    async def archive_geofence(self, geofence_id: UUID, user: UserContext) -> Geofence:
        if not (user.is_supervisor or user.has_permission(Permission.GEOFENCE_MANAGE)):
            raise PermissionDeniedError("Not allowed to manage geofences")
        geofence = await self._get_geofence(geofence_id)
        geofence.status = GeofenceStatus.ARCHIVED.value
        await self.session.flush()
        return geofence

    async def amend_record(
        self, data: AmendmentInput, user: UserContext
    ) -> EVVRecordAmendment:
        """Standard revision of a record still inside its edit window."""
        if not (user.is_supervisor or user.has_permission(Permission.AMEND)):
            raise PermissionDeniedError("Not allowed to amend EVV records")

        record = await self.get_record(data.evv_record_id)
        if not EVVRecordStateMachine.can_amend(record.record_status):
            raise ConflictError(
                f"EVV record in status {record.record_status} cannot be amended",
                {"record_status": record.record_status},
            )
        jurisdiction = get_jurisdiction(record.jurisdiction_code)
        if is_edit_window_closed(record.recorded_at, self.clock(), jurisdiction.vmur_threshold_days):
            raise ConflictError(
                f"Record is older than {jurisdiction.vmur_threshold_days} days; "
                "submit a VMUR to correct it",
                {"evv_record_id": str(record.evv_record_id), "requires_vmur": True},
            )

        try:
            amendment = await write_amendment(
                self.session, record, data.corrections, data.reason, user.user_id
            )
        except StaleDataError as exc:
            raise ConflictError("EVV record was modified concurrently") from exc
        await self.evaluate_compliance(record.evv_record_id)
        return amendment

    # ------------------------------------------------------------------
    # Compliance
    # ------------------------------------------------------------------

    async def evaluate_compliance(
        self, evv_record_id: UUID, as_of: datetime | None = None
    ) -> ComplianceResult:
        """Recompute compliance for a stored record and refresh its flags.

        Amended records are judged on their corrected view.
        """
        record = await self.get_record(evv_record_id)
        result = await self._compliance_for(record, as_of)
        sticky = [f for f in STICKY_FLAGS if f in (record.compliance_flags or [])]
        record.compliance_flags = [*result.flags, *[f for f in sticky if f not in result.flags]]
        await self._flush_record(record)
        return result

    async def check_compliance(
        self, evv_record_id: UUID, as_of: datetime | None = None
    ) -> ComplianceResult:
        """Compute compliance without touching the stored flags."""
        record = await self.get_record(evv_record_id)
        return await self._compliance_for(record, as_of)

    async def _compliance_for(
        self, record: EVVRecord, as_of: datetime | None
    ) -> ComplianceResult:
        visit = await self._get_visit(record.visit_id)
        geofence = await self._get_geofence(record.geofence_id) if record.geofence_id else None
        corrections = await load_corrections(self.session, record.evv_record_id)
        return self._compute_compliance(record, visit, geofence, as_of, corrections)

    def _apply_compliance(
        self,
        record: EVVRecord,
        visit: VisitForEVV,
        geofence: Geofence | None,
        as_of: datetime | None = None,
    ) -> ComplianceResult:
        result = self._compute_compliance(record, visit, geofence, as_of)
        sticky = [f for f in STICKY_FLAGS if f in (record.compliance_flags or [])]
        record.compliance_flags = [*result.flags, *[f for f in sticky if f not in result.flags]]
        return result

    def _compute_compliance(
        self,
        record: EVVRecord,
        visit: VisitForEVV,
        geofence: Geofence | None,
        as_of: datetime | None = None,
        corrections: dict[str, Any] | None = None,
    ) -> ComplianceResult:
        if geofence is not None:
            expected = ExpectedLocation(
                latitude=geofence.center_latitude,
                longitude=geofence.center_longitude,
                radius_meters=geofence.radius_meters,
                allowed_variance_meters=geofence.allowed_variance_meters,
            )
        else:
            address = record.service_address or {}
            expected = ExpectedLocation(
                latitude=address.get("latitude"),
                longitude=address.get("longitude"),
                radius_meters=address.get("geofence_radius"),
            )
        aggregator = ComplianceAggregator(get_jurisdiction(record.jurisdiction_code))
        return aggregator.validate_compliance(
            record.to_snapshot(corrections),
            visit.scheduled_start,
            visit.scheduled_end,
            expected,
            as_of=as_of or self.clock(),
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_record(self, evv_record_id: UUID) -> EVVRecord:
        record = await self.session.get(EVVRecord, evv_record_id)
        if record is None:
            raise NotFoundError("EVV record", evv_record_id)
        return record

    async def get_record_for_visit(self, visit_id: UUID) -> EVVRecord | None:
        result = await self.session.execute(
            select(EVVRecord).where(EVVRecord.visit_id == visit_id)
        )
        return result.scalar_one_or_none()

    async def get_time_entries_for_visit(self, visit_id: UUID) -> list[TimeEntry]:
        result = await self.session.execute(
            select(TimeEntry)
            .where(TimeEntry.visit_id == visit_id)
            .order_by(TimeEntry.entry_timestamp, TimeEntry.created_at)
        )
        return list(result.scalars().all())

    async def get_amendments(self, evv_record_id: UUID) -> list[EVVRecordAmendment]:
        await self.get_record(evv_record_id)
        return await load_amendments(self.session, evv_record_id)

    async def verify_record_integrity(self, evv_record_id: UUID) -> IntegrityCheckResult:
        """Check the record digests and the checksum of every amendment."""
        record = await self.get_record(evv_record_id)
        return verify_integrity(record, await load_amendments(self.session, evv_record_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a collaborator call under the configured timeout.

        Timeouts and connection failures become CollaboratorUnavailableError
        so callers can tell "offline" apart from "rejected".
        """
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Collaborator call %s timed out after %ss", operation, self.timeout_seconds
            )
            raise CollaboratorUnavailableError(
                f"{operation} timed out", {"operation": operation, "reason": "timeout"}
            ) from exc
        except (ConnectionError, OSError) as exc:
            logger.warning("Collaborator call %s unreachable: %s", operation, exc)
            raise CollaboratorUnavailableError(
                f"{operation} unavailable", {"operation": operation, "reason": "unreachable"}
            ) from exc

    async def _get_visit(self, visit_id: UUID) -> VisitForEVV:
        visit = await self._call("get_visit_for_evv", self.visits.get_visit_for_evv(visit_id))
        if visit is None:
            raise NotFoundError("Visit", visit_id)
        return visit

    async def _get_geofence(self, geofence_id: UUID | None) -> Geofence:
        geofence = await self.session.get(Geofence, geofence_id) if geofence_id else None
        if geofence is None:
            raise NotFoundError("Geofence", geofence_id)
        return geofence

    async def _active_geofence_for_address(self, address_id: UUID) -> Geofence | None:
        result = await self.session.execute(
            select(Geofence)
            .where(
                Geofence.address_id == address_id,
                Geofence.status == GeofenceStatus.ACTIVE.value,
            )
            .order_by(Geofence.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_geofence(
        self, visit: VisitForEVV, jurisdiction: JurisdictionProfile, user: UserContext
    ) -> Geofence:
        address = visit.service_address
        address_id = address.address_id or address_fallback_id(address)
        geofence = await self._active_geofence_for_address(address_id)
        if geofence is not None:
            return geofence

        radius = address.geofence_radius or jurisdiction.geofence_radius_meters
        geofence = Geofence(
            geofence_id=uuid.uuid4(),
            organization_id=visit.organization_id,
            address_id=address_id,
            center_latitude=address.latitude,
            center_longitude=address.longitude,
            radius_meters=min(max(radius, 10.0), 500.0),
            created_by=user.user_id,
        )
        # A concurrent first clock-in at the same address may win the insert
        try:
            async with self.session.begin_nested():
                self.session.add(geofence)
        except IntegrityError:
            existing = await self._active_geofence_for_address(address_id)
            if existing is None:
                raise
            logger.info("Geofence for address %s created concurrently; reusing it", address_id)
            return existing
        logger.info("Created geofence %s for address %s", geofence.geofence_id, address_id)
        return geofence

    async def _record_geofence_verification(
        self, geofence: Geofence, verification: GeofenceValidationResult
    ) -> None:
        """Apply counter deltas from a verification in one atomic UPDATE."""
        success = verification.is_within_geofence
        accuracy = verification.gps_accuracy_meters
        await self.session.execute(
            update(Geofence)
            .where(Geofence.geofence_id == geofence.geofence_id)
            .values(
                verification_count=Geofence.verification_count + 1,
                successful_verifications=Geofence.successful_verifications + (1 if success else 0),
                failed_verifications=Geofence.failed_verifications + (0 if success else 1),
                average_accuracy=(
                    func.coalesce(Geofence.average_accuracy, 0.0) * Geofence.verification_count
                    + accuracy
                )
                / (Geofence.verification_count + 1),
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.refresh(geofence)

    def _jurisdiction_for_state(self, state: str | None) -> JurisdictionProfile:
        if self.jurisdiction is not None:
            return self.jurisdiction
        return find_jurisdiction(state) or get_jurisdiction(self.default_jurisdiction_code)

    def _verify(
        self,
        location: LocationSample,
        geofence: Geofence,
        jurisdiction: JurisdictionProfile,
    ) -> GeofenceValidationResult:
        validator = GeofenceValidator(
            GeofenceValidatorConfig(
                base_radius_meters=geofence.radius_meters,
                max_gps_accuracy_meters=jurisdiction.max_gps_accuracy_meters,
                strict_mode=jurisdiction.strict_gps_accuracy,
            )
        )
        return validator.validate(
            location,
            ExpectedLocation(
                latitude=geofence.center_latitude,
                longitude=geofence.center_longitude,
                radius_meters=geofence.radius_meters,
                allowed_variance_meters=geofence.allowed_variance_meters,
            ),
        )

    @staticmethod
    def _verification_issues(
        verification: GeofenceValidationResult, location: LocationSample
    ) -> list[str]:
        issues = []
        if not verification.is_within_geofence:
            issues.append(verification.message)
        if location.mocked:
            issues.append("Mock location detected on device")
        return issues

    @staticmethod
    def _verification_document(
        location: LocationSample,
        device: DeviceInfo,
        geofence: Geofence,
        verification: GeofenceValidationResult,
        issues: list[str],
        clock_time: datetime,
    ) -> dict[str, Any]:
        return {
            "location": location.to_dict(),
            "geofence_id": str(geofence.geofence_id),
            "geofence": verification.to_dict(),
            "verification_method": location.method,
            "verification_passed": not issues,
            "issues": list(issues),
            "device_id": device.device_id,
            "clock_time": clock_time.isoformat(),
        }

    def _new_time_entry(
        self,
        *,
        entry_type: TimeEntryType,
        visit: VisitForEVV,
        caregiver_id: UUID,
        location: LocationSample,
        device: DeviceInfo,
        timestamp: datetime,
        offline_recorded: bool,
        geofence: Geofence,
        verification: GeofenceValidationResult,
        issues: list[str],
        now: datetime,
        evv_record_id: UUID | None = None,
    ) -> TimeEntry:
        entry = TimeEntry(
            time_entry_id=uuid.uuid4(),
            visit_id=visit.visit_id,
            evv_record_id=evv_record_id,
            organization_id=visit.organization_id,
            caregiver_id=caregiver_id,
            client_id=visit.client_id,
            entry_type=entry_type.value,
            entry_timestamp=timestamp,
            latitude=location.latitude,
            longitude=location.longitude,
            accuracy_meters=location.accuracy_meters,
            location_method=location.method,
            location_captured_at=location.captured_at,
            mocked_location=location.mocked,
            device_id=device.device_id,
            device_model=device.device_model,
            device_os=device.device_os,
            app_version=device.app_version,
            offline_recorded=offline_recorded,
            synced_at=now if offline_recorded else None,
            geofence_id=geofence.geofence_id,
            distance_from_address_meters=verification.distance_meters,
            is_within_geofence=verification.is_within_geofence,
            verification_passed=not issues,
            verification_issues=list(issues),
            status=(TimeEntryStatus.VERIFIED if not issues else TimeEntryStatus.FLAGGED).value,
            integrity_hash="",
        )
        entry.integrity_hash = time_entry_hash(entry)
        return entry

    @staticmethod
    def _event_time(
        captured_at: datetime | None, offline_recorded: bool, now: datetime
    ) -> datetime:
        if offline_recorded and captured_at is not None:
            if captured_at.tzinfo is None:
                raise ValidationError("captured_at must be timezone-aware")
            if captured_at > now:
                raise ValidationError("captured_at cannot be in the future")
            return captured_at
        return now

    @staticmethod
    def _duration_minutes(record: EVVRecord, clock_out: datetime) -> int:
        return worked_minutes(record.clock_in_time, clock_out, record.pause_events)

    @staticmethod
    def _validate_sample(location: LocationSample, device: DeviceInfo) -> None:
        if not coordinates_valid(location.latitude, location.longitude):
            raise ValidationError(
                "Location coordinates are missing or out of range",
                {"latitude": location.latitude, "longitude": location.longitude},
            )
        if location.captured_at is not None and location.captured_at.tzinfo is None:
            raise ValidationError("Location captured_at must be timezone-aware")
        if not device.device_id:
            raise ValidationError("device_id is required")

    @staticmethod
    def _require_permission(user: UserContext, permission: str) -> None:
        if not (user.has_permission(permission) or user.is_supervisor):
            raise PermissionDeniedError(f"Missing permission {permission}")

    @staticmethod
    def _require_self_or_supervisor(user: UserContext, caregiver_id: UUID) -> None:
        if user.user_id != caregiver_id and not user.is_supervisor:
            raise PermissionDeniedError(
                "Can only record EVV for yourself unless you are a supervisor",
                {"caregiver_id": str(caregiver_id)},
            )

    async def _flush_record(self, record: EVVRecord) -> None:
        try:
            await self.session.flush()
        except StaleDataError as exc:
            raise ConflictError(
                "EVV record was modified concurrently",
                {"evv_record_id": str(record.evv_record_id)},
            ) from exc
