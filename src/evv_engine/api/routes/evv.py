"""EVV capture, compliance, amendment and VMUR endpoints."""

from datetime import date, datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from evv_engine.api.dependencies import CaptureService, CurrentUser, DbSession, VMURs
from evv_engine.api.schemas import (
    AmendmentRequest,
    AmendmentResponse,
    CaptureResponse,
    ClockInRequest,
    ClockOutRequest,
    ErrorResponse,
    EVVRecordResponse,
    GeofenceCreate,
    GeofenceResponse,
    IntegrityResponse,
    ManualOverrideRequest,
    PauseRequest,
    TimeEntryResponse,
    VMURCreate,
    VMURDenyRequest,
    VMURResponse,
)
from evv_engine.errors import NotFoundError
from evv_engine.services.capture_service import (
    AmendmentInput,
    CaptureResult,
    ClockInInput,
    ClockOutInput,
    CreateGeofenceInput,
    ManualOverrideInput,
    PauseInput,
)
from evv_engine.services.reporting import load_compliance_dashboard
from evv_engine.services.vmur_service import CreateVMURInput

router = APIRouter(prefix="/evv", tags=["evv"])

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def _capture_response(result: CaptureResult) -> CaptureResponse:
    return CaptureResponse(
        evv_record=EVVRecordResponse.model_validate(result.evv_record),
        time_entry=TimeEntryResponse.model_validate(result.time_entry),
        verification=result.verification.to_dict(),
        compliance=result.compliance.to_dict() if result.compliance else None,
    )


# ============================================================================
# Clock events
# ============================================================================


@router.post(
    "/clock-in",
    response_model=CaptureResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def clock_in(
    db: DbSession,
    user: CurrentUser,
    service: CaptureService,
    payload: ClockInRequest,
) -> CaptureResponse:
    """Start a visit: verify location and create the EVV record."""
    result = await service.clock_in(
        ClockInInput(
            visit_id=payload.visit_id,
            caregiver_id=payload.caregiver_id,
            location=payload.location.to_sample(),
            device=payload.device.to_info(),
            captured_at=payload.captured_at,
            offline_recorded=payload.offline_recorded,
        ),
        user,
    )
    await db.commit()
    return _capture_response(result)


@router.post("/clock-out", response_model=CaptureResponse, responses=ERROR_RESPONSES)
async def clock_out(
    db: DbSession,
    user: CurrentUser,
    service: CaptureService,
    payload: ClockOutRequest,
) -> CaptureResponse:
    """Finish a visit and seal the EVV record."""
    result = await service.clock_out(
        ClockOutInput(
            visit_id=payload.visit_id,
            caregiver_id=payload.caregiver_id,
            location=payload.location.to_sample(),
            device=payload.device.to_info(),
            captured_at=payload.captured_at,
            offline_recorded=payload.offline_recorded,
            client_signature=payload.client_signature,
            client_present=payload.client_present,
            attestation_notes=payload.attestation_notes,
        ),
        user,
    )
    await db.commit()
    return _capture_response(result)


def _pause_input(payload: PauseRequest) -> PauseInput:
    return PauseInput(
        visit_id=payload.visit_id,
        caregiver_id=payload.caregiver_id,
        location=payload.location.to_sample(),
        device=payload.device.to_info(),
        reason=payload.reason,
        captured_at=payload.captured_at,
        offline_recorded=payload.offline_recorded,
    )


@router.post(
    "/pause",
    response_model=TimeEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def pause_visit(
    db: DbSession, user: CurrentUser, service: CaptureService, payload: PauseRequest
) -> TimeEntryResponse:
    entry = await service.record_pause(_pause_input(payload), user)
    await db.commit()
    return TimeEntryResponse.model_validate(entry)


@router.post(
    "/resume",
    response_model=TimeEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def resume_visit(
    db: DbSession, user: CurrentUser, service: CaptureService, payload: PauseRequest
) -> TimeEntryResponse:
    entry = await service.record_resume(_pause_input(payload), user)
    await db.commit()
    return TimeEntryResponse.model_validate(entry)


@router.post(
    "/time-entries/{time_entry_id}/override",
    response_model=TimeEntryResponse,
    responses=ERROR_RESPONSES,
)
async def override_time_entry(
    db: DbSession,
    user: CurrentUser,
    service: CaptureService,
    time_entry_id: Annotated[UUID, Path()],
    payload: ManualOverrideRequest,
) -> TimeEntryResponse:
    """Supervisor override of a flagged clock event."""
    entry = await service.apply_manual_override(
        ManualOverrideInput(
            time_entry_id=time_entry_id,
            reason=payload.reason,
            supervisor_notes=payload.supervisor_notes,
            approval_authority=payload.approval_authority,
        ),
        user,
    )
    await db.commit()
    return TimeEntryResponse.model_validate(entry)


# ============================================================================
# Records and compliance
# ============================================================================


@router.get(
    "/records/{evv_record_id}",
    response_model=EVVRecordResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_record(
    user: CurrentUser,
    service: CaptureService,
    evv_record_id: Annotated[UUID, Path()],
) -> EVVRecordResponse:
    record = await service.get_record(evv_record_id)
    return EVVRecordResponse.model_validate(record)


@router.get(
    "/visits/{visit_id}/record",
    response_model=EVVRecordResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_record_for_visit(
    user: CurrentUser,
    service: CaptureService,
    visit_id: Annotated[UUID, Path()],
) -> EVVRecordResponse:
    record = await service.get_record_for_visit(visit_id)
    if record is None:
        raise NotFoundError("EVV record for visit", visit_id)
    return EVVRecordResponse.model_validate(record)


@router.get("/visits/{visit_id}/time-entries", response_model=list[TimeEntryResponse])
async def list_time_entries(
    user: CurrentUser,
    service: CaptureService,
    visit_id: Annotated[UUID, Path()],
) -> list[TimeEntryResponse]:
    entries = await service.get_time_entries_for_visit(visit_id)
    return [TimeEntryResponse.model_validate(e) for e in entries]


@router.get(
    "/records/{evv_record_id}/compliance",
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def get_compliance(
    user: CurrentUser,
    service: CaptureService,
    evv_record_id: Annotated[UUID, Path()],
    as_of: datetime | None = None,
) -> dict[str, Any]:
    """Compute compliance for a record without changing it."""
    result = await service.check_compliance(evv_record_id, as_of=as_of)
    return result.to_dict()


@router.post(
    "/records/{evv_record_id}/compliance",
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def recompute_compliance(
    db: DbSession,
    user: CurrentUser,
    service: CaptureService,
    evv_record_id: Annotated[UUID, Path()],
    as_of: datetime | None = None,
) -> dict[str, Any]:
    """Recompute compliance for a record and refresh its stored flags."""
    result = await service.evaluate_compliance(evv_record_id, as_of=as_of)
    await db.commit()
    return result.to_dict()


@router.get(
    "/records/{evv_record_id}/integrity",
    response_model=IntegrityResponse,
    responses={404: {"model": ErrorResponse}},
)
async def check_integrity(
    user: CurrentUser,
    service: CaptureService,
    evv_record_id: Annotated[UUID, Path()],
) -> IntegrityResponse:
    check = await service.verify_record_integrity(evv_record_id)
    return IntegrityResponse(
        hash_valid=check.hash_valid,
        checksum_valid=check.checksum_valid,
        amendments_valid=check.amendments_valid,
        is_intact=check.is_intact,
        issues=check.issues,
    )


@router.post(
    "/records/{evv_record_id}/amendments",
    response_model=AmendmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def amend_record(
    db: DbSession,
    user: CurrentUser,
    service: CaptureService,
    evv_record_id: Annotated[UUID, Path()],
    payload: AmendmentRequest,
) -> AmendmentResponse:
    """Standard revision inside the edit window."""
    amendment = await service.amend_record(
        AmendmentInput(
            evv_record_id=evv_record_id,
            reason=payload.reason,
            corrections=payload.corrections,
        ),
        user,
    )
    await db.commit()
    return AmendmentResponse.model_validate(amendment)


@router.get(
    "/records/{evv_record_id}/amendments",
    response_model=list[AmendmentResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_amendments(
    user: CurrentUser,
    service: CaptureService,
    evv_record_id: Annotated[UUID, Path()],
) -> list[AmendmentResponse]:
    amendments = await service.get_amendments(evv_record_id)
    return [AmendmentResponse.model_validate(a) for a in amendments]


@router.get("/reports/compliance")
async def compliance_dashboard(
    db: DbSession,
    user: CurrentUser,
    start: Annotated[date, Query()],
    end: Annotated[date, Query()],
    jurisdiction_code: str | None = None,
) -> dict[str, Any]:
    """Compliance metrics for visits in a service-date range."""
    dashboard = await load_compliance_dashboard(
        db,
        start,
        end,
        organization_id=user.organization_id,
        jurisdiction_code=jurisdiction_code,
    )
    return dashboard.to_dict()


# ============================================================================
# Geofences
# ============================================================================


@router.post(
    "/geofences",
    response_model=GeofenceResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_geofence(
    db: DbSession,
    user: CurrentUser,
    service: CaptureService,
    payload: GeofenceCreate,
) -> GeofenceResponse:
    geofence = await service.create_geofence(
        CreateGeofenceInput(**payload.model_dump()), user
    )
    await db.commit()
    return GeofenceResponse.model_validate(geofence)


@router.post(
    "/geofences/{geofence_id}/archive",
    response_model=GeofenceResponse,
    responses=ERROR_RESPONSES,
)
async def archive_geofence(
    db: DbSession,
    user: CurrentUser,
    service: CaptureService,
    geofence_id: Annotated[UUID, Path()],
) -> GeofenceResponse:
    geofence = await service.archive_geofence(geofence_id, user)
    await db.commit()
    return GeofenceResponse.model_validate(geofence)


# ============================================================================
# Visit Maintenance Unlock Requests
# ============================================================================


@router.post(
    "/vmurs",
    response_model=VMURResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_vmur(
    db: DbSession, user: CurrentUser, vmurs: VMURs, payload: VMURCreate
) -> VMURResponse:
    """Request correction of a record past its edit window."""
    request = await vmurs.create_request(
        CreateVMURInput(
            evv_record_id=payload.evv_record_id,
            reason_code=payload.reason_code,
            reason_details=payload.reason_details,
            corrections=payload.corrections,
        ),
        user,
    )
    await db.commit()
    return VMURResponse.model_validate(request)


@router.get("/vmurs", response_model=list[VMURResponse])
async def list_pending_vmurs(user: CurrentUser, vmurs: VMURs) -> list[VMURResponse]:
    requests = await vmurs.list_pending(organization_id=user.organization_id)
    return [VMURResponse.model_validate(r) for r in requests]


@router.get(
    "/vmurs/{vmur_id}",
    response_model=VMURResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_vmur(
    user: CurrentUser, vmurs: VMURs, vmur_id: Annotated[UUID, Path()]
) -> VMURResponse:
    return VMURResponse.model_validate(await vmurs.get_request(vmur_id))


@router.post(
    "/vmurs/{vmur_id}/approve",
    response_model=VMURResponse,
    responses=ERROR_RESPONSES,
)
async def approve_vmur(
    db: DbSession,
    user: CurrentUser,
    vmurs: VMURs,
    service: CaptureService,
    vmur_id: Annotated[UUID, Path()],
) -> VMURResponse:
    request = await vmurs.approve(vmur_id, user)
    await service.evaluate_compliance(request.evv_record_id)
    await db.commit()
    return VMURResponse.model_validate(request)


@router.post(
    "/vmurs/{vmur_id}/deny",
    response_model=VMURResponse,
    responses=ERROR_RESPONSES,
)
async def deny_vmur(
    db: DbSession,
    user: CurrentUser,
    vmurs: VMURs,
    vmur_id: Annotated[UUID, Path()],
    payload: VMURDenyRequest,
) -> VMURResponse:
    request = await vmurs.deny(vmur_id, payload.reason, user)
    await db.commit()
    return VMURResponse.model_validate(request)
