"""Device sync and conflict resolution endpoints."""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Path, Query
from fastapi.encoders import jsonable_encoder

from evv_engine.api.dependencies import CurrentUser, DbSession, SyncService
from evv_engine.api.schemas import (
    ConflictCheckRequest,
    ErrorResponse,
    EVVRecordResponse,
    ManualResolutionRequest,
    PotentialConflictsResponse,
    ResolveRequest,
    SyncHistoryResponse,
    SyncRecordResponse,
    SyncReportResponse,
    SyncRequest,
)
from evv_engine.sync.conflict_resolver import ManualResolution

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post(
    "/devices/{device_id}",
    response_model=SyncReportResponse,
    responses={403: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def sync_device(
    db: DbSession,
    user: CurrentUser,
    service: SyncService,
    device_id: Annotated[str, Path(min_length=1)],
    payload: SyncRequest,
) -> SyncReportResponse:
    """Reconcile a device's EVV records with the server."""
    report = await service.sync_device(device_id, payload.records, user)
    await db.commit()
    return SyncReportResponse(
        device_id=report.device_id,
        synced=report.synced,
        conflicts=report.conflicts,
        failed=report.failed,
        results=[
            SyncRecordResponse(
                record_id=r.record_id,
                outcome=r.outcome,
                attempts=r.attempts,
                strategy=r.strategy,
                requires_manual_review=r.requires_manual_review,
                field_conflicts=jsonable_encoder(r.field_conflicts),
                error=r.error,
                server_record=jsonable_encoder(r.server_record),
            )
            for r in report.results
        ],
    )


@router.get("/devices/{device_id}/history", response_model=list[SyncHistoryResponse])
async def sync_history(
    user: CurrentUser,
    service: SyncService,
    device_id: Annotated[str, Path(min_length=1)],
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[SyncHistoryResponse]:
    entries = await service.get_history(device_id, limit=limit)
    return [SyncHistoryResponse.model_validate(e) for e in entries]


@router.post(
    "/records/{evv_record_id}/resolve",
    response_model=EVVRecordResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def resolve_record_conflict(
    db: DbSession,
    user: CurrentUser,
    service: SyncService,
    evv_record_id: Annotated[UUID, Path()],
    payload: ManualResolutionRequest,
) -> EVVRecordResponse:
    """Apply a supervisor's decision to a record held for manual review."""
    record = await service.resolve_conflict(
        evv_record_id,
        ManualResolution(
            record_id=str(evv_record_id),
            record_type="evv_record",
            selected_strategy=payload.selected_strategy,
            user_id=str(user.user_id),
            field_resolutions=payload.field_resolutions,
        ),
        user,
    )
    await db.commit()
    return EVVRecordResponse.model_validate(record)


@router.post("/resolve")
async def resolve(
    user: CurrentUser, service: SyncService, payload: ResolveRequest
) -> dict[str, Any]:
    """Resolve two copies of a record without touching storage."""
    resolution = service.resolver.resolve(
        payload.client_record, payload.server_record, payload.record_type
    )
    return {
        **resolution.to_dict(),
        "resolved_record": jsonable_encoder(resolution.resolved_record),
    }


@router.post("/detect-conflicts", response_model=PotentialConflictsResponse)
async def detect_conflicts(
    user: CurrentUser, service: SyncService, payload: ConflictCheckRequest
) -> PotentialConflictsResponse:
    result = service.resolver.detect_potential_conflicts(
        payload.local_record, payload.server_record
    )
    return PotentialConflictsResponse(
        has_conflict=result.has_conflict,
        conflicting_fields=result.conflicting_fields,
        severity=result.severity.value,
    )
