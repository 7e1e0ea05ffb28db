"""Visit Maintenance Unlock Request (VMUR) workflow.

Once an EVV record is older than the jurisdiction's edit window, direct
revisions are closed. Corrections then go through a VMUR: a caregiver or
coordinator requests the change with an approved reason code, and a
supervisor approves or denies it. Approval writes an amendment; the
captured record itself is never rewritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from evv_engine.auth import Permission, UserContext
from evv_engine.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from evv_engine.models import EVVRecord, VisitMaintenanceRequest, utc_now
from evv_engine.services.amendment import (
    changes_summary,
    normalize_corrections,
    original_values,
    write_amendment,
)
from evv_engine.services.state_machine import EVVRecordStateMachine, is_edit_window_closed
from evv_engine.validators.profiles import get_jurisdiction

logger = logging.getLogger(__name__)

VMUR_VALIDITY_DAYS = 30


class VMURStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"


class VMURReasonCode(str, Enum):
    """Approved reasons for unlocking an aged EVV record."""

    DEVICE_MALFUNCTION = "DEVICE_MALFUNCTION"
    GPS_UNAVAILABLE = "GPS_UNAVAILABLE"
    NETWORK_OUTAGE = "NETWORK_OUTAGE"
    APP_ERROR = "APP_ERROR"
    SYSTEM_DOWNTIME = "SYSTEM_DOWNTIME"
    RURAL_POOR_SIGNAL = "RURAL_POOR_SIGNAL"
    SERVICE_LOCATION_CHANGE = "SERVICE_LOCATION_CHANGE"
    EMERGENCY_EVACUATION = "EMERGENCY_EVACUATION"
    HOSPITAL_TRANSPORT = "HOSPITAL_TRANSPORT"
    FORGOT_TO_CLOCK = "FORGOT_TO_CLOCK"
    TRAINING_NEW_STAFF = "TRAINING_NEW_STAFF"
    INCORRECT_CLOCK_TIME = "INCORRECT_CLOCK_TIME"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    OTHER_APPROVED = "OTHER_APPROVED"


@dataclass(frozen=True)
class CreateVMURInput:
    evv_record_id: UUID
    reason_code: str
    reason_details: str
    corrections: dict[str, Any] = field(default_factory=dict)


class VMURService:
    """Create, approve, deny and expire VMURs."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] | None = None):
        self.session = session
        self.clock = clock or utc_now

    async def create_request(
        self, data: CreateVMURInput, user: UserContext
    ) -> VisitMaintenanceRequest:
        """Open a VMUR for a record whose edit window has closed."""
        if not (user.is_supervisor or user.has_permission(Permission.VMUR_REQUEST)):
            raise PermissionDeniedError("Not allowed to request visit maintenance")

        record = await self.session.get(EVVRecord, data.evv_record_id)
        if record is None:
            raise NotFoundError("EVV record", data.evv_record_id)

        now = self.clock()
        jurisdiction = get_jurisdiction(record.jurisdiction_code)
        if not is_edit_window_closed(record.recorded_at, now, jurisdiction.vmur_threshold_days):
            raise ValidationError(
                f"VMUR only required for records older than "
                f"{jurisdiction.vmur_threshold_days} days; use standard revision workflow",
                {"evv_record_id": str(record.evv_record_id)},
            )
        if not EVVRecordStateMachine.can_amend(record.record_status):
            raise ConflictError(
                f"EVV record in status {record.record_status} cannot be corrected",
                {"record_status": record.record_status},
            )

        try:
            reason_code = VMURReasonCode(data.reason_code)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown VMUR reason code: {data.reason_code}",
                {"allowed": [c.value for c in VMURReasonCode]},
            ) from exc
        if not data.reason_details or not data.reason_details.strip():
            raise ValidationError("VMUR reason details are required")

        open_request = await self.session.scalar(
            select(VisitMaintenanceRequest.vmur_id).where(
                VisitMaintenanceRequest.evv_record_id == record.evv_record_id,
                VisitMaintenanceRequest.status == VMURStatus.PENDING.value,
            )
        )
        if open_request is not None:
            raise ConflictError(
                "A VMUR is already pending for this record", {"vmur_id": str(open_request)}
            )

        corrected = normalize_corrections(data.corrections)
        original = original_values(record, corrected)
        summary = changes_summary(original, corrected)
        if not summary:
            raise ValidationError("Corrections do not change any value")

        request = VisitMaintenanceRequest(
            evv_record_id=record.evv_record_id,
            visit_id=record.visit_id,
            organization_id=record.organization_id,
            requested_by=user.user_id,
            requested_by_name=user.name,
            requested_at=now,
            request_reason=reason_code.value,
            reason_details=data.reason_details.strip(),
            status=VMURStatus.PENDING.value,
            original_data=original,
            corrected_data=corrected,
            changes_summary=summary,
            expires_at=now + timedelta(days=VMUR_VALIDITY_DAYS),
        )
        self.session.add(request)
        await self.session.flush()

        logger.info(
            "VMUR %s created for EVV record %s (%s)",
            request.vmur_id,
            record.evv_record_id,
            reason_code.value,
        )
        return request

    async def approve(self, vmur_id: UUID, user: UserContext) -> VisitMaintenanceRequest:
        """Approve a pending VMUR and apply its corrections as an amendment."""
        self._require_approver(user)
        request = await self._get_pending(vmur_id, "approved")
        now = self.clock()
        if now > request.expires_at:
            raise ValidationError(
                "VMUR has expired and cannot be approved",
                {"vmur_id": str(vmur_id), "expires_at": request.expires_at.isoformat()},
            )

        record = await self.session.get(EVVRecord, request.evv_record_id)
        if record is None:
            raise NotFoundError("EVV record", request.evv_record_id)
        if not EVVRecordStateMachine.can_amend(record.record_status):
            raise ConflictError(
                f"EVV record in status {record.record_status} cannot be corrected",
                {"record_status": record.record_status},
            )

        try:
            amendment = await write_amendment(
                self.session,
                record,
                request.corrected_data,
                f"VMUR {request.request_reason}: {request.reason_details}",
                user.user_id,
                source="VMUR",
                vmur_id=request.vmur_id,
            )
        except StaleDataError as exc:
            raise ConflictError("EVV record was modified concurrently") from exc

        request.status = VMURStatus.APPROVED.value
        request.approved_by = user.user_id
        request.approved_at = now
        request.amendment_id = amendment.amendment_id
        await self.session.flush()

        logger.info("VMUR %s approved by %s", vmur_id, user.user_id)
        return request

    async def deny(
        self, vmur_id: UUID, reason: str, user: UserContext
    ) -> VisitMaintenanceRequest:
        self._require_approver(user)
        if not reason or not reason.strip():
            raise ValidationError("A denial reason is required")
        request = await self._get_pending(vmur_id, "denied")
        request.status = VMURStatus.DENIED.value
        request.denied_by = user.user_id
        request.denied_at = self.clock()
        request.denial_reason = reason.strip()
        await self.session.flush()

        logger.info("VMUR %s denied by %s: %s", vmur_id, user.user_id, reason)
        return request

    async def get_request(self, vmur_id: UUID) -> VisitMaintenanceRequest:
        request = await self.session.get(VisitMaintenanceRequest, vmur_id)
        if request is None:
            raise NotFoundError("VMUR", vmur_id)
        return request

    async def list_pending(
        self, organization_id: UUID | None = None
    ) -> list[VisitMaintenanceRequest]:
        query = select(VisitMaintenanceRequest).where(
            VisitMaintenanceRequest.status == VMURStatus.PENDING.value,
            VisitMaintenanceRequest.expires_at > self.clock(),
        )
        if organization_id is not None:
            query = query.where(VisitMaintenanceRequest.organization_id == organization_id)
        result = await self.session.execute(
            query.order_by(VisitMaintenanceRequest.requested_at)
        )
        return list(result.scalars().all())

    async def expire_stale_requests(self, as_of: datetime | None = None) -> int:
        """Mark pending VMURs past their expiry as EXPIRED. Returns the count."""
        result = await self.session.execute(
            update(VisitMaintenanceRequest)
            .where(
                VisitMaintenanceRequest.status == VMURStatus.PENDING.value,
                VisitMaintenanceRequest.expires_at < (as_of or self.clock()),
            )
            .values(status=VMURStatus.EXPIRED.value)
            .execution_options(synchronize_session=False)
        )
        expired = result.rowcount or 0
        if expired:
            logger.info("Expired %d stale VMUR(s)", expired)
        return expired

    async def _get_pending(self, vmur_id: UUID, action: str) -> VisitMaintenanceRequest:
        request = await self.get_request(vmur_id)
        if request.status != VMURStatus.PENDING:
            raise ValidationError(
                f"VMUR cannot be {action} - current status is {request.status}",
                {"vmur_id": str(vmur_id), "status": request.status},
            )
        return request

    @staticmethod
    def _require_approver(user: UserContext) -> None:
        if not (user.is_supervisor or user.has_permission(Permission.VMUR_APPROVE)):
            raise PermissionDeniedError("Only supervisors can approve or deny VMURs")
