"""Corrections to EVV records.

A correction never rewrites the captured fields. It appends an
EVVRecordAmendment that points back at the original record and holds the
original and corrected values, then moves the record to AMENDED. The
corrected view of a record is the captured values overlaid with the
corrected values of its amendments, oldest first.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from evv_engine.errors import ValidationError
from evv_engine.models import EVVRecord, EVVRecordAmendment, utc_now
from evv_engine.models.evv import DATETIME_FIELDS, typed_corrections
from evv_engine.services.integrity import compute_hash, record_checksum
from evv_engine.services.state_machine import EVVRecordStateMachine, EVVRecordStatus
from evv_engine.validators.types import ComplianceFlag

logger = logging.getLogger(__name__)

# Correctable field -> label used in change summaries
AMENDABLE_FIELDS: dict[str, str] = {
    "clock_in_time": "Clock-in time",
    "clock_out_time": "Clock-out time",
    "total_duration_minutes": "Duration (minutes)",
    "service_type_code": "Service type",
    "service_type_name": "Service type name",
    "service_date": "Service date",
    "client_medicaid_id": "Client Medicaid ID",
    "caregiver_employee_id": "Caregiver employee ID",
    "caregiver_npi": "Caregiver NPI",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in DATETIME_FIELDS:
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError as exc:
                raise ValidationError(f"{name} must be an ISO-8601 timestamp") from exc
        if not isinstance(value, datetime) or value.tzinfo is None:
            raise ValidationError(f"{name} must be a timezone-aware timestamp")
        return value.astimezone(timezone.utc)
    if name == "service_date":
        if isinstance(value, str):
            try:
                value = date.fromisoformat(value)
            except ValueError as exc:
                raise ValidationError("service_date must be an ISO-8601 date") from exc
        if isinstance(value, datetime) or not isinstance(value, date):
            raise ValidationError("service_date must be a date")
        return value
    if name == "total_duration_minutes":
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("total_duration_minutes must be a non-negative integer")
    return value


def normalize_corrections(corrections: dict[str, Any]) -> dict[str, Any]:
    """Validate correction keys and values and render them JSON-safe."""
    if not corrections:
        raise ValidationError("At least one corrected field is required")
    unknown = sorted(set(corrections) - set(AMENDABLE_FIELDS))
    if unknown:
        raise ValidationError(
            f"Fields cannot be amended: {', '.join(unknown)}",
            {"fields": unknown, "amendable": sorted(AMENDABLE_FIELDS)},
        )
    return {k: _jsonable(_coerce(k, v)) for k, v in corrections.items()}


def original_values(record: EVVRecord, fields: Any) -> dict[str, Any]:
    return {name: _jsonable(getattr(record, name)) for name in fields}


def changes_summary(original: dict[str, Any], corrected: dict[str, Any]) -> list[str]:
    """Human readable list of changed fields."""
    lines = []
    for name in sorted(corrected):
        if original.get(name) == corrected[name]:
            continue
        label = AMENDABLE_FIELDS.get(name, name)
        lines.append(f"{label} changed from {original.get(name)} to {corrected[name]}")
    return lines


def worked_minutes(
    clock_in: datetime, clock_out: datetime, pause_events: Iterable[dict[str, Any]] = ()
) -> int:
    """Minutes between clock-in and clock-out, less paused time."""
    paused_seconds = 0.0
    for event in pause_events or ():
        paused_at = datetime.fromisoformat(event["paused_at"])
        resumed = event.get("resumed_at")
        resumed_at = datetime.fromisoformat(resumed) if resumed else clock_out
        paused_seconds += max((resumed_at - paused_at).total_seconds(), 0.0)
    worked = (clock_out - clock_in).total_seconds() - paused_seconds
    return max(round(worked / 60), 0)


async def load_amendments(session: AsyncSession, evv_record_id: UUID) -> list[EVVRecordAmendment]:
    result = await session.execute(
        select(EVVRecordAmendment)
        .where(EVVRecordAmendment.evv_record_id == evv_record_id)
        .order_by(EVVRecordAmendment.amendment_number)
    )
    return list(result.scalars().all())


async def load_corrections(session: AsyncSession, evv_record_id: UUID) -> dict[str, Any]:
    """Merged corrected values of every amendment to a record, oldest first."""
    merged: dict[str, Any] = {}
    for amendment in await load_amendments(session, evv_record_id):
        merged.update(amendment.corrected_values or {})
    return merged


async def write_amendment(
    session: AsyncSession,
    record: EVVRecord,
    corrections: dict[str, Any],
    reason: str,
    amended_by: UUID,
    source: str = "REVISION",
    vmur_id: UUID | None = None,
) -> EVVRecordAmendment:
    """Append an amendment and move the record to AMENDED.

    Correcting a clock time recomputes the worked duration unless the
    correction sets it explicitly. The amendment stores the checksum of the
    corrected view so later tampering with its values is detectable.
    """
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to amend an EVV record")

    corrected = normalize_corrections(corrections)
    prior = await load_corrections(session, record.evv_record_id)
    view = typed_corrections({**prior, **corrected})
    clock_in = view.get("clock_in_time", record.clock_in_time)
    clock_out = view.get("clock_out_time", record.clock_out_time)
    if clock_out is not None and clock_out < clock_in:
        raise ValidationError(
            "Corrected clock-out time is before clock-in time",
            {"clock_in_time": clock_in.isoformat(), "clock_out_time": clock_out.isoformat()},
        )
    if (
        DATETIME_FIELDS.intersection(corrected)
        and "total_duration_minutes" not in corrected
        and clock_out is not None
    ):
        corrected["total_duration_minutes"] = worked_minutes(
            clock_in, clock_out, record.pause_events
        )

    original = {
        **original_values(record, corrected),
        **{name: prior[name] for name in corrected if name in prior},
    }
    summary = changes_summary(original, corrected)
    if not summary:
        raise ValidationError("Corrections do not change any value")

    EVVRecordStateMachine.validate_transition(record.record_status, EVVRecordStatus.AMENDED)

    count = await session.scalar(
        select(func.count())
        .select_from(EVVRecordAmendment)
        .where(EVVRecordAmendment.evv_record_id == record.evv_record_id)
    )
    now = utc_now()
    amendment = EVVRecordAmendment(
        evv_record_id=record.evv_record_id,
        amendment_number=(count or 0) + 1,
        source=source,
        vmur_id=vmur_id,
        reason=reason.strip(),
        original_values=original,
        corrected_values=corrected,
        changes_summary=summary,
        integrity_hash=compute_hash(
            {
                "evv_record_id": record.evv_record_id,
                "original": original,
                "corrected": corrected,
                "amended_by": amended_by,
                "amended_at": now,
            }
        ),
        corrected_checksum=record_checksum(record, {**prior, **corrected}),
        amended_by=amended_by,
        amended_at=now,
    )
    session.add(amendment)

    record.record_status = EVVRecordStatus.AMENDED.value
    if ComplianceFlag.AMENDED.value not in (record.compliance_flags or []):
        record.compliance_flags = [*(record.compliance_flags or []), ComplianceFlag.AMENDED.value]
    record.updated_by = amended_by
    await session.flush()

    logger.info(
        "EVV record %s amended (%s #%s): %s",
        record.evv_record_id,
        source,
        amendment.amendment_number,
        "; ".join(summary),
    )
    return amendment
