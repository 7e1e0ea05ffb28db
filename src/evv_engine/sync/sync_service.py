"""Device sync for EVV records captured offline.

Per record: pull the server copy and the version it was read at, resolve
the device copy against it, then push with a write conditioned on that
version. A concurrent server-side write makes the push match no row; the
reconciliation is then retried from a fresh pull instead of clobbering it.

Sync never rewrites captured verification data. Only SYNCABLE_FIELDS are
pushed, and of those the write-once fields only fill a server value that
is still empty. Clock events captured offline replay through the capture
service with ``offline_recorded=True``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from evv_engine.auth import Permission, UserContext
from evv_engine.config import get_settings
from evv_engine.errors import (
    CollaboratorUnavailableError,
    ConflictError,
    EVVError,
    NotFoundError,
    PermissionDeniedError,
    StaleWriteError,
    ValidationError,
)
from evv_engine.models import EVVRecord, SyncHistoryEntry, utc_now
from evv_engine.services.amendment import AMENDABLE_FIELDS, write_amendment
from evv_engine.sync.conflict_resolver import (
    ConflictResolution,
    ConflictResolver,
    ManualResolution,
    RecordType,
    ResolverConfig,
)
from evv_engine.sync.retry import RetryExhaustedError, RetryPolicy, run_with_retry
from evv_engine.validators.types import ComplianceFlag

logger = logging.getLogger(__name__)


class SyncOutcome:
    SYNCED = "SYNCED"
    CONFLICT = "CONFLICT"
    FAILED = "FAILED"


# Device-owned fields sync may write
SYNCABLE_FIELDS = ("client_attestation", "pause_events")

# Verification-critical: filled when the server has nothing, never overwritten
WRITE_ONCE_FIELDS = frozenset({"client_attestation"})

RETRYABLE_ERRORS = (StaleWriteError, CollaboratorUnavailableError)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, RETRYABLE_ERRORS)


def _location_view(verification: dict[str, Any] | None) -> dict[str, Any] | None:
    if not verification:
        return None
    location = verification.get("location")
    return dict(location) if location else None


def evv_record_view(record: EVVRecord) -> dict[str, Any]:
    """The fields of a stored record that take part in sync."""
    return {
        "evv_record_id": str(record.evv_record_id),
        "visit_id": str(record.visit_id),
        "service_date": record.service_date,
        "clock_in_time": record.clock_in_time,
        "clock_out_time": record.clock_out_time,
        "clock_in_location": _location_view(record.clock_in_verification),
        "clock_out_location": _location_view(record.clock_out_verification),
        "client_attestation": record.client_attestation,
        "pause_events": list(record.pause_events or []),
        "record_status": record.record_status,
        "updated_at": record.updated_at,
        "version": record.version,
    }


@dataclass(frozen=True)
class SyncRecordResult:
    record_id: str
    outcome: str
    attempts: int
    strategy: str | None = None
    requires_manual_review: bool = False
    field_conflicts: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    server_record: dict[str, Any] | None = None


@dataclass(frozen=True)
class SyncReport:
    device_id: str
    results: list[SyncRecordResult]

    @property
    def synced(self) -> int:
        return sum(1 for r in self.results if r.outcome == SyncOutcome.SYNCED)

    @property
    def conflicts(self) -> int:
        return sum(1 for r in self.results if r.outcome == SyncOutcome.CONFLICT)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.outcome == SyncOutcome.FAILED)


class EVVSyncService:
    """Reconcile device copies of EVV records with the server."""

    def __init__(
        self,
        session: AsyncSession,
        resolver: ConflictResolver | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = get_settings()
        self.session = session
        self.resolver = resolver or ConflictResolver(
            ResolverConfig(timestamp_tolerance_seconds=settings.sync_timestamp_tolerance_seconds)
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.sync_max_attempts,
            base_delay_seconds=settings.sync_base_delay_seconds,
        )
        self.sleep = sleep
        self.clock = clock or utc_now

    async def sync_device(
        self,
        device_id: str,
        client_records: list[dict[str, Any]],
        user: UserContext | None = None,
    ) -> SyncReport:
        """Reconcile every record a device sends, one outcome per record."""
        if not device_id:
            raise ValidationError("device_id is required")
        if user is not None and not user.has_permission(Permission.SYNC):
            raise PermissionDeniedError("Missing permission: evv:sync")

        results = []
        for client_record in client_records:
            result = await self._sync_record(device_id, client_record)
            await self._log_history(device_id, result)
            results.append(result)

        await self.session.flush()
        report = SyncReport(device_id=device_id, results=results)
        logger.info(
            "Device %s sync: %s synced, %s conflicts, %s failed",
            device_id,
            report.synced,
            report.conflicts,
            report.failed,
        )
        return report

    async def _sync_record(self, device_id: str, client_record: dict[str, Any]) -> SyncRecordResult:
        raw_id = client_record.get("evv_record_id") or client_record.get("id")
        attempts = 0

        async def attempt() -> SyncRecordResult:
            nonlocal attempts
            attempts += 1
            record_id = self._parse_record_id(raw_id)
            return await self._reconcile(device_id, record_id, client_record, attempts)

        try:
            return await run_with_retry(attempt, self.retry_policy, is_retryable, self.sleep)
        except RetryExhaustedError as exc:
            logger.error("Sync of EVV record %s gave up: %s", raw_id, exc.last_error)
            return SyncRecordResult(
                record_id=str(raw_id),
                outcome=SyncOutcome.FAILED,
                attempts=exc.attempts,
                error=str(exc.last_error),
            )
        except EVVError as exc:
            logger.warning("Sync of EVV record %s rejected: %s", raw_id, exc.message)
            return SyncRecordResult(
                record_id=str(raw_id),
                outcome=SyncOutcome.FAILED,
                attempts=attempts,
                error=exc.message,
            )

    @staticmethod
    def _parse_record_id(raw_id: Any) -> UUID:
        if raw_id is None:
            raise ValidationError("Client record has no evv_record_id")
        try:
            return raw_id if isinstance(raw_id, UUID) else UUID(str(raw_id))
        except ValueError as exc:
            raise ValidationError(f"Invalid evv_record_id: {raw_id}") from exc

    async def _pull(self, record_id: UUID) -> EVVRecord:
        result = await self.session.execute(
            select(EVVRecord)
            .where(EVVRecord.evv_record_id == record_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("EVV record", record_id)
        return record

    async def _reconcile(
        self,
        device_id: str,
        record_id: UUID,
        client_record: dict[str, Any],
        attempts: int,
    ) -> SyncRecordResult:
        record = await self._pull(record_id)
        observed_version = record.version
        server_view = evv_record_view(record)
        resolution = self.resolver.resolve(client_record, server_view, RecordType.EVV_RECORD)
        now = self.clock()

        if resolution.requires_manual_review:
            values = self._conflict_values(record, device_id, client_record, resolution, now)
            outcome = SyncOutcome.CONFLICT
        else:
            values = self._syncable_changes(server_view, resolution.resolved_record)
            values["sync_metadata"] = {
                **(record.sync_metadata or {}),
                "status": SyncOutcome.SYNCED,
                "device_id": device_id,
                "last_synced_at": now.isoformat(),
                "strategy": resolution.strategy.value,
            }
            outcome = SyncOutcome.SYNCED

        await self._push(record, observed_version, values, now)

        return SyncRecordResult(
            record_id=str(record_id),
            outcome=outcome,
            attempts=attempts,
            strategy=resolution.strategy.value,
            requires_manual_review=resolution.requires_manual_review,
            field_conflicts=[c.to_dict() for c in resolution.field_conflicts],
            server_record=evv_record_view(record),
        )

    def _syncable_changes(
        self, server_view: dict[str, Any], resolved: dict[str, Any]
    ) -> dict[str, Any]:
        changes = {}
        for name in SYNCABLE_FIELDS:
            if name not in resolved:
                continue
            value = resolved[name]
            current = server_view.get(name)
            if name in WRITE_ONCE_FIELDS and current is not None:
                continue
            if value is None or value == current:
                continue
            changes[name] = value
        return changes

    def _conflict_values(
        self,
        record: EVVRecord,
        device_id: str,
        client_record: dict[str, Any],
        resolution: ConflictResolution,
        now: datetime,
    ) -> dict[str, Any]:
        conflicts = [c.to_dict() for c in resolution.field_conflicts]
        flags = list(record.compliance_flags or [])
        if ComplianceFlag.SYNC_CONFLICT.value not in flags:
            flags.append(ComplianceFlag.SYNC_CONFLICT.value)
        return {
            "compliance_flags": flags,
            "sync_metadata": {
                **(record.sync_metadata or {}),
                "status": SyncOutcome.CONFLICT,
                "device_id": device_id,
                "detected_at": now.isoformat(),
                "field_conflicts": conflicts,
                "client_values": {c["field"]: c["client_value"] for c in conflicts},
                "reason": resolution.metadata.reason if resolution.metadata else None,
            },
        }

    async def _push(
        self,
        record: EVVRecord,
        observed_version: int,
        values: dict[str, Any],
        now: datetime,
    ) -> None:
        """Write values only if the row is still at observed_version."""
        result = await self.session.execute(
            update(EVVRecord)
            .where(
                EVVRecord.evv_record_id == record.evv_record_id,
                EVVRecord.version == observed_version,
            )
            .values(**values, version=observed_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleWriteError(
                f"EVV record {record.evv_record_id} changed during sync",
                {"evv_record_id": str(record.evv_record_id), "observed_version": observed_version},
            )
        await self.session.refresh(record)

    async def _log_history(self, device_id: str, result: SyncRecordResult) -> None:
        self.session.add(
            SyncHistoryEntry(
                device_id=device_id,
                record_type=RecordType.EVV_RECORD.value,
                record_id=result.record_id,
                outcome=result.outcome,
                strategy=result.strategy,
                attempts=result.attempts,
                requires_manual_review=result.requires_manual_review,
                field_conflicts=result.field_conflicts,
                error_message=result.error,
            )
        )

    async def get_history(self, device_id: str, limit: int = 100) -> list[SyncHistoryEntry]:
        result = await self.session.execute(
            select(SyncHistoryEntry)
            .where(SyncHistoryEntry.device_id == device_id)
            .order_by(SyncHistoryEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def resolve_conflict(
        self, evv_record_id: UUID, decision: ManualResolution, user: UserContext
    ) -> EVVRecord:
        """Apply a supervisor's decision to a record held in CONFLICT.

        Choosing the device value for a captured field goes through an
        amendment, so the original capture stays on record.
        """
        if not user.is_supervisor:
            raise PermissionDeniedError("Only supervisors can resolve sync conflicts")

        record = await self._pull(evv_record_id)
        metadata = dict(record.sync_metadata or {})
        if metadata.get("status") != SyncOutcome.CONFLICT:
            raise ConflictError(f"EVV record {evv_record_id} has no open sync conflict")

        server_view = {
            k: v for k, v in evv_record_view(record).items() if k in metadata.get("client_values", {})
        }
        resolution = self.resolver.apply_manual_resolution(
            metadata.get("client_values", {}), server_view, decision
        )
        corrections = {
            name: value
            for name, value in resolution.resolved_record.items()
            if self.resolver.values_differ(value, server_view.get(name))
        }
        not_amendable = sorted(set(corrections) - set(AMENDABLE_FIELDS))
        if not_amendable:
            raise ValidationError(
                f"Device values cannot be applied to: {', '.join(not_amendable)}",
                {"fields": not_amendable},
            )
        if corrections:
            await write_amendment(
                self.session,
                record,
                corrections,
                reason=f"Sync conflict resolution ({decision.selected_strategy})",
                amended_by=user.user_id,
            )

        metadata.update(
            status="RESOLVED",
            resolution=resolution.metadata.to_dict() if resolution.metadata else None,
        )
        record.sync_metadata = metadata
        record.compliance_flags = [
            f for f in (record.compliance_flags or []) if f != ComplianceFlag.SYNC_CONFLICT.value
        ]
        record.updated_by = user.user_id
        await self.session.flush()
        logger.info("Sync conflict on EVV record %s resolved by %s", evv_record_id, user.user_id)
        return record
