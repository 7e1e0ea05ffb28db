"""Offline sync: conflict resolution, retry and the device sync service."""

from evv_engine.sync.conflict_resolver import (
    ConflictResolution,
    ConflictResolver,
    ConflictSeverity,
    ConflictStrategy,
    FieldConflict,
    ManualResolution,
    PotentialConflicts,
    RecordType,
    ResolverConfig,
)
from evv_engine.sync.retry import RetryExhaustedError, RetryPolicy, run_with_retry
from evv_engine.sync.sync_service import (
    EVVSyncService,
    SyncOutcome,
    SyncRecordResult,
    SyncReport,
    evv_record_view,
)

__all__ = [
    "ConflictResolution",
    "ConflictResolver",
    "ConflictSeverity",
    "ConflictStrategy",
    "EVVSyncService",
    "FieldConflict",
    "ManualResolution",
    "PotentialConflicts",
    "RecordType",
    "ResolverConfig",
    "RetryExhaustedError",
    "RetryPolicy",
    "SyncOutcome",
    "SyncRecordResult",
    "SyncReport",
    "evv_record_view",
    "run_with_retry",
]
