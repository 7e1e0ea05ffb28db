"""EVV ORM models."""

from evv_engine.models.base import Base, JSONDocument, TimestampMixin, UTCDateTime, utc_now
from evv_engine.models.evv import (
    EVVRecord,
    EVVRecordAmendment,
    Geofence,
    SyncHistoryEntry,
    TimeEntry,
    VisitMaintenanceRequest,
)

__all__ = [
    "Base",
    "EVVRecord",
    "EVVRecordAmendment",
    "Geofence",
    "JSONDocument",
    "SyncHistoryEntry",
    "TimeEntry",
    "TimestampMixin",
    "UTCDateTime",
    "VisitMaintenanceRequest",
    "utc_now",
]
