"""Schema sanity checks.

Validates that the EVV tables, unique constraints and check constraints
exist and are enforced by the database.
"""

from uuid import uuid4

import pytest
from sqlalchemy import inspect, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from evv_engine.models import EVVRecord, Geofence
from evv_engine.services.capture_service import ClockInInput
from tests.conftest import CAREGIVER_ID, VISIT_ID, sample_at

from .conftest import DEVICE

pytestmark = pytest.mark.asyncio

EXPECTED_TABLES = {
    "geofence",
    "evv_record",
    "time_entry",
    "evv_record_amendment",
    "visit_maintenance_request",
    "evv_sync_history",
}


async def _inspect(session: AsyncSession, fn):
    connection = await session.connection()
    return await connection.run_sync(lambda sync_conn: fn(inspect(sync_conn)))


class TestTables:
    """Test that every EVV table is created."""

    async def test_tables_exist(self, db_session: AsyncSession):
        tables = set(await _inspect(db_session, lambda i: i.get_table_names()))
        assert EXPECTED_TABLES <= tables

    async def test_one_record_per_visit(self, db_session: AsyncSession):
        """evv_record.visit_id must be unique so concurrent clock-ins collide."""
        constraints = await _inspect(
            db_session, lambda i: i.get_unique_constraints("evv_record")
        )
        assert any(c["column_names"] == ["visit_id"] for c in constraints)

    async def test_version_column(self, db_session: AsyncSession):
        columns = await _inspect(db_session, lambda i: i.get_columns("evv_record"))
        assert "version" in {c["name"] for c in columns}


class TestCheckConstraints:
    """Test that check constraints reject impossible rows."""

    async def test_geofence_counters_must_add_up(self, db_session: AsyncSession):
        geofence = Geofence(
            geofence_id=uuid4(),
            address_id=uuid4(),
            center_latitude=30.2672,
            center_longitude=-97.7431,
            radius_meters=100,
        )
        db_session.add(geofence)
        await db_session.flush()

        with pytest.raises(IntegrityError):
            await db_session.execute(
                update(Geofence)
                .where(Geofence.geofence_id == geofence.geofence_id)
                .values(successful_verifications=3, verification_count=1)
                .execution_options(synchronize_session=False)
            )

    async def test_one_active_geofence_per_address(self, db_session: AsyncSession):
        address_id = uuid4()

        def geofence(status="ACTIVE"):
            return Geofence(
                geofence_id=uuid4(),
                address_id=address_id,
                center_latitude=30.2672,
                center_longitude=-97.7431,
                radius_meters=100,
                status=status,
            )

        db_session.add_all([geofence(), geofence("ARCHIVED"), geofence("ARCHIVED")])
        await db_session.flush()

        db_session.add(geofence())
        with pytest.raises(IntegrityError):
            await db_session.flush()

    async def test_record_status_is_constrained(
        self, db_session: AsyncSession, capture_service, caregiver
    ):
        result = await capture_service.clock_in(
            ClockInInput(
                visit_id=VISIT_ID, caregiver_id=CAREGIVER_ID, location=sample_at(0), device=DEVICE
            ),
            caregiver,
        )

        with pytest.raises(IntegrityError):
            await db_session.execute(
                update(EVVRecord)
                .where(EVVRecord.evv_record_id == result.evv_record.evv_record_id)
                .values(record_status="LOST")
                .execution_options(synchronize_session=False)
            )
