"""Integration test fixtures with a real (in-memory SQLite) database."""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from evv_engine.api.app import create_app
from evv_engine.api.dependencies import get_db_session
from evv_engine.auth import Permission, UserContext
from evv_engine.models import Base
from evv_engine.providers.base import (
    CaregiverForEVV,
    ClientForEVV,
    ServiceAddress,
    VisitForEVV,
)
from evv_engine.providers.stub import (
    InMemoryCaregiverProvider,
    InMemoryClientProvider,
    InMemoryVisitProvider,
)
from evv_engine.services.capture_service import DeviceInfo, EVVCaptureService
from tests.conftest import (
    CAREGIVER_ID,
    CENTER_LAT,
    CENTER_LON,
    CLIENT_ID,
    SCHEDULED_END,
    SCHEDULED_START,
    SERVICE_DATE,
    VISIT_ID,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADDRESS_ID = UUID("00000000-0000-0000-0000-0000000000d1")
ORGANIZATION_ID = UUID("00000000-0000-0000-0000-0000000000e1")
SUPERVISOR_ID = UUID("00000000-0000-0000-0000-0000000000f1")
OTHER_CAREGIVER_ID = UUID("00000000-0000-0000-0000-0000000000a2")

DEVICE = DeviceInfo(device_id="device-001", device_model="Pixel 8", device_os="Android 15")


class MutableClock:
    """Test clock; advance it to move server time forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_visit(visit_id: UUID = VISIT_ID, **overrides) -> VisitForEVV:
    values = dict(
        visit_id=visit_id,
        client_id=CLIENT_ID,
        service_type_code="S5130",
        service_type_name="Personal Assistance Services",
        service_date=SERVICE_DATE,
        scheduled_start=SCHEDULED_START,
        scheduled_end=SCHEDULED_END,
        service_address=ServiceAddress(
            line1="100 Congress Ave",
            city="Austin",
            state="TX",
            postal_code="78701",
            address_id=ADDRESS_ID,
            latitude=CENTER_LAT,
            longitude=CENTER_LON,
        ),
        organization_id=ORGANIZATION_ID,
        assigned_caregiver_id=CAREGIVER_ID,
    )
    values.update(overrides)
    return VisitForEVV(**values)


@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine with the EVV schema."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Get database session for integration tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(SCHEDULED_START)


@pytest.fixture
def visit_provider() -> InMemoryVisitProvider:
    return InMemoryVisitProvider([make_visit()])


@pytest.fixture
def client_provider() -> InMemoryClientProvider:
    return InMemoryClientProvider(
        [ClientForEVV(client_id=CLIENT_ID, name="Maria Lopez", medicaid_id="TX123456789", state_code="TX")]
    )


@pytest.fixture
def caregiver_provider() -> InMemoryCaregiverProvider:
    return InMemoryCaregiverProvider(
        [
            CaregiverForEVV(
                caregiver_id=CAREGIVER_ID,
                name="Jordan Reyes",
                employee_id="EMP-1042",
                national_provider_id="1234567893",
            ),
            CaregiverForEVV(caregiver_id=OTHER_CAREGIVER_ID, name="Sam Ortiz", employee_id="EMP-2001"),
        ]
    )


@pytest.fixture
def caregiver() -> UserContext:
    return UserContext(
        user_id=CAREGIVER_ID,
        roles=frozenset({"CAREGIVER"}),
        permissions=frozenset({Permission.CLOCK_IN, Permission.CLOCK_OUT, Permission.SYNC}),
        organization_id=ORGANIZATION_ID,
        name="Jordan Reyes",
    )


@pytest.fixture
def supervisor() -> UserContext:
    return UserContext(
        user_id=SUPERVISOR_ID,
        roles=frozenset({"COORDINATOR"}),
        permissions=frozenset({Permission.SYNC}),
        organization_id=ORGANIZATION_ID,
        name="Alex Kim",
    )


@pytest.fixture
def capture_service(
    db_session, visit_provider, client_provider, caregiver_provider, clock
) -> EVVCaptureService:
    return EVVCaptureService(
        db_session,
        visit_provider=visit_provider,
        client_provider=client_provider,
        caregiver_provider=caregiver_provider,
        timeout_seconds=0.5,
        clock=clock,
    )


@pytest_asyncio.fixture
async def client(
    session_factory, visit_provider, client_provider, caregiver_provider
) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    app = create_app(
        visit_provider=visit_provider,
        client_provider=client_provider,
        caregiver_provider=caregiver_provider,
        create_schema_on_startup=False,
    )

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def auth_headers(user: UserContext) -> dict[str, str]:
    headers = {
        "X-User-Id": str(user.user_id),
        "X-User-Roles": ",".join(sorted(user.roles)),
        "X-User-Permissions": ",".join(sorted(user.permissions)),
    }
    if user.organization_id:
        headers["X-Organization-Id"] = str(user.organization_id)
    return headers
