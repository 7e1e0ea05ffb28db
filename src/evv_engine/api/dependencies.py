"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from evv_engine.auth import UserContext
from evv_engine.database import init_db
from evv_engine.services.capture_service import EVVCaptureService
from evv_engine.services.vmur_service import VMURService
from evv_engine.sync.sync_service import EVVSyncService


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


def _split(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def _parse_uuid(value: str, header: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header} format",
        )


async def get_current_user(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_roles: Annotated[str | None, Header()] = None,
    x_user_permissions: Annotated[str | None, Header()] = None,
    x_organization_id: Annotated[str | None, Header()] = None,
) -> UserContext:
    """Build the caller context from identity headers set by the gateway."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return UserContext(
        user_id=_parse_uuid(x_user_id, "X-User-Id"),
        roles=_split(x_user_roles),
        permissions=_split(x_user_permissions),
        organization_id=(
            _parse_uuid(x_organization_id, "X-Organization-Id") if x_organization_id else None
        ),
    )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
CurrentUser = Annotated[UserContext, Depends(get_current_user)]


def get_capture_service(request: Request, db: DbSession) -> EVVCaptureService:
    """Capture service wired to the providers the app was created with."""
    state = request.app.state
    return EVVCaptureService(
        db,
        visit_provider=state.visit_provider,
        client_provider=state.client_provider,
        caregiver_provider=state.caregiver_provider,
    )


def get_vmur_service(db: DbSession) -> VMURService:
    return VMURService(db)


def get_sync_service(db: DbSession) -> EVVSyncService:
    return EVVSyncService(db)


CaptureService = Annotated[EVVCaptureService, Depends(get_capture_service)]
VMURs = Annotated[VMURService, Depends(get_vmur_service)]
SyncService = Annotated[EVVSyncService, Depends(get_sync_service)]
