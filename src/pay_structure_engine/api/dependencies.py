"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pay_structure_engine.calculators.sources import ExternalCalculatorRegistry
from pay_structure_engine.database import init_db
from pay_structure_engine.services.attendance_source import SqlAttendanceSource
from pay_structure_engine.services.structure_store import SqlPayStructureStore


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the global session factory."""
    _, factory = init_db()
    return factory


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with factory() as session:
        yield session


def get_structure_store(factory: SessionFactory) -> SqlPayStructureStore:
    return SqlPayStructureStore(factory)


def get_attendance_source(factory: SessionFactory) -> SqlAttendanceSource:
    return SqlAttendanceSource(factory)


def get_external_calculators() -> ExternalCalculatorRegistry:
    """Calculators for ``external`` components; none are registered by default."""
    return {}


async def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract tenant ID from header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID format",
        ) from None


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
TenantId = Annotated[UUID, Depends(get_tenant_id)]
StructureStore = Annotated[SqlPayStructureStore, Depends(get_structure_store)]
Attendance = Annotated[SqlAttendanceSource, Depends(get_attendance_source)]
ExternalCalculators = Annotated[ExternalCalculatorRegistry, Depends(get_external_calculators)]
