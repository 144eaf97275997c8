"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_compute.services.pay_run_service import PayrollRunService


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the application."""
    return request.app.state.session_factory


async def get_db_session(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with factory() as session:
        yield session


def get_pay_run_service(request: Request) -> PayrollRunService:
    """Application-wide run service (shares the run lock registry)."""
    return request.app.state.pay_run_service


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
PayRunService = Annotated[PayrollRunService, Depends(get_pay_run_service)]
