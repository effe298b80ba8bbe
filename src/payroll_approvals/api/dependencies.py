"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_approvals.audit import AuditTrail
from payroll_approvals.auth.authorizer import Authorizer
from payroll_approvals.auth.session import SessionContext
from payroll_approvals.auth.tokens import resolve_org_scope
from payroll_approvals.config import Settings
from payroll_approvals.database import audited_session
from payroll_approvals.errors import InvalidSessionToken
from payroll_approvals.events import EventEmitter

bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_emitter(request: Request) -> EventEmitter:
    return request.app.state.emitter


async def get_db_session(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_context(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> SessionContext:
    """Resolve the bearer token once for the request."""
    if credentials is None:
        raise InvalidSessionToken("Missing bearer token")
    return resolve_org_scope(credentials.credentials, settings)


class RequestScope:
    """Authorization, audit trail and unit of work for one request.

    Usage:
        async with scope.unit_of_work() as db:
            await ApprovalWorkflowEngine(db, scope.emitter).approve(scope.auth, ...)
    """

    def __init__(
        self,
        ctx: SessionContext,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: EventEmitter,
    ):
        self.ctx = ctx
        self.trail = AuditTrail()
        self.auth = Authorizer(ctx, self.trail)
        self.session_factory = session_factory
        self.emitter = emitter

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[AsyncSession, None]:
        """Transaction whose notifications are released only after commit."""
        with self.emitter.batch():
            async with audited_session(self.trail, self.session_factory) as session:
                yield session


def get_request_scope(
    ctx: Annotated[SessionContext, Depends(get_session_context)],
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    emitter: Annotated[EventEmitter, Depends(get_emitter)],
) -> RequestScope:
    scope = RequestScope(ctx, factory, emitter)
    scope.auth.require_active_session()
    return scope


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
CurrentScope = Annotated[RequestScope, Depends(get_request_scope)]
