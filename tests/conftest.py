"""Pytest fixtures for payroll approvals tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable
from uuid import UUID, uuid4

import jwt
import pytest
import pytest_asyncio
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from payroll_approvals.audit import AuditTrail
from payroll_approvals.auth.authorizer import Authorizer
from payroll_approvals.auth.roles import Role
from payroll_approvals.auth.session import Identity, SessionContext
from payroll_approvals.config import Settings
from payroll_approvals.database import audited_session, create_schema, make_session_factory
from payroll_approvals.events import EventEmitter
from payroll_approvals.events.types import utcnow
from payroll_approvals.models import (
    AppUser,
    ApprovalChain,
    ApprovalChainLevel,
    Organization,
    PayRun,
)
from payroll_approvals.services.approval_engine import ApprovalWorkflowEngine

TEST_JWT_SECRET = "test-secret-key-with-at-least-32-bytes!!"

ORG_A_ID = UUID("0b6a4d8e-0000-4000-8000-00000000000a")
ORG_B_ID = UUID("0b6a4d8e-0000-4000-8000-00000000000b")


@dataclass(frozen=True)
class SeedUser:
    """Plain view of a seeded user, safe to use across sessions."""

    user_id: UUID
    organization_id: UUID | None
    role: Role
    email: str
    full_name: str

    def context(self, expires_in: timedelta = timedelta(hours=1)) -> SessionContext:
        return SessionContext(
            identity=Identity(self.user_id, self.organization_id, self.role),
            token_expiry=utcnow() + expires_in,
        )

    def authorizer(self, trail: AuditTrail | None = None) -> Authorizer:
        return Authorizer(self.context(), trail if trail is not None else AuditTrail())


# (key, organization, role, display name)
SEED_USERS: list[tuple[str, UUID | None, Role, str]] = [
    ("admin", ORG_A_ID, Role.ORG_ADMIN, "Ada Admin"),
    ("controller", ORG_A_ID, Role.ORG_FINANCE_CONTROLLER, "Carl Controller"),
    ("approver1", ORG_A_ID, Role.COMPANY_PAYROLL_ADMIN, "Avery First"),
    ("approver2", ORG_A_ID, Role.PROJECT_MANAGER, "Blake Second"),
    ("approver3", ORG_A_ID, Role.COMPANY_PAYROLL_ADMIN, "Casey Third"),
    ("hr", ORG_A_ID, Role.ORG_HR_ADMIN, "Harper HR"),
    ("auditor", ORG_A_ID, Role.ORG_AUDITOR, "Audrey Auditor"),
    ("viewer", ORG_A_ID, Role.ORG_VIEWER, "Vic Viewer"),
    ("officer", ORG_A_ID, Role.PROJECT_PAYROLL_OFFICER, "Olive Officer"),
    ("admin_b", ORG_B_ID, Role.ORG_ADMIN, "Bea Admin"),
    ("controller_b", ORG_B_ID, Role.ORG_FINANCE_CONTROLLER, "Bo Controller"),
    ("super_admin", None, Role.PLATFORM_SUPER_ADMIN, "Sam Super"),
    ("platform_auditor", None, Role.PLATFORM_AUDITOR, "Pat Auditor"),
]


class Seed:
    """Seeded organizations and users, keyed by name."""

    def __init__(self, users: dict[str, SeedUser]):
        self.users = users
        self.org_a = ORG_A_ID
        self.org_b = ORG_B_ID

    def __getattr__(self, name: str) -> SeedUser:
        try:
            return self.__dict__["users"][name]
        except KeyError:
            raise AttributeError(name) from None


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'approvals.db'}",
        jwt_secret=TEST_JWT_SECRET,
        jwt_algorithm="HS256",
        jwt_issuer=None,
        session_refresh_window_seconds=60,
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
    )


@pytest_asyncio.fixture
async def engine(settings: Settings):
    """File-backed SQLite engine so that separate sessions see each other's commits."""
    engine = create_async_engine(settings.database_url, echo=False)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def seeded(session_factory) -> Seed:
    """Two organizations, their users and platform users."""
    users: dict[str, SeedUser] = {}
    async with session_factory() as db:
        db.add_all(
            [
                Organization(organization_id=ORG_A_ID, name="Acme Payroll Ltd"),
                Organization(organization_id=ORG_B_ID, name="Borealis Holdings"),
            ]
        )
        await db.flush()
        for key, org_id, role, name in SEED_USERS:
            user = SeedUser(
                user_id=uuid4(),
                organization_id=org_id,
                role=role,
                email=f"{key}@example.com",
                full_name=name,
            )
            users[key] = user
            db.add(
                AppUser(
                    user_id=user.user_id,
                    organization_id=org_id,
                    email=user.email,
                    full_name=name,
                    role=role.value,
                )
            )
        await db.commit()
    return Seed(users)


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def configure_chain(session_factory) -> Callable[..., Awaitable[UUID]]:
    """Insert the next active approval chain version; levels are user ids or roles."""

    async def _configure(org_id: UUID, *levels: UUID | Role) -> UUID:
        chain_id = uuid4()
        async with session_factory() as db:
            current = await db.scalar(
                select(func.coalesce(func.max(ApprovalChain.version), 0)).where(
                    ApprovalChain.organization_id == org_id
                )
            )
            await db.execute(
                update(ApprovalChain)
                .where(ApprovalChain.organization_id == org_id)
                .values(is_active=False)
            )
            db.add(ApprovalChain(chain_id=chain_id, organization_id=org_id, version=current + 1))
            await db.flush()
            for sequence, level in enumerate(levels, start=1):
                db.add(
                    ApprovalChainLevel(
                        chain_id=chain_id,
                        sequence=sequence,
                        approver_user_id=level if isinstance(level, UUID) else None,
                        approver_role=level.value if isinstance(level, Role) else None,
                    )
                )
            await db.commit()
        return chain_id

    return _configure


@pytest.fixture
def create_pay_run(session_factory) -> Callable[..., Awaitable[UUID]]:
    """Insert a draft pay run."""

    async def _create(org_id: UUID, created_by: UUID | None = None) -> UUID:
        pay_run_id = uuid4()
        async with session_factory() as db:
            db.add(
                PayRun(
                    pay_run_id=pay_run_id,
                    organization_id=org_id,
                    period_start=date(2026, 3, 1),
                    period_end=date(2026, 3, 31),
                    status="draft",
                    created_by_user_id=created_by,
                )
            )
            await db.commit()
        return pay_run_id

    return _create


@pytest.fixture
def act(session_factory, emitter) -> Callable[..., Awaitable[Any]]:
    """Run one engine operation as one request.

    Usage:
        step = await act(seeded.approver1, "approve", pay_run_id, step_id)
        await act(user, "submit", pay_run_id, trail=trail)
    """

    async def _act(user: SeedUser, operation: str, *args: Any, trail: AuditTrail | None = None) -> Any:
        trail = trail if trail is not None else AuditTrail()
        auth = Authorizer(user.context(), trail)
        with emitter.batch():
            async with audited_session(trail, session_factory) as db:
                engine = ApprovalWorkflowEngine(db, emitter)
                return await getattr(engine, operation)(auth, *args)

    return _act


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Encode a session token the way the authentication service does."""

    def _make(
        user: SeedUser,
        expires_in: timedelta = timedelta(hours=1),
        imp: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> str:
        now = datetime.now().astimezone()
        claims: dict[str, Any] = {
            "sub": str(user.user_id),
            "org_id": str(user.organization_id) if user.organization_id else None,
            "role": user.role.value,
            "iat": int(now.timestamp()),
            "exp": int((now + expires_in).timestamp()),
        }
        if imp is not None:
            claims["imp"] = imp
        claims.update(overrides)
        return jwt.encode(claims, TEST_JWT_SECRET, algorithm="HS256")

    return _make

