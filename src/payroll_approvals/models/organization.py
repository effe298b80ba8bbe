"""Organization and user models."""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_approvals.models.base import Base, TimestampMixin


class Organization(Base, TimestampMixin):
    """Tenant organization and its approval policy."""

    __tablename__ = "organization"

    organization_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Approval policy
    rejection_comment_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_delegation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_approval_levels: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    users: Mapped[list[AppUser]] = relationship(back_populates="organization")


class AppUser(Base, TimestampMixin):
    """Application user.

    ``organization_id`` is null only for platform-scope users.
    """

    __tablename__ = "app_user"

    user_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=True,
    )
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    organization: Mapped[Organization | None] = relationship(back_populates="users")
