"""User model."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, Enum, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from qms.core.rbac import UserRole
from qms.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from qms.models.queue import ServiceSession


class User(Base, TimestampMixin):
    """Staff or admin account of one organization.

    Staff call and serve tokens at counters; their id is the ``staff_id``
    recorded on tokens (``served_by``) and service sessions.
    """

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("organization_id", "username", name="uq_users_org_username"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    username: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole),
        default=UserRole.STAFF,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    service_sessions: Mapped[List["ServiceSession"]] = relationship(
        "ServiceSession", order_by="ServiceSession.started_at", viewonly=True
    )
