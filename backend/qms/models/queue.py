"""Queue models: organizations, counters, queue settings, tokens and service sessions."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from qms.db.base import Base, TimestampMixin


class CustomerType(str, enum.Enum):
    """Customer category; selects the numbering prefix and service-time default."""

    INSTANT = "instant"
    BROWSER = "browser"
    RETAIL = "retail"


class TokenStatus(str, enum.Enum):
    """Token lifecycle states."""

    WAITING = "waiting"
    CALLED = "called"
    SERVING = "serving"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Tokens occupying a counter
ACTIVE_SERVICE_STATUSES = (TokenStatus.CALLED, TokenStatus.SERVING)
# Tokens that still block counter deletion
OPEN_STATUSES = (TokenStatus.WAITING, TokenStatus.CALLED, TokenStatus.SERVING)
TERMINAL_STATUSES = (TokenStatus.COMPLETED, TokenStatus.CANCELLED)


class Organization(Base, TimestampMixin):
    """Tenant. Every other queue row is scoped to one organization."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    counters: Mapped[list["Counter"]] = relationship("Counter", back_populates="organization")
    queue_settings: Mapped[list["QueueSetting"]] = relationship(
        "QueueSetting", back_populates="organization"
    )


class Counter(Base, TimestampMixin):
    """Physical or virtual service point tokens are called to."""

    __tablename__ = "counters"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_counter_org_name"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_staff_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id"), nullable=True, index=True
    )

    organization: Mapped["Organization"] = relationship("Organization", back_populates="counters")
    assigned_staff: Mapped[Optional["User"]] = relationship("User", foreign_keys=[assigned_staff_id])


class QueueSetting(Base, TimestampMixin):
    """Per-organization, per-customer-type numbering and activity configuration.

    ``current_number`` is the allocator state and is only ever changed by an
    atomic increment (or an explicit reset).
    """

    __tablename__ = "queue_settings"
    __table_args__ = (
        UniqueConstraint("organization_id", "customer_type", name="uq_queue_setting_org_type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    customer_type: Mapped[CustomerType] = mapped_column(Enum(CustomerType), nullable=False)
    prefix: Mapped[str] = mapped_column(String(5), nullable=False)
    current_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_number: Mapped[int] = mapped_column(Integer, default=999, nullable=False)
    reset_daily: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    reset_time: Mapped[str] = mapped_column(String(8), default="00:00:00", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority_multiplier: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)

    organization: Mapped["Organization"] = relationship(
        "Organization", back_populates="queue_settings"
    )


class Token(Base):
    """A single customer's place in a queue."""

    __tablename__ = "tokens"
    __table_args__ = (
        Index("ix_tokens_queue_order", "organization_id", "status", "priority", "created_at"),
        Index("ix_tokens_counter_status", "counter_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    counter_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("counters.id"), nullable=True
    )
    number: Mapped[str] = mapped_column(String(16), nullable=False)
    customer_type: Mapped[CustomerType] = mapped_column(Enum(CustomerType), nullable=False)
    status: Mapped[TokenStatus] = mapped_column(
        Enum(TokenStatus), default=TokenStatus.WAITING, nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    called_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    served_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    served_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)

    # Minutes
    estimated_wait_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    actual_wait_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    service_duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)

    counter: Mapped[Optional["Counter"]] = relationship("Counter")
    staff: Mapped[Optional["User"]] = relationship("User", foreign_keys=[served_by])

    def __repr__(self) -> str:
        return f"<Token {self.number} ({self.status.value})>"


class ServiceSession(Base):
    """One staff member's continuous working period."""

    __tablename__ = "service_sessions"
    __table_args__ = (
        Index("ix_service_sessions_staff_open", "staff_id", "ended_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    staff_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id"), nullable=False, index=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tokens_served: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_service_time: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)


# Forward references
from qms.models.user import User  # noqa: E402
