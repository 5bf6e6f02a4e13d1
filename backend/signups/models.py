from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from sqlalchemy import JSON, CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint, case
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.elements import Grouping
from sqlalchemy.sql.sqltypes import BigInteger, Boolean, DateTime, Integer, String, Text

# MySQL truncates DATETIME to whole seconds unless fsp is given; waitlist order depends on it.
PreciseDateTime = DateTime(timezone=False).with_variant(mysql.DATETIME(fsp=6), "mysql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


def _enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class EventType(StrEnum):
    BASIC = "BASIC"
    SIGN_UPS = "SIGN_UPS"
    TICKETS = "TICKETS"


class ParticipationStatus(StrEnum):
    CONFIRMED = "CONFIRMED"
    ON_WAITLIST = "ON_WAITLIST"
    RETRACTED = "RETRACTED"
    REMOVED = "REMOVED"


class SignUpAvailability(StrEnum):
    UNAVAILABLE = "UNAVAILABLE"
    AVAILABLE = "AVAILABLE"
    NOT_OPEN = "NOT_OPEN"
    CLOSED = "CLOSED"
    WAITLIST_AVAILABLE = "WAITLIST_AVAILABLE"
    DISABLED = "DISABLED"
    CONFIRMED = "CONFIRMED"
    ON_WAITLIST = "ON_WAITLIST"


class Role(StrEnum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"


class PromotionJobStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class JobKind(StrEnum):
    PROMOTE = "PROMOTE"
    NOTIFY_PROMOTION = "NOTIFY_PROMOTION"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    graduation_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_super_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_org_members"),
        Index("idx_org_members_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[Role] = mapped_column(_enum(Role), nullable=False, default=Role.MEMBER)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="chk_events_time"),
        CheckConstraint("remaining_capacity >= 0", name="chk_events_remaining"),
        CheckConstraint(
            "capacity IS NULL OR remaining_capacity <= capacity",
            name="chk_events_remaining_le_capacity",
        ),
        CheckConstraint(
            "(capacity IS NULL AND remaining_capacity IS NULL)"
            " OR (capacity IS NOT NULL AND remaining_capacity IS NOT NULL)",
            name="chk_events_capacity_tracked",
        ),
        Index("idx_events_org", "organization_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[EventType] = mapped_column(_enum(EventType), nullable=False, default=EventType.BASIC)
    product_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    sign_ups_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sign_ups_start_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    sign_ups_end_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    remaining_capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    slots: Mapped[list["Slot"]] = relationship(back_populates="event", cascade="all, delete-orphan")
    sign_ups: Mapped[list["SignUp"]] = relationship(back_populates="event", cascade="all, delete-orphan")


class Slot(Base):
    __tablename__ = "event_slots"
    __table_args__ = (
        CheckConstraint("capacity >= 0", name="chk_slots_capacity"),
        CheckConstraint("remaining_capacity >= 0", name="chk_slots_remaining"),
        CheckConstraint("remaining_capacity <= capacity", name="chk_slots_remaining_le_capacity"),
        Index("idx_slots_event", "event_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    grade_years: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    event: Mapped["Event"] = relationship(back_populates="slots")


class SignUp(Base):
    __tablename__ = "event_sign_ups"
    __table_args__ = (
        CheckConstraint(
            "(participation_status = 'CONFIRMED' AND slot_id IS NOT NULL)"
            " OR (participation_status <> 'CONFIRMED' AND slot_id IS NULL)",
            name="chk_sign_ups_confirmed_has_slot",
        ),
        CheckConstraint(
            "(participation_status IN ('CONFIRMED', 'ON_WAITLIST') AND active)"
            " OR (participation_status IN ('RETRACTED', 'REMOVED') AND NOT active)",
            name="chk_sign_ups_active_matches_status",
        ),
        Index("idx_sign_ups_event_status", "event_id", "participation_status", "created_at"),
        Index("idx_sign_ups_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    slot_id: Mapped[Optional[int]] = mapped_column(ForeignKey("event_slots.id"), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    participation_status: Mapped[ParticipationStatus] = mapped_column(
        _enum(ParticipationStatus),
        nullable=False,
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(PreciseDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(PreciseDateTime, nullable=False)

    event: Mapped["Event"] = relationship(back_populates="sign_ups")


# At most one active sign-up per (user, event); inactive rows index as NULL and never collide.
Index(
    "uq_sign_ups_user_event_active",
    SignUp.user_id,
    SignUp.event_id,
    Grouping(case((SignUp.active, 1))),
    unique=True,
)


class PromotionJob(Base):
    __tablename__ = "promotion_jobs"
    __table_args__ = (Index("idx_promotion_jobs_status", "status", "available_at"),)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[JobKind] = mapped_column(_enum(JobKind), nullable=False, default=JobKind.PROMOTE)
    # Recipient of a NOTIFY_PROMOTION job.
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    status: Mapped[PromotionJobStatus] = mapped_column(
        _enum(PromotionJobStatus),
        nullable=False,
        default=PromotionJobStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime] = mapped_column(PreciseDateTime, nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(PreciseDateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(PreciseDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(PreciseDateTime, nullable=False)
