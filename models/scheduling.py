from __future__ import annotations

import enum
from datetime import date, datetime, time
from typing import TYPE_CHECKING

from sqlalchemy import (
    Integer,
    String,
    Date,
    DateTime,
    Time,
    Text,
    ForeignKey,
    Boolean,
    Enum,
    Index,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .client import Client
    from .payment import SessionPack, ClientSubscription, SubscriptionSessionCredit


class SessionStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED_LATE = "cancelled_late"
    CANCELLED_EARLY = "cancelled_early"
    NO_SHOW = "no-show"
    PENDING_APPROVAL = "pending_approval"

    @property
    def blocks_slot(self) -> bool:
        """True when a session in this status occupies the trainer's time."""
        return self in _BLOCKING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self in (SessionStatus.CANCELLED_LATE, SessionStatus.CANCELLED_EARLY)


_BLOCKING_STATUSES = frozenset(
    {SessionStatus.SCHEDULED, SessionStatus.COMPLETED, SessionStatus.PENDING_APPROVAL}
)
_TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED_LATE,
        SessionStatus.CANCELLED_EARLY,
        SessionStatus.NO_SHOW,
    }
)

# Statuses that never count as an overlap.
NON_BLOCKING_STATUSES = tuple(s for s in SessionStatus if not s.blocks_slot)


class ExceptionType(str, enum.Enum):
    UNAVAILABLE_FULL_DAY = "unavailable_full_day"
    UNAVAILABLE_PARTIAL_DAY = "unavailable_partial_day"
    AVAILABLE_EXTRA_SLOT = "available_extra_slot"


class Trainer(Base):
    __tablename__ = "trainer"

    trainer_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    clients: Mapped[list["Client"]] = relationship(back_populates="trainer")
    service_types: Mapped[list["ServiceType"]] = relationship(
        back_populates="trainer",
        cascade="all, delete-orphan",
    )
    availability_templates: Mapped[list["AvailabilityTemplate"]] = relationship(
        back_populates="trainer",
        cascade="all, delete-orphan",
    )
    availability_exceptions: Mapped[list["AvailabilityException"]] = relationship(
        back_populates="trainer",
        cascade="all, delete-orphan",
    )
    sessions: Mapped[list["TrainingSession"]] = relationship(back_populates="trainer")


class ServiceType(Base):
    __tablename__ = "service_type"

    service_type_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    trainer: Mapped["Trainer"] = relationship(back_populates="service_types")


class AvailabilityTemplate(Base):
    """
    Recurring availability window for a specific day of week.
    day_of_week: 0 = Monday ... 6 = Sunday (date.weekday()).
    Times are wall-clock times in the trainer's timezone.
    """
    __tablename__ = "availability_template"

    template_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)

    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0–6
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)

    trainer: Mapped["Trainer"] = relationship(back_populates="availability_templates")


class AvailabilityException(Base):
    """
    One-off override of the templates for a single date.
    Exceptions for the same date are applied in authoring order.
    """
    __tablename__ = "availability_exception"

    exception_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    exception_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    exception_type: Mapped[ExceptionType] = mapped_column(
        Enum(ExceptionType, native_enum=False, length=30, values_callable=enum_values),
        nullable=False,
    )
    start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    trainer: Mapped["Trainer"] = relationship(back_populates="availability_exceptions")


class TrainingSession(Base):
    __tablename__ = "training_session"
    __table_args__ = (
        # One blocking session per trainer start instant.
        Index(
            "uq_training_session_trainer_slot",
            "trainer_id",
            "start_time",
            unique=True,
            sqlite_where=text("status IN ('scheduled', 'completed', 'pending_approval')"),
            postgresql_where=text("status IN ('scheduled', 'completed', 'pending_approval')"),
        ),
    )

    session_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("client.client_id"), nullable=False)
    service_type_id: Mapped[int] = mapped_column(
        ForeignKey("service_type.service_type_id"), nullable=False
    )

    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, native_enum=False, length=20, values_callable=enum_values),
        nullable=False,
        default=SessionStatus.SCHEDULED,
    )

    session_pack_id: Mapped[int | None] = mapped_column(
        ForeignKey("session_pack.pack_id"), nullable=True
    )
    recurring_schedule_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_schedule.schedule_id"), nullable=True
    )
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("client_subscription.subscription_id"), nullable=True
    )
    is_from_credit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credit_id_consumed: Mapped[int | None] = mapped_column(
        ForeignKey(
            "subscription_session_credit.credit_id",
            use_alter=True,
            name="fk_training_session_credit_consumed",
        ),
        nullable=True,
    )
    cancellation_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    trainer: Mapped["Trainer"] = relationship(back_populates="sessions")
    client: Mapped["Client"] = relationship(back_populates="sessions")
    service_type: Mapped["ServiceType"] = relationship()
    session_pack: Mapped["SessionPack | None"] = relationship(back_populates="sessions")
    subscription: Mapped["ClientSubscription | None"] = relationship(back_populates="sessions")
    consumed_credit: Mapped["SubscriptionSessionCredit | None"] = relationship(
        foreign_keys=[credit_id_consumed],
    )
    recurring_schedule: Mapped["RecurringSchedule | None"] = relationship(
        back_populates="sessions"
    )

    def __repr__(self) -> str:
        return (
            f"<TrainingSession id={self.session_id} trainer_id={self.trainer_id} "
            f"start={self.start_time} status={self.status.value}>"
        )


class ClientTimePreference(Base):
    """
    A client's preferred weekly slot with their trainer.
    weekday: 0 = Monday ... 6 = Sunday; start_time is trainer wall-clock time.
    """
    __tablename__ = "client_time_preference"

    preference_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("client.client_id"), nullable=False)

    weekday: Mapped[int] = mapped_column(Integer, nullable=False)  # 0–6
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    client: Mapped["Client"] = relationship()


class RecurringSchedule(Base):
    """A batch of weekly sessions generated from client time preferences."""
    __tablename__ = "recurring_schedule"

    schedule_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("client.client_id"), nullable=False)
    service_type_id: Mapped[int] = mapped_column(
        ForeignKey("service_type.service_type_id"), nullable=False
    )
    pattern_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    booking_method: Mapped[str] = mapped_column(String(20), nullable=False)
    session_pack_id: Mapped[int | None] = mapped_column(
        ForeignKey("session_pack.pack_id"), nullable=True
    )
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("client_subscription.subscription_id"), nullable=True
    )

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    total_sessions_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    preferences: Mapped[list["RecurringSchedulePreference"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
    )
    sessions: Mapped[list["TrainingSession"]] = relationship(back_populates="recurring_schedule")


class RecurringSchedulePreference(Base):
    __tablename__ = "recurring_schedule_preference"

    link_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_schedule.schedule_id"), nullable=False
    )
    preference_id: Mapped[int] = mapped_column(
        ForeignKey("client_time_preference.preference_id"), nullable=False
    )

    schedule: Mapped["RecurringSchedule"] = relationship(back_populates="preferences")
    preference: Mapped["ClientTimePreference"] = relationship()
