from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Integer,
    Numeric,
    String,
    Date,
    DateTime,
    ForeignKey,
    Boolean,
    Enum,
    CheckConstraint,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .client import Client
    from .scheduling import TrainingSession, ServiceType, Trainer


class PackStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    ENDED = "ended"


class PaymentFrequency(str, enum.Enum):
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    MONTHLY = "monthly"


class CreditStatus(str, enum.Enum):
    AVAILABLE = "available"
    CONSUMED = "consumed"


class BillingPeriodStatus(str, enum.Enum):
    DUE = "due"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


def _status_column(enum_cls, length: int = 20):
    return Enum(enum_cls, native_enum=False, length=length, values_callable=enum_values)


class SessionPack(Base):
    __tablename__ = "session_pack"
    __table_args__ = (
        CheckConstraint("sessions_remaining >= 0", name="ck_session_pack_remaining_non_negative"),
    )

    pack_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("client.client_id"), nullable=False)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    service_type_id: Mapped[int] = mapped_column(
        ForeignKey("service_type.service_type_id"), nullable=False
    )
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    sessions_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_paid: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    status: Mapped[PackStatus] = mapped_column(
        _status_column(PackStatus), nullable=False, default=PackStatus.ACTIVE
    )
    # Written only when the whole pack is cancelled.
    forfeited_sessions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refunded_sessions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    purchase_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    client: Mapped["Client"] = relationship(back_populates="session_packs")
    trainer: Mapped["Trainer"] = relationship()
    service_type: Mapped["ServiceType"] = relationship()
    sessions: Mapped[list["TrainingSession"]] = relationship(back_populates="session_pack")

    def __repr__(self) -> str:
        return (
            f"<SessionPack id={self.pack_id} client_id={self.client_id} "
            f"remaining={self.sessions_remaining}/{self.total_sessions}>"
        )


class ClientSubscription(Base):
    __tablename__ = "client_subscription"

    subscription_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("client.client_id"), nullable=False)
    trainer_id: Mapped[int] = mapped_column(ForeignKey("trainer.trainer_id"), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="weekly")
    payment_frequency: Mapped[PaymentFrequency] = mapped_column(
        _status_column(PaymentFrequency), nullable=False
    )
    billing_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _status_column(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    client: Mapped["Client"] = relationship(back_populates="subscriptions")
    trainer: Mapped["Trainer"] = relationship()
    allocations: Mapped[list["SubscriptionServiceAllocation"]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
    )
    credits: Mapped[list["SubscriptionSessionCredit"]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
    )
    billing_periods: Mapped[list["SubscriptionBillingPeriod"]] = relationship(
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionBillingPeriod.period_start_date",
    )
    sessions: Mapped[list["TrainingSession"]] = relationship(back_populates="subscription")

    def allocation_for(self, service_type_id: int) -> Optional["SubscriptionServiceAllocation"]:
        for allocation in self.allocations:
            if allocation.service_type_id == service_type_id:
                return allocation
        return None


class SubscriptionServiceAllocation(Base):
    __tablename__ = "subscription_service_allocation"
    __table_args__ = (
        UniqueConstraint("subscription_id", "service_type_id", name="uq_allocation_service"),
    )

    allocation_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("client_subscription.subscription_id"), nullable=False
    )
    service_type_id: Mapped[int] = mapped_column(
        ForeignKey("service_type.service_type_id"), nullable=False
    )
    quantity_per_period: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_per_session: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    subscription: Mapped["ClientSubscription"] = relationship(back_populates="allocations")
    service_type: Mapped["ServiceType"] = relationship()


class SubscriptionSessionCredit(Base):
    __tablename__ = "subscription_session_credit"

    credit_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("client_subscription.subscription_id"), nullable=False
    )
    service_type_id: Mapped[int] = mapped_column(
        ForeignKey("service_type.service_type_id"), nullable=False
    )
    credit_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    credit_reason: Mapped[str] = mapped_column(String(30), nullable=False, default="cancellation")
    status: Mapped[CreditStatus] = mapped_column(
        _status_column(CreditStatus), nullable=False, default=CreditStatus.AVAILABLE
    )
    # At most one credit per cancelled session.
    originating_session_id: Mapped[int | None] = mapped_column(
        ForeignKey("training_session.session_id"),
        nullable=True,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    subscription: Mapped["ClientSubscription"] = relationship(back_populates="credits")
    originating_session: Mapped[Optional["TrainingSession"]] = relationship(
        "TrainingSession",
        foreign_keys=[originating_session_id],
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionSessionCredit id={self.credit_id} "
            f"subscription_id={self.subscription_id} status={self.status.value}>"
        )


class SubscriptionBillingPeriod(Base):
    __tablename__ = "subscription_billing_period"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "period_start_date", name="uq_billing_period_start"
        ),
    )

    billing_period_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(
        ForeignKey("client_subscription.subscription_id"), nullable=False
    )
    period_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[BillingPeriodStatus] = mapped_column(
        _status_column(BillingPeriodStatus), nullable=False, default=BillingPeriodStatus.DUE
    )
    is_final_period: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    subscription: Mapped["ClientSubscription"] = relationship(back_populates="billing_periods")

    def __repr__(self) -> str:
        return (
            f"<SubscriptionBillingPeriod subscription_id={self.subscription_id} "
            f"{self.period_start_date}..{self.period_end_date} amount={self.amount_due}>"
        )
