from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Tuple

from booking.billing_service import PERIOD_EXTRA_DAYS
from booking.identity import Caller, Role
from models.client import Client
from models.payment import (
    ClientSubscription,
    PaymentFrequency,
    SessionPack,
    SubscriptionBillingPeriod,
    SubscriptionServiceAllocation,
)
from models.scheduling import (
    AvailabilityException,
    AvailabilityTemplate,
    ClientTimePreference,
    ExceptionType,
    ServiceType,
    Trainer,
)


AvailabilityWindow = Tuple[int, time, time]


def next_weekday_at(hour: int, *, days_ahead: int = 7) -> datetime:
    """A naive UTC instant ``days_ahead`` days from now at ``hour``:00."""
    day = datetime.utcnow() + timedelta(days=days_ahead)
    return day.replace(hour=hour, minute=0, second=0, microsecond=0)


def make_trainer(session, *, email: str = "tina@example.com") -> Trainer:
    trainer = Trainer(first_name="Tina", last_name="Trainer", email=email)
    session.add(trainer)
    session.commit()
    return trainer


def make_service_type(session, trainer: Trainer, *, name: str = "1:1 Strength") -> ServiceType:
    service_type = ServiceType(trainer_id=trainer.trainer_id, name=name)
    session.add(service_type)
    session.commit()
    return service_type


def make_client(session, trainer: Trainer, *, email: str = "carl@example.com") -> Client:
    client = Client(
        trainer_id=trainer.trainer_id,
        first_name="Carl",
        last_name="Client",
        email=email,
    )
    session.add(client)
    session.commit()
    return client


def make_pack(
    session,
    client: Client,
    service_type: ServiceType,
    *,
    total_sessions: int = 10,
    sessions_remaining: int | None = None,
) -> SessionPack:
    pack = SessionPack(
        client_id=client.client_id,
        trainer_id=client.trainer_id,
        service_type_id=service_type.service_type_id,
        total_sessions=total_sessions,
        sessions_remaining=total_sessions if sessions_remaining is None else sessions_remaining,
        amount_paid=Decimal("500.00"),
    )
    session.add(pack)
    session.commit()
    return pack


def make_preference(
    session, client: Client, *, weekday: int, start: time, is_active: bool = True
) -> ClientTimePreference:
    preference = ClientTimePreference(
        client_id=client.client_id, weekday=weekday, start_time=start, is_active=is_active
    )
    session.add(preference)
    session.commit()
    return preference


def make_subscription(
    session,
    client: Client,
    service_type: ServiceType,
    *,
    cost_per_session: str = "45.00",
    frequency: PaymentFrequency = PaymentFrequency.WEEKLY,
    billing_amount: str = "90.00",
    start_date: date | None = None,
    end_date: date | None = None,
    first_period: bool = False,
) -> ClientSubscription:
    """
    Persist an active subscription with one allocation for ``service_type``.
    With ``first_period`` the initial billing period is created as it would
    be when the subscription is sold.
    """
    if start_date is None:
        start_date = date.today()
    subscription = ClientSubscription(
        client_id=client.client_id,
        trainer_id=client.trainer_id,
        billing_cycle=frequency.value,
        payment_frequency=frequency,
        billing_amount=Decimal(billing_amount),
        start_date=start_date,
        end_date=end_date,
    )
    subscription.allocations.append(
        SubscriptionServiceAllocation(
            service_type_id=service_type.service_type_id,
            quantity_per_period=2,
            cost_per_session=Decimal(cost_per_session),
        )
    )
    session.add(subscription)
    session.flush()

    if first_period:
        session.add(
            SubscriptionBillingPeriod(
                subscription_id=subscription.subscription_id,
                period_start_date=start_date,
                period_end_date=start_date + timedelta(days=PERIOD_EXTRA_DAYS[frequency]),
                amount_due=subscription.billing_amount,
            )
        )
    session.commit()
    return subscription


def add_availability_template(
    session,
    trainer: Trainer,
    *,
    windows: Iterable[AvailabilityWindow] | None = None,
    start_hour: int = 6,
    end_hour: int = 21,
) -> list[AvailabilityTemplate]:
    """
    Ensure a trainer has weekly availability persisted.

    By default this seeds every day of week with a wide-open window.
    Custom windows can be supplied to model specific availability.
    """
    trainer_id = trainer.trainer_id
    if trainer_id is None:
        raise ValueError("Trainer must be persisted before adding availability")

    if windows is None:
        windows = [
            (day, time(start_hour, 0), time(end_hour, 0))
            for day in range(7)
        ]

    templates = [
        AvailabilityTemplate(
            trainer_id=trainer_id,
            day_of_week=day,
            start_time=start,
            end_time=end,
        )
        for day, start, end in windows
    ]
    session.add_all(templates)
    session.commit()
    return templates


def add_exception(
    session,
    trainer: Trainer,
    on: date,
    kind: ExceptionType,
    start: time | None = None,
    end: time | None = None,
    *,
    created_at: datetime | None = None,
) -> AvailabilityException:
    exception = AvailabilityException(
        trainer_id=trainer.trainer_id,
        exception_date=on,
        exception_type=kind,
        start_time=start,
        end_time=end,
    )
    if created_at is not None:
        exception.created_at = created_at
    session.add(exception)
    session.commit()
    return exception


def as_client(client: Client) -> Caller:
    return Caller(role=Role.CLIENT, client_id=client.client_id)


def as_trainer(trainer: Trainer) -> Caller:
    return Caller(role=Role.TRAINER, trainer_id=trainer.trainer_id)
