from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

import booking.booking_service as booking_service
from booking.booking_service import (
    NO_SESSIONS_REMAINING_MESSAGE,
    SLOT_TAKEN_MESSAGE,
    book_session,
    reschedule_session,
    update_session_status,
)
from booking.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from booking.identity import Caller, Role
from models.payment import CreditStatus, SessionPack, SubscriptionSessionCredit
from models.scheduling import SessionStatus, TrainingSession
from tests.helpers import (
    as_client,
    as_trainer,
    make_client,
    make_pack,
    make_service_type,
    make_subscription,
    make_trainer,
    next_weekday_at,
)


@pytest.fixture()
def world(session):
    trainer = make_trainer(session)
    client = make_client(session, trainer)
    service_type = make_service_type(session, trainer)
    return trainer, client, service_type


def _book(session, world, start, **kwargs):
    trainer, client, service_type = world
    kwargs.setdefault("caller", as_client(client))
    kwargs.setdefault("method", "one-off")
    return book_session(
        session,
        client_id=client.client_id,
        trainer_id=trainer.trainer_id,
        start_time=start,
        service_type_id=service_type.service_type_id,
        **kwargs,
    )


def _session_count(session) -> int:
    return session.scalar(select(func.count(TrainingSession.session_id)))


def test_pack_booking_decrements_until_empty(session, world):
    _, client, service_type = world
    pack = make_pack(session, client, service_type, total_sessions=1)

    booked = _book(session, world, next_weekday_at(10), method="pack", source_id=pack.pack_id)
    assert booked.status is SessionStatus.SCHEDULED
    assert booked.session_pack_id == pack.pack_id
    assert booked.end_time - booked.start_time == timedelta(hours=1)
    session.refresh(pack)
    assert pack.sessions_remaining == 0

    with pytest.raises(ConflictError, match=NO_SESSIONS_REMAINING_MESSAGE):
        _book(session, world, next_weekday_at(12), method="pack", source_id=pack.pack_id)
    assert _session_count(session) == 1


def test_pack_for_other_service_is_rejected(session, world):
    trainer, client, _ = world
    other_service = make_service_type(session, trainer, name="Mobility")
    pack = make_pack(session, client, other_service)

    with pytest.raises(ConflictError, match="Service type does not match"):
        _book(session, world, next_weekday_at(10), method="pack", source_id=pack.pack_id)
    session.refresh(pack)
    assert pack.sessions_remaining == pack.total_sessions


def test_unknown_pack_is_not_found(session, world):
    with pytest.raises(NotFoundError):
        _book(session, world, next_weekday_at(10), method="pack", source_id=999)


def test_missing_source_id_is_validation_error(session, world):
    with pytest.raises(ValidationError, match="Pack ID is required"):
        _book(session, world, next_weekday_at(10), method="pack")
    with pytest.raises(ValidationError, match="Invalid booking method"):
        _book(session, world, next_weekday_at(10), method="barter")


def test_overlapping_booking_is_rejected(session, world):
    start = next_weekday_at(10)
    _book(session, world, start)
    with pytest.raises(ConflictError, match=SLOT_TAKEN_MESSAGE):
        _book(session, world, start + timedelta(minutes=30))
    # back-to-back is fine
    _book(session, world, start + timedelta(hours=1))
    assert _session_count(session) == 2


def test_racing_bookings_for_same_slot_only_one_wins(session, world, monkeypatch):
    # Both requests pass the overlap read; the slot index must stop the second.
    monkeypatch.setattr(booking_service, "count_conflicts", lambda *a, **kw: 0)
    start = next_weekday_at(10)

    first = _book(session, world, start)
    with pytest.raises(ConflictError, match=SLOT_TAKEN_MESSAGE):
        _book(session, world, start)

    assert _session_count(session) == 1
    assert session.get(TrainingSession, first.session_id) is not None


def test_failed_insert_leaves_pack_untouched(session, world, monkeypatch):
    _, client, service_type = world
    pack = make_pack(session, client, service_type, total_sessions=3)
    monkeypatch.setattr(booking_service, "count_conflicts", lambda *a, **kw: 0)
    start = next_weekday_at(10)

    _book(session, world, start, method="pack", source_id=pack.pack_id)
    with pytest.raises(ConflictError):
        _book(session, world, start, method="pack", source_id=pack.pack_id)

    remaining = session.scalar(
        select(SessionPack.sessions_remaining).where(SessionPack.pack_id == pack.pack_id)
    )
    assert remaining == 2


def test_aware_start_is_stored_as_naive_utc(session, world):
    local = next_weekday_at(10).replace(tzinfo=timezone(timedelta(hours=2)))
    booked = _book(session, world, local)
    assert booked.start_time == next_weekday_at(8)


def test_one_off_lands_pending_and_blocks_slot(session, world):
    start = next_weekday_at(10)
    booked = _book(session, world, start)
    assert booked.status is SessionStatus.PENDING_APPROVAL
    assert booked.session_pack_id is None
    assert booked.subscription_id is None

    with pytest.raises(ConflictError):
        _book(session, world, start)


def test_subscription_booking_with_credit(session, world):
    _, client, service_type = world
    subscription = make_subscription(session, client, service_type)
    credit = SubscriptionSessionCredit(
        subscription_id=subscription.subscription_id,
        service_type_id=service_type.service_type_id,
        credit_value=45,
    )
    session.add(credit)
    session.commit()

    booked = _book(
        session,
        world,
        next_weekday_at(10),
        method="subscription",
        source_id=subscription.subscription_id,
        use_credit=True,
    )
    assert booked.subscription_id == subscription.subscription_id
    assert booked.is_from_credit is True
    assert booked.credit_id_consumed == credit.credit_id
    session.refresh(credit)
    assert credit.status is CreditStatus.CONSUMED
    assert credit.used_at is not None

    with pytest.raises(ConflictError, match="No session credits"):
        _book(
            session,
            world,
            next_weekday_at(12),
            method="subscription",
            source_id=subscription.subscription_id,
            use_credit=True,
        )


def test_subscription_without_allocation_is_rejected(session, world):
    trainer, client, _ = world
    other_service = make_service_type(session, trainer, name="Mobility")
    subscription = make_subscription(session, client, other_service)

    with pytest.raises(ConflictError, match="does not include this service type"):
        _book(
            session,
            world,
            next_weekday_at(10),
            method="subscription",
            source_id=subscription.subscription_id,
        )


def test_client_cannot_book_for_someone_else(session, world):
    trainer, client, _ = world
    other = make_client(session, trainer, email="olga@example.com")

    with pytest.raises(AuthorizationError):
        _book(session, world, next_weekday_at(10), caller=as_client(other))
    assert _session_count(session) == 0


def test_trainer_can_only_book_own_clients(session, world):
    trainer, _, _ = world
    stranger = make_trainer(session, email="sam@example.com")

    _book(session, world, next_weekday_at(10), caller=as_trainer(trainer))
    with pytest.raises(AuthorizationError):
        _book(session, world, next_weekday_at(12), caller=as_trainer(stranger))


def test_reschedule_moves_session(session, world):
    start = next_weekday_at(10)
    booked = _book(session, world, start)
    moved = reschedule_session(
        session,
        caller=as_client(world[1]),
        session_id=booked.session_id,
        new_start=start + timedelta(hours=3),
        notes="Running late",
    )
    assert moved.start_time == start + timedelta(hours=3)
    assert moved.end_time == start + timedelta(hours=4)
    assert moved.notes == "Running late"


def test_reschedule_into_own_slot_half_hour_later_is_allowed(session, world):
    start = next_weekday_at(10)
    booked = _book(session, world, start)
    moved = reschedule_session(
        session,
        caller=as_client(world[1]),
        session_id=booked.session_id,
        new_start=start + timedelta(minutes=30),
    )
    assert moved.start_time == start + timedelta(minutes=30)


def test_client_cannot_reschedule_inside_cutoff(session, world):
    start = next_weekday_at(10)
    booked = _book(session, world, start)
    with pytest.raises(ConflictError, match="Cannot edit session within"):
        reschedule_session(
            session,
            caller=as_client(world[1]),
            session_id=booked.session_id,
            new_start=start + timedelta(hours=3),
            now=start - timedelta(hours=2),
        )

    # the trainer is not bound by the cutoff
    moved = reschedule_session(
        session,
        caller=as_trainer(world[0]),
        session_id=booked.session_id,
        new_start=start + timedelta(hours=3),
        now=start - timedelta(hours=2),
    )
    assert moved.start_time == start + timedelta(hours=3)


def test_approve_pending_request(session, world):
    trainer, client, _ = world
    booked = _book(session, world, next_weekday_at(10))

    with pytest.raises(AuthorizationError):
        update_session_status(
            session, caller=as_client(client), session_id=booked.session_id, new_status="scheduled"
        )

    approved = update_session_status(
        session, caller=as_trainer(trainer), session_id=booked.session_id, new_status="scheduled"
    )
    assert approved.status is SessionStatus.SCHEDULED


def test_decline_pending_request_frees_slot(session, world):
    trainer, _, _ = world
    start = next_weekday_at(10)
    booked = _book(session, world, start)
    declined = update_session_status(
        session,
        caller=as_trainer(trainer),
        session_id=booked.session_id,
        new_status=SessionStatus.CANCELLED_EARLY,
    )
    assert declined.status is SessionStatus.CANCELLED_EARLY
    assert declined.cancellation_reason == "declined"

    again = _book(session, world, start)
    assert again.session_id != booked.session_id


@pytest.mark.parametrize("terminal", ["completed", "no-show"])
def test_terminal_status_cannot_change(session, world, terminal):
    trainer, _, _ = world
    booked = _book(session, world, next_weekday_at(10), caller=Caller(role=Role.ADMIN))
    update_session_status(
        session, caller=as_trainer(trainer), session_id=booked.session_id, new_status="scheduled"
    )
    update_session_status(
        session, caller=as_trainer(trainer), session_id=booked.session_id, new_status=terminal
    )
    with pytest.raises(ConflictError):
        update_session_status(
            session, caller=as_trainer(trainer), session_id=booked.session_id, new_status="scheduled"
        )


def test_unknown_status_is_validation_error(session, world):
    booked = _book(session, world, next_weekday_at(10))
    with pytest.raises(ValidationError):
        update_session_status(
            session,
            caller=as_trainer(world[0]),
            session_id=booked.session_id,
            new_status="teleported",
        )
