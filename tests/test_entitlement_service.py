from datetime import datetime, timedelta

from booking.entitlement_service import PENALTY_REASON, active_sources, pack_usage
from models.payment import CreditStatus, PackStatus, SubscriptionSessionCredit
from models.scheduling import SessionStatus, TrainingSession
from tests.helpers import (
    make_client,
    make_pack,
    make_service_type,
    make_subscription,
    make_trainer,
)

START = datetime(2030, 3, 4, 9, 0)


def _pack_session(session, pack, hour_offset, status, reason=None):
    start = START + timedelta(hours=hour_offset)
    row = TrainingSession(
        trainer_id=pack.trainer_id,
        client_id=pack.client_id,
        service_type_id=pack.service_type_id,
        start_time=start,
        end_time=start + timedelta(hours=1),
        status=status,
        session_pack_id=pack.pack_id,
        cancellation_reason=reason,
    )
    session.add(row)
    session.commit()
    return row


def _setup(session):
    trainer = make_trainer(session)
    client = make_client(session, trainer)
    service_type = make_service_type(session, trainer)
    return trainer, client, service_type


def test_pack_usage_counts_booked_and_penalised_sessions(session):
    _, client, service_type = _setup(session)
    pack = make_pack(session, client, service_type, total_sessions=5)

    _pack_session(session, pack, 0, SessionStatus.SCHEDULED)
    _pack_session(session, pack, 1, SessionStatus.COMPLETED)
    _pack_session(session, pack, 2, SessionStatus.NO_SHOW)
    _pack_session(session, pack, 3, SessionStatus.CANCELLED_LATE, PENALTY_REASON)
    _pack_session(session, pack, 4, SessionStatus.CANCELLED_LATE, "late_cancellation")
    _pack_session(session, pack, 5, SessionStatus.CANCELLED_EARLY, "early_cancellation")
    _pack_session(session, pack, 6, SessionStatus.PENDING_APPROVAL)

    assert pack_usage(session, pack.pack_id) == 4


def test_active_sources_recomputes_pack_balance(session):
    trainer, client, service_type = _setup(session)
    pack = make_pack(session, client, service_type, total_sessions=3)
    _pack_session(session, pack, 0, SessionStatus.COMPLETED)

    sources = active_sources(
        session,
        client_id=client.client_id,
        trainer_id=trainer.trainer_id,
        service_type_id=service_type.service_type_id,
    )
    assert [pe.pack.pack_id for pe in sources.packs] == [pack.pack_id]
    assert sources.packs[0].sessions_available == 2
    assert sources.one_off_available is True
    assert sources.one_off_status is SessionStatus.PENDING_APPROVAL


def test_exhausted_archived_and_other_service_packs_are_excluded(session):
    trainer, client, service_type = _setup(session)
    other_service = make_service_type(session, trainer, name="Mobility")

    used_up = make_pack(session, client, service_type, total_sessions=1)
    _pack_session(session, used_up, 0, SessionStatus.SCHEDULED)

    archived = make_pack(session, client, service_type)
    archived.status = PackStatus.ARCHIVED
    session.commit()

    make_pack(session, client, other_service)

    sources = active_sources(
        session,
        client_id=client.client_id,
        trainer_id=trainer.trainer_id,
        service_type_id=service_type.service_type_id,
    )
    assert sources.packs == []


def test_subscription_needs_allocation_for_service(session):
    trainer, client, service_type = _setup(session)
    other_service = make_service_type(session, trainer, name="Mobility")
    subscription = make_subscription(session, client, service_type)

    matching = active_sources(
        session,
        client_id=client.client_id,
        trainer_id=trainer.trainer_id,
        service_type_id=service_type.service_type_id,
    )
    assert [se.subscription.subscription_id for se in matching.subscriptions] == [
        subscription.subscription_id
    ]
    assert matching.subscriptions[0].allocation.service_type_id == service_type.service_type_id

    other = active_sources(
        session,
        client_id=client.client_id,
        trainer_id=trainer.trainer_id,
        service_type_id=other_service.service_type_id,
    )
    assert other.subscriptions == []


def test_available_credits_are_counted_per_service(session):
    trainer, client, service_type = _setup(session)
    subscription = make_subscription(session, client, service_type)
    session.add_all(
        [
            SubscriptionSessionCredit(
                subscription_id=subscription.subscription_id,
                service_type_id=service_type.service_type_id,
                credit_value=45,
                status=CreditStatus.AVAILABLE,
            ),
            SubscriptionSessionCredit(
                subscription_id=subscription.subscription_id,
                service_type_id=service_type.service_type_id,
                credit_value=45,
                status=CreditStatus.CONSUMED,
            ),
        ]
    )
    session.commit()

    sources = active_sources(
        session,
        client_id=client.client_id,
        trainer_id=trainer.trainer_id,
        service_type_id=service_type.service_type_id,
    )
    assert sources.subscriptions[0].available_credits == 1
