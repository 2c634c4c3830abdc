from datetime import datetime, timedelta

import pytest

from booking.session_conflicts import count_conflicts, session_end
from models.scheduling import SessionStatus, TrainingSession
from tests.helpers import make_client, make_service_type, make_trainer

TEN = datetime(2030, 3, 4, 10, 0)


def _session_at(session, trainer, client, service_type, start, status=SessionStatus.SCHEDULED):
    row = TrainingSession(
        trainer_id=trainer.trainer_id,
        client_id=client.client_id,
        service_type_id=service_type.service_type_id,
        start_time=start,
        end_time=session_end(start),
        status=status,
    )
    session.add(row)
    session.commit()
    return row


@pytest.fixture()
def booked(session):
    trainer = make_trainer(session)
    client = make_client(session, trainer)
    service_type = make_service_type(session, trainer)
    row = _session_at(session, trainer, client, service_type, TEN)
    return trainer, client, service_type, row


def test_session_end_is_one_hour_later():
    assert session_end(TEN) == TEN + timedelta(hours=1)


@pytest.mark.parametrize(
    "start, expected",
    [
        (TEN, 1),
        (TEN + timedelta(minutes=30), 1),
        (TEN - timedelta(minutes=30), 1),
        # back-to-back sessions do not overlap
        (TEN + timedelta(hours=1), 0),
        (TEN - timedelta(hours=1), 0),
    ],
)
def test_overlap_is_half_open(session, booked, start, expected):
    trainer = booked[0]
    assert (
        count_conflicts(session, trainer_id=trainer.trainer_id, start=start, end=session_end(start))
        == expected
    )


@pytest.mark.parametrize(
    "status, expected",
    [
        (SessionStatus.PENDING_APPROVAL, 1),
        (SessionStatus.COMPLETED, 1),
        (SessionStatus.CANCELLED_LATE, 0),
        (SessionStatus.CANCELLED_EARLY, 0),
        (SessionStatus.NO_SHOW, 0),
    ],
)
def test_only_blocking_statuses_conflict(session, status, expected):
    trainer = make_trainer(session)
    client = make_client(session, trainer)
    service_type = make_service_type(session, trainer)
    _session_at(session, trainer, client, service_type, TEN, status=status)

    assert (
        count_conflicts(session, trainer_id=trainer.trainer_id, start=TEN, end=session_end(TEN))
        == expected
    )


def test_other_trainers_do_not_conflict(session, booked):
    other = make_trainer(session, email="otto@example.com")
    assert count_conflicts(session, trainer_id=other.trainer_id, start=TEN, end=session_end(TEN)) == 0


def test_excluded_session_is_ignored(session, booked):
    trainer, _, _, row = booked
    assert (
        count_conflicts(
            session,
            trainer_id=trainer.trainer_id,
            start=TEN + timedelta(minutes=30),
            end=session_end(TEN + timedelta(minutes=30)),
            exclude_session_id=row.session_id,
        )
        == 0
    )
