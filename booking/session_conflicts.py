from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from booking import config
from models.scheduling import NON_BLOCKING_STATUSES, TrainingSession


def session_end(start: datetime) -> datetime:
    return start + timedelta(minutes=config.SESSION_DURATION_MINUTES)


def count_conflicts(
    session: Session,
    *,
    trainer_id: int,
    start: datetime,
    end: datetime,
    exclude_session_id: Optional[int] = None,
) -> int:
    """
    Count the trainer's slot-blocking sessions that intersect [start, end).

    Cancelled and no-show sessions never conflict. Pass
    ``exclude_session_id`` when re-validating an edit of that session.
    """
    stmt = select(func.count(TrainingSession.session_id)).where(
        TrainingSession.trainer_id == trainer_id,
        TrainingSession.status.notin_(NON_BLOCKING_STATUSES),
        and_(TrainingSession.start_time < end, TrainingSession.end_time > start),
    )
    if exclude_session_id is not None:
        stmt = stmt.where(TrainingSession.session_id != exclude_session_id)
    return session.scalar(stmt) or 0
