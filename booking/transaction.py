from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking.errors import BookingError, ConflictError, InternalError, NotFoundError
from models.scheduling import Trainer

log = logging.getLogger(__name__)


@contextmanager
def atomic(session: Session, action: str, *, conflict_message: str | None = None):
    """
    Run a block as one unit of work: commit on success, roll back on any
    failure. Constraint violations surface as ConflictError, other store
    failures as InternalError; anything else is re-raised unchanged.

    Usage:
        with atomic(db, "book session"):
            db.add(entity)
    """
    try:
        yield session
        session.commit()
    except BookingError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        log.info("%s rejected by constraint: %s", action, exc.orig)
        raise ConflictError(conflict_message) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        log.exception("%s failed", action)
        raise InternalError() from exc
    except Exception:
        session.rollback()
        raise


def lock_trainer(session: Session, trainer_id: int) -> Trainer:
    """
    Take a row lock on the trainer so slot checks and writes for the same
    trainer run one at a time. SQLite ignores FOR UPDATE; the partial unique
    index on sessions still holds there.
    """
    trainer = session.scalars(
        select(Trainer)
        .where(Trainer.trainer_id == trainer_id)
        .with_for_update()
    ).first()
    if trainer is None:
        raise NotFoundError("Trainer not found.")
    return trainer


def to_utc_naive(value: datetime) -> datetime:
    """Stored instants are naive UTC; aware inputs are converted."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0)
