from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking import config
from booking.entitlement_service import PENALTY_REASON, sync_pack_counter
from booking.errors import ConflictError, NotFoundError
from booking.identity import Caller, ensure_can_manage_session
from booking.transaction import atomic
from models.payment import (
    CreditStatus,
    SessionPack,
    SubscriptionServiceAllocation,
    SubscriptionSessionCredit,
)
from models.scheduling import SessionStatus, TrainingSession

log = logging.getLogger(__name__)

LATE_CANCELLATION_REASON = "late_cancellation"
EARLY_CANCELLATION_REASON = "early_cancellation"
CANCELLATION_CREDIT_REASON = "cancellation"


@dataclass
class CancellationOutcome:
    session_id: int
    status: SessionStatus
    is_late: bool
    penalized: bool
    credit_id: Optional[int] = None
    restored_credit_id: Optional[int] = None
    already_cancelled: bool = False


def _credit_for_session(session: Session, session_id: int) -> Optional[SubscriptionSessionCredit]:
    return session.scalars(
        select(SubscriptionSessionCredit).where(
            SubscriptionSessionCredit.originating_session_id == session_id
        )
    ).first()


def _mint_credit(session: Session, training_session: TrainingSession) -> SubscriptionSessionCredit:
    """One reusable credit per cancelled subscription session, never two."""
    existing = _credit_for_session(session, training_session.session_id)
    if existing:
        return existing

    allocation = session.scalars(
        select(SubscriptionServiceAllocation).where(
            SubscriptionServiceAllocation.subscription_id == training_session.subscription_id,
            SubscriptionServiceAllocation.service_type_id == training_session.service_type_id,
        )
    ).first()
    credit_value = allocation.cost_per_session if allocation else Decimal("0")

    credit = SubscriptionSessionCredit(
        subscription_id=training_session.subscription_id,
        service_type_id=training_session.service_type_id,
        credit_value=credit_value,
        credit_reason=CANCELLATION_CREDIT_REASON,
        status=CreditStatus.AVAILABLE,
        originating_session_id=training_session.session_id,
    )
    session.add(credit)
    session.flush()
    return credit


def _restore_consumed_credit(
    session: Session,
    training_session: TrainingSession,
) -> Optional[SubscriptionSessionCredit]:
    credit = session.get(SubscriptionSessionCredit, training_session.credit_id_consumed)
    if credit is None or credit.status is not CreditStatus.CONSUMED:
        return None
    credit.status = CreditStatus.AVAILABLE
    credit.used_at = None
    return credit


def _outcome_for_cancelled(session: Session, training_session: TrainingSession) -> CancellationOutcome:
    credit = _credit_for_session(session, training_session.session_id)
    return CancellationOutcome(
        session_id=training_session.session_id,
        status=training_session.status,
        is_late=training_session.status is SessionStatus.CANCELLED_LATE,
        penalized=training_session.cancellation_reason == PENALTY_REASON,
        credit_id=credit.credit_id if credit else None,
        already_cancelled=True,
    )


def cancel_session(
    session: Session,
    *,
    caller: Caller,
    session_id: int,
    penalize: bool = False,
    now: Optional[datetime] = None,
) -> CancellationOutcome:
    """
    Cancel a session and settle its entitlement.

    A cancellation inside the late window may be penalised when the caller
    asks for it; early cancellations never are. Subscription sessions that
    were not paid for with a credit mint one credit at the allocation's
    per-session cost. A credit-funded session gets its credit back unless
    penalised. Pack sessions earn no credit or refund: an unpenalised
    cancellation simply stops counting against the pack, and the pack's
    stored balance is recomputed to match.

    Cancelling an already-cancelled session changes nothing.
    """
    if now is None:
        now = datetime.utcnow()

    with atomic(session, "cancel session"):
        training_session = session.get(TrainingSession, session_id)
        if not training_session:
            raise NotFoundError("Session not found.")
        ensure_can_manage_session(caller, training_session, action="cancel")

        if training_session.status.is_cancelled:
            return _outcome_for_cancelled(session, training_session)
        if training_session.status.is_terminal:
            raise ConflictError(
                f"A {training_session.status.value} session can no longer be cancelled."
            )

        time_until = training_session.start_time - now
        is_late = time_until <= timedelta(hours=config.LATE_CANCELLATION_HOURS)
        penalized = is_late and bool(penalize)

        if is_late:
            training_session.status = SessionStatus.CANCELLED_LATE
        else:
            training_session.status = SessionStatus.CANCELLED_EARLY

        if penalized:
            training_session.cancellation_reason = PENALTY_REASON
        elif is_late:
            training_session.cancellation_reason = LATE_CANCELLATION_REASON
        else:
            training_session.cancellation_reason = EARLY_CANCELLATION_REASON

        minted: Optional[SubscriptionSessionCredit] = None
        restored: Optional[SubscriptionSessionCredit] = None
        if training_session.subscription_id and not training_session.is_from_credit:
            minted = _mint_credit(session, training_session)
        elif training_session.is_from_credit and not penalized:
            restored = _restore_consumed_credit(session, training_session)

        if training_session.session_pack_id:
            pack = session.get(
                SessionPack, training_session.session_pack_id, with_for_update=True
            )
            remaining = sync_pack_counter(session, pack)
            log.debug("Pack %s balance now %s", pack.pack_id, remaining)

        outcome = CancellationOutcome(
            session_id=training_session.session_id,
            status=training_session.status,
            is_late=is_late,
            penalized=penalized,
            credit_id=minted.credit_id if minted else None,
            restored_credit_id=restored.credit_id if restored else None,
        )

    log.info(
        "Cancelled session %s (%s, penalized=%s, credit=%s)",
        session_id,
        outcome.status.value,
        outcome.penalized,
        outcome.credit_id,
    )
    return outcome
