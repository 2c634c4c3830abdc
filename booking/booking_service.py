from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from booking import config
from booking.entitlement_service import pack_balance, sync_pack_counter
from booking.errors import ConflictError, NotFoundError, ValidationError
from booking.identity import (
    Caller,
    Role,
    ensure_can_act_for_client,
    ensure_can_manage_session,
)
from booking.session_conflicts import count_conflicts, session_end
from booking.transaction import atomic, lock_trainer, to_utc_naive
from models.payment import (
    ClientSubscription,
    CreditStatus,
    PackStatus,
    SessionPack,
    SubscriptionSessionCredit,
    SubscriptionStatus,
)
from models.scheduling import ServiceType, SessionStatus, TrainingSession

log = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = "This time slot overlaps with an existing session."
NO_SESSIONS_REMAINING_MESSAGE = "No sessions remaining in pack."
DECLINED_REASON = "declined"


class BookingMethod(str, enum.Enum):
    PACK = "pack"
    SUBSCRIPTION = "subscription"
    ONE_OFF = "one-off"


# Trainer-driven corrections. Cancellation has its own path.
ALLOWED_STATUS_CHANGES: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING_APPROVAL: frozenset(
        {SessionStatus.SCHEDULED, SessionStatus.CANCELLED_EARLY}
    ),
    SessionStatus.SCHEDULED: frozenset({SessionStatus.COMPLETED, SessionStatus.NO_SHOW}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED_LATE: frozenset(),
    SessionStatus.CANCELLED_EARLY: frozenset(),
    SessionStatus.NO_SHOW: frozenset(),
}


def parse_method(method: BookingMethod | str) -> BookingMethod:
    try:
        return BookingMethod(method)
    except ValueError:
        raise ValidationError("Invalid booking method.")


def claim_pack(
    session: Session,
    *,
    pack_id: int,
    client_id: int,
    trainer_id: int,
    service_type_id: int,
) -> SessionPack:
    pack = session.scalars(
        select(SessionPack)
        .where(
            SessionPack.pack_id == pack_id,
            SessionPack.client_id == client_id,
            SessionPack.trainer_id == trainer_id,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if pack is None:
        raise NotFoundError("Invalid or inactive session pack.")
    if pack.status is not PackStatus.ACTIVE:
        raise ConflictError("Session pack is not active.")
    if pack.service_type_id != service_type_id:
        raise ConflictError("Service type does not match the selected pack.")
    # Balance comes from the sessions on the pack, read under the row lock.
    if pack_balance(session, pack) <= 0:
        raise ConflictError(NO_SESSIONS_REMAINING_MESSAGE)
    return pack


def settle_pack(session: Session, pack: SessionPack) -> None:
    """Bring the stored counter in line once new sessions are flushed."""
    session.flush()
    if pack_balance(session, pack) < 0:
        raise ConflictError(NO_SESSIONS_REMAINING_MESSAGE)
    sync_pack_counter(session, pack)


def check_subscription(
    session: Session,
    *,
    subscription_id: int,
    client_id: int,
    trainer_id: int,
    service_type_id: int,
) -> ClientSubscription:
    subscription = session.scalars(
        select(ClientSubscription)
        .options(selectinload(ClientSubscription.allocations))
        .where(
            ClientSubscription.subscription_id == subscription_id,
            ClientSubscription.client_id == client_id,
            ClientSubscription.trainer_id == trainer_id,
        )
        .execution_options(populate_existing=True)
    ).first()
    if subscription is None:
        raise NotFoundError("Invalid or inactive subscription.")
    if subscription.status is not SubscriptionStatus.ACTIVE:
        raise ConflictError("Subscription is not active.")
    if subscription.allocation_for(service_type_id) is None:
        raise ConflictError("Subscription does not include this service type.")
    return subscription


def _claim_credit(
    session: Session,
    *,
    subscription_id: int,
    service_type_id: int,
) -> SubscriptionSessionCredit:
    credit = session.scalars(
        select(SubscriptionSessionCredit)
        .where(
            SubscriptionSessionCredit.subscription_id == subscription_id,
            SubscriptionSessionCredit.service_type_id == service_type_id,
            SubscriptionSessionCredit.status == CreditStatus.AVAILABLE,
        )
        .order_by(SubscriptionSessionCredit.created_at, SubscriptionSessionCredit.credit_id)
        .with_for_update()
    ).first()
    if credit is None:
        raise ConflictError("No session credits available for this service type.")
    return credit


# 1. Book a Session
def book_session(
    session: Session,
    *,
    caller: Caller,
    client_id: int,
    trainer_id: int,
    start_time: datetime,
    service_type_id: int,
    method: BookingMethod | str,
    source_id: Optional[int] = None,
    use_credit: bool = False,
    notes: Optional[str] = None,
) -> TrainingSession:
    """
    Reserve a slot for a client against a pack, a subscription, or as a
    one-off request awaiting trainer approval.

    Validation, the session insert and any pack counter update or credit
    consumption commit together or not at all.
    """
    if not all([client_id, trainer_id, start_time, service_type_id, method]):
        raise ValidationError("Missing required booking data.")
    booking_method = parse_method(method)
    if booking_method is BookingMethod.PACK and not source_id:
        raise ValidationError("Pack ID is required for pack booking.")
    if booking_method is BookingMethod.SUBSCRIPTION and not source_id:
        raise ValidationError("Subscription ID is required for subscription booking.")

    start = to_utc_naive(start_time)
    end = session_end(start)

    with atomic(session, "book session", conflict_message=SLOT_TAKEN_MESSAGE):
        ensure_can_act_for_client(session, caller, client_id, action="book")
        lock_trainer(session, trainer_id)
        if not session.get(ServiceType, service_type_id):
            raise NotFoundError("Service type not found.")

        if count_conflicts(session, trainer_id=trainer_id, start=start, end=end) > 0:
            raise ConflictError(SLOT_TAKEN_MESSAGE)

        status = SessionStatus.SCHEDULED
        pack: Optional[SessionPack] = None
        subscription: Optional[ClientSubscription] = None
        credit: Optional[SubscriptionSessionCredit] = None

        if booking_method is BookingMethod.PACK:
            pack = claim_pack(
                session,
                pack_id=source_id,
                client_id=client_id,
                trainer_id=trainer_id,
                service_type_id=service_type_id,
            )
        elif booking_method is BookingMethod.SUBSCRIPTION:
            subscription = check_subscription(
                session,
                subscription_id=source_id,
                client_id=client_id,
                trainer_id=trainer_id,
                service_type_id=service_type_id,
            )
            if use_credit:
                credit = _claim_credit(
                    session,
                    subscription_id=subscription.subscription_id,
                    service_type_id=service_type_id,
                )
        elif booking_method is BookingMethod.ONE_OFF:
            status = SessionStatus.PENDING_APPROVAL
        else:
            raise ValidationError("Invalid booking method.")

        training_session = TrainingSession(
            trainer_id=trainer_id,
            client_id=client_id,
            service_type_id=service_type_id,
            start_time=start,
            end_time=end,
            status=status,
            session_pack_id=pack.pack_id if pack else None,
            subscription_id=subscription.subscription_id if subscription else None,
            is_from_credit=credit is not None,
            notes=notes,
        )
        session.add(training_session)
        session.flush()

        if credit is not None:
            credit.status = CreditStatus.CONSUMED
            credit.used_at = datetime.utcnow()
            training_session.credit_id_consumed = credit.credit_id

        if pack is not None:
            settle_pack(session, pack)

    log.info(
        "Booked session %s for client %s with trainer %s at %s via %s (%s)",
        training_session.session_id,
        client_id,
        trainer_id,
        start.isoformat(),
        booking_method.value,
        status.value,
    )
    return training_session


def _get_session_or_404(session: Session, session_id: int) -> TrainingSession:
    training_session = session.get(TrainingSession, session_id)
    if not training_session:
        raise NotFoundError("Session not found.")
    return training_session


# 2. Reschedule a Session
def reschedule_session(
    session: Session,
    *,
    caller: Caller,
    session_id: int,
    new_start: datetime,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TrainingSession:
    """
    Move an upcoming session to a new start time.

    Clients cannot move a session that starts within the edit cutoff; the
    trainer can. The new slot is re-validated, ignoring the session itself.
    """
    if new_start is None:
        raise ValidationError("Session ID and date are required.")
    if now is None:
        now = datetime.utcnow()

    start = to_utc_naive(new_start)
    end = session_end(start)

    with atomic(session, "reschedule session", conflict_message=SLOT_TAKEN_MESSAGE):
        training_session = _get_session_or_404(session, session_id)
        ensure_can_manage_session(caller, training_session, action="edit")

        if training_session.status not in (
            SessionStatus.SCHEDULED,
            SessionStatus.PENDING_APPROVAL,
        ):
            raise ConflictError("Only upcoming sessions can be rescheduled.")

        cutoff = timedelta(hours=config.CLIENT_EDIT_CUTOFF_HOURS)
        if caller.role is Role.CLIENT and training_session.start_time - now <= cutoff:
            raise ConflictError(
                f"Cannot edit session within {config.CLIENT_EDIT_CUTOFF_HOURS} hours of its start time."
            )

        lock_trainer(session, training_session.trainer_id)
        conflicts = count_conflicts(
            session,
            trainer_id=training_session.trainer_id,
            start=start,
            end=end,
            exclude_session_id=training_session.session_id,
        )
        if conflicts > 0:
            raise ConflictError("This timeslot overlaps with another session.")

        training_session.start_time = start
        training_session.end_time = end
        if notes is not None:
            training_session.notes = notes

    log.info("Rescheduled session %s to %s", session_id, start.isoformat())
    return training_session


# 3. Approve / Complete / No-show
def update_session_status(
    session: Session,
    *,
    caller: Caller,
    session_id: int,
    new_status: SessionStatus | str,
) -> TrainingSession:
    """
    Trainer status corrections. Terminal statuses never change, and moving a
    pending request into ``scheduled`` re-runs the overlap check.
    """
    try:
        target = SessionStatus(new_status)
    except ValueError:
        raise ValidationError("Unknown session status.")

    with atomic(session, "update session status", conflict_message=SLOT_TAKEN_MESSAGE):
        training_session = _get_session_or_404(session, session_id)
        ensure_can_manage_session(
            caller, training_session, action="update status", trainer_only=True
        )

        current = training_session.status
        if target not in ALLOWED_STATUS_CHANGES[current]:
            raise ConflictError(
                f"Cannot change a {current.value} session to {target.value}."
            )

        if target is SessionStatus.SCHEDULED:
            lock_trainer(session, training_session.trainer_id)
            conflicts = count_conflicts(
                session,
                trainer_id=training_session.trainer_id,
                start=training_session.start_time,
                end=training_session.end_time,
                exclude_session_id=training_session.session_id,
            )
            if conflicts > 0:
                raise ConflictError(SLOT_TAKEN_MESSAGE)
        elif target is SessionStatus.CANCELLED_EARLY:
            training_session.cancellation_reason = DECLINED_REASON

        training_session.status = target

    log.info("Session %s moved from %s to %s", session_id, current.value, target.value)
    return training_session
