from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from models.payment import (
    ClientSubscription,
    CreditStatus,
    PackStatus,
    SessionPack,
    SubscriptionServiceAllocation,
    SubscriptionSessionCredit,
    SubscriptionStatus,
)
from models.scheduling import SessionStatus, TrainingSession

PENALTY_REASON = "penalty"

# Sessions that use up a pack slot: anything booked or delivered, plus
# penalised cancellations. Unpenalised cancellations hand the slot back.
_PACK_CONSUMING_STATUSES = (
    SessionStatus.SCHEDULED,
    SessionStatus.COMPLETED,
    SessionStatus.NO_SHOW,
)
_CANCELLED_STATUSES = (SessionStatus.CANCELLED_LATE, SessionStatus.CANCELLED_EARLY)


def _consumes_pack_slot():
    return or_(
        TrainingSession.status.in_(_PACK_CONSUMING_STATUSES),
        and_(
            TrainingSession.status.in_(_CANCELLED_STATUSES),
            TrainingSession.cancellation_reason == PENALTY_REASON,
        ),
    )


@dataclass
class PackEntitlement:
    pack: SessionPack
    sessions_used: int

    @property
    def sessions_available(self) -> int:
        return self.pack.total_sessions - self.sessions_used


@dataclass
class SubscriptionEntitlement:
    subscription: ClientSubscription
    allocation: Optional[SubscriptionServiceAllocation]
    available_credits: int = 0


@dataclass
class Entitlements:
    """What a client may book against with a given trainer."""

    packs: list[PackEntitlement] = field(default_factory=list)
    subscriptions: list[SubscriptionEntitlement] = field(default_factory=list)
    # One-off requests are always possible and land as pending_approval.
    one_off_available: bool = True
    one_off_status: SessionStatus = SessionStatus.PENDING_APPROVAL


def pack_usage(session: Session, pack_id: int) -> int:
    """Number of sessions currently counted against a pack."""
    stmt = select(func.count(TrainingSession.session_id)).where(
        TrainingSession.session_pack_id == pack_id,
        _consumes_pack_slot(),
    )
    return session.scalar(stmt) or 0


def pack_balance(session: Session, pack: SessionPack) -> int:
    """Sessions still bookable on a pack."""
    return pack.total_sessions - pack_usage(session, pack.pack_id)


def sync_pack_counter(session: Session, pack: SessionPack) -> int:
    """
    Write the recomputed balance into ``sessions_remaining`` so the stored
    counter never disagrees with what booking and ``active_sources`` use.
    Pending changes are flushed first so they are counted.
    """
    session.flush()
    remaining = pack_balance(session, pack)
    session.execute(
        update(SessionPack)
        .where(SessionPack.pack_id == pack.pack_id)
        .values(sessions_remaining=remaining)
        .execution_options(synchronize_session=False)
    )
    session.expire(pack, ["sessions_remaining"])
    return remaining


def _usage_by_pack(session: Session, pack_ids: list[int]) -> dict[int, int]:
    if not pack_ids:
        return {}
    stmt = (
        select(TrainingSession.session_pack_id, func.count(TrainingSession.session_id))
        .where(
            TrainingSession.session_pack_id.in_(pack_ids),
            _consumes_pack_slot(),
        )
        .group_by(TrainingSession.session_pack_id)
    )
    return {pack_id: count for pack_id, count in session.execute(stmt).all()}


def count_available_credits(
    session: Session,
    *,
    subscription_id: int,
    service_type_id: int,
) -> int:
    stmt = select(func.count(SubscriptionSessionCredit.credit_id)).where(
        SubscriptionSessionCredit.subscription_id == subscription_id,
        SubscriptionSessionCredit.service_type_id == service_type_id,
        SubscriptionSessionCredit.status == CreditStatus.AVAILABLE,
    )
    return session.scalar(stmt) or 0


def active_sources(
    session: Session,
    *,
    client_id: int,
    trainer_id: int,
    service_type_id: Optional[int] = None,
) -> Entitlements:
    """
    Resolve the packs and subscriptions a client can book against.

    Pack balances are recomputed from the sessions linked to each pack rather
    than read from ``sessions_remaining``. Subscriptions qualify when they
    carry an allocation for the requested service type; per-period quotas
    are not enforced.
    """
    pack_stmt = (
        select(SessionPack)
        .where(
            SessionPack.client_id == client_id,
            SessionPack.trainer_id == trainer_id,
            SessionPack.status == PackStatus.ACTIVE,
        )
        .order_by(SessionPack.purchase_date, SessionPack.pack_id)
    )
    if service_type_id is not None:
        pack_stmt = pack_stmt.where(SessionPack.service_type_id == service_type_id)
    packs = list(session.scalars(pack_stmt))
    usage = _usage_by_pack(session, [p.pack_id for p in packs])

    pack_entitlements = [
        PackEntitlement(pack=pack, sessions_used=usage.get(pack.pack_id, 0))
        for pack in packs
    ]
    pack_entitlements = [pe for pe in pack_entitlements if pe.sessions_available > 0]

    sub_stmt = (
        select(ClientSubscription)
        .options(selectinload(ClientSubscription.allocations))
        .where(
            ClientSubscription.client_id == client_id,
            ClientSubscription.trainer_id == trainer_id,
            ClientSubscription.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(ClientSubscription.subscription_id)
    )
    subscription_entitlements: list[SubscriptionEntitlement] = []
    for subscription in session.scalars(sub_stmt):
        if service_type_id is None:
            if subscription.allocations:
                subscription_entitlements.append(
                    SubscriptionEntitlement(subscription=subscription, allocation=None)
                )
            continue
        allocation = subscription.allocation_for(service_type_id)
        if allocation is None:
            continue
        subscription_entitlements.append(
            SubscriptionEntitlement(
                subscription=subscription,
                allocation=allocation,
                available_credits=count_available_credits(
                    session,
                    subscription_id=subscription.subscription_id,
                    service_type_id=service_type_id,
                ),
            )
        )

    return Entitlements(packs=pack_entitlements, subscriptions=subscription_entitlements)
