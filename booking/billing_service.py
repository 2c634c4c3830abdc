from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking import config
from models.payment import (
    BillingPeriodStatus,
    ClientSubscription,
    PaymentFrequency,
    SubscriptionBillingPeriod,
    SubscriptionStatus,
)

log = logging.getLogger(__name__)

# Days added to a period's first day to reach its last day.
PERIOD_EXTRA_DAYS = {
    PaymentFrequency.WEEKLY: 6,
    PaymentFrequency.FORTNIGHTLY: 13,
    PaymentFrequency.MONTHLY: 27,
}


@dataclass
class BillingTickResult:
    subscriptions_processed: int = 0
    periods_created: int = 0


def next_period_bounds(
    subscription: ClientSubscription,
    last_period_end: date,
) -> tuple[date, date, bool]:
    """
    Start, end and final-period flag of the period after ``last_period_end``.
    The end is clipped to the subscription's end date when that falls inside.
    """
    next_start = last_period_end + timedelta(days=1)
    next_end = next_start + timedelta(days=PERIOD_EXTRA_DAYS[subscription.payment_frequency])
    is_final = False
    if subscription.end_date and next_start <= subscription.end_date <= next_end:
        next_end = subscription.end_date
        is_final = True
    return next_start, next_end, is_final


def _roll_forward(session: Session, subscription: ClientSubscription, today: date) -> bool:
    latest = session.scalars(
        select(SubscriptionBillingPeriod)
        .where(SubscriptionBillingPeriod.subscription_id == subscription.subscription_id)
        .order_by(SubscriptionBillingPeriod.period_end_date.desc())
        .limit(1)
    ).first()
    if latest is None:
        # The first period is created when the subscription is sold.
        log.debug("No billing periods for subscription %s, skipping", subscription.subscription_id)
        return False

    next_start, next_end, is_final = next_period_bounds(subscription, latest.period_end_date)

    if next_start > today + timedelta(days=config.BILLING_HORIZON_DAYS):
        log.debug(
            "Next period %s for subscription %s is beyond the horizon",
            next_start,
            subscription.subscription_id,
        )
        return False

    if subscription.end_date and next_start > subscription.end_date:
        log.debug("Subscription %s already ended", subscription.subscription_id)
        return False

    duplicate = session.scalars(
        select(SubscriptionBillingPeriod.billing_period_id).where(
            SubscriptionBillingPeriod.subscription_id == subscription.subscription_id,
            SubscriptionBillingPeriod.period_start_date == next_start,
        )
    ).first()
    if duplicate is not None:
        log.info(
            "Period starting %s already exists for subscription %s",
            next_start,
            subscription.subscription_id,
        )
        return False

    session.add(
        SubscriptionBillingPeriod(
            subscription_id=subscription.subscription_id,
            period_start_date=next_start,
            period_end_date=next_end,
            amount_due=subscription.billing_amount,
            status=BillingPeriodStatus.DUE,
            is_final_period=is_final,
        )
    )
    log.info(
        "Generated billing period for subscription %s: %s..%s amount=%s%s",
        subscription.subscription_id,
        next_start,
        next_end,
        subscription.billing_amount,
        " (final)" if is_final else "",
    )
    return True


def generate_billing_periods(
    session: Session,
    *,
    today: Optional[date] = None,
) -> BillingTickResult:
    """
    Roll every active subscription forward by at most one billing period.

    Meant to be run by a single scheduled job. Each subscription is handled in
    its own savepoint so one failure does not stop the rest; the duplicate
    check and the (subscription, period start) unique constraint keep reruns
    from creating the same period twice.
    """
    if today is None:
        today = date.today()

    result = BillingTickResult()
    subscriptions = session.scalars(
        select(ClientSubscription)
        .where(ClientSubscription.status == SubscriptionStatus.ACTIVE)
        .order_by(ClientSubscription.subscription_id)
    ).all()
    log.info("Starting billing roll-forward for %d active subscriptions", len(subscriptions))

    for subscription in subscriptions:
        result.subscriptions_processed += 1
        try:
            with session.begin_nested():
                created = _roll_forward(session, subscription, today)
        except SQLAlchemyError:
            log.exception(
                "Failed to roll forward billing for subscription %s",
                subscription.subscription_id,
            )
            continue
        if created:
            result.periods_created += 1

    session.commit()
    log.info(
        "Billing roll-forward finished: %d processed, %d created",
        result.subscriptions_processed,
        result.periods_created,
    )
    return result
