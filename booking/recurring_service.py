from __future__ import annotations

import enum
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from booking import config
from booking.availability_service import to_instant
from booking.booking_service import (
    BookingMethod,
    check_subscription,
    claim_pack,
    parse_method,
    settle_pack,
)
from booking.entitlement_service import pack_balance
from booking.errors import ConflictError, NotFoundError, ValidationError
from booking.identity import Caller, ensure_can_schedule_for_client
from booking.session_conflicts import count_conflicts, session_end
from booking.transaction import atomic, lock_trainer
from models.payment import SessionPack
from models.scheduling import (
    ClientTimePreference,
    RecurringSchedule,
    RecurringSchedulePreference,
    ServiceType,
    SessionStatus,
    TrainingSession,
)

log = logging.getLogger(__name__)

MAX_SESSIONS_PER_SCHEDULE = 200
MAX_PREFERENCES = 10
MAX_PATTERN_NAME_LENGTH = 100

STATUS_OK = "ok"
STATUS_CONFLICT = "conflict"

Exclusion = tuple[date, time]


class PlanAction(str, enum.Enum):
    PREVIEW = "preview"
    CONFIRM = "confirm"


@dataclass
class ProposedSession:
    day: date
    clock: time
    weekday: int
    preference_id: int
    start: datetime
    status: str = STATUS_OK

    @property
    def end(self) -> datetime:
        return session_end(self.start)


@dataclass
class RecurringPlan:
    proposed: list[ProposedSession]
    warnings: list[str] = field(default_factory=list)
    schedule_id: Optional[int] = None
    sessions_created: int = 0
    already_existed: bool = False

    @property
    def bookable(self) -> list[ProposedSession]:
        return [p for p in self.proposed if p.status == STATUS_OK]

    @property
    def conflicts(self) -> int:
        return sum(1 for p in self.proposed if p.status == STATUS_CONFLICT)


def idempotency_key(
    *,
    trainer_id: int,
    client_id: int,
    preference_ids: Iterable[int],
    start_date: date,
    end_date: date,
    method: BookingMethod,
    source_id: Optional[int],
    service_type_id: int,
    excluded: Iterable[Exclusion] = (),
) -> str:
    """Same request, same key; preference and exclusion order do not matter."""
    parts = [
        str(trainer_id),
        str(client_id),
        ",".join(str(p) for p in sorted(set(preference_ids))),
        start_date.isoformat(),
        end_date.isoformat(),
        method.value,
        str(source_id or ""),
        str(service_type_id),
        ",".join(f"{d.isoformat()}T{t:%H:%M}" for d, t in sorted(set(excluded))),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def plan_occurrences(
    preferences: Sequence[ClientTimePreference],
    *,
    start_date: date,
    end_date: date,
    excluded: Iterable[Exclusion] = (),
    tz: Optional[ZoneInfo] = None,
) -> list[ProposedSession]:
    """
    Expand weekly preferences into dated occurrences inside
    [start_date, end_date], skipping excluded (date, time) pairs.
    Occurrences come back ordered by their UTC start.
    """
    if tz is None:
        tz = config.TRAINER_TIMEZONE
    skip = {(d, t.replace(second=0, microsecond=0)) for d, t in excluded}

    proposed: list[ProposedSession] = []
    for pref in preferences:
        clock = pref.start_time.replace(second=0, microsecond=0)
        day = start_date + timedelta(days=(pref.weekday - start_date.weekday()) % 7)
        while day <= end_date:
            if (day, clock) not in skip:
                proposed.append(
                    ProposedSession(
                        day=day,
                        clock=clock,
                        weekday=pref.weekday,
                        preference_id=pref.preference_id,
                        start=to_instant(day, clock, tz),
                    )
                )
            day += timedelta(weeks=1)

    if len(proposed) > MAX_SESSIONS_PER_SCHEDULE:
        raise ValidationError(
            f"Too many sessions ({len(proposed)}); "
            f"maximum is {MAX_SESSIONS_PER_SCHEDULE} per schedule."
        )
    proposed.sort(key=lambda p: (p.start, p.preference_id))
    return proposed


def _mark_conflicts(session: Session, trainer_id: int, proposed: list[ProposedSession]) -> None:
    accepted: list[ProposedSession] = []
    for item in proposed:
        clashes_with_plan = any(
            other.start < item.end and other.end > item.start for other in accepted
        )
        if clashes_with_plan or count_conflicts(
            session, trainer_id=trainer_id, start=item.start, end=item.end
        ):
            item.status = STATUS_CONFLICT
        else:
            accepted.append(item)


def _load_preferences(
    session: Session, client_id: int, preference_ids: Sequence[int]
) -> list[ClientTimePreference]:
    wanted = set(preference_ids)
    preferences = list(
        session.scalars(
            select(ClientTimePreference)
            .where(
                ClientTimePreference.preference_id.in_(sorted(wanted)),
                ClientTimePreference.client_id == client_id,
                ClientTimePreference.is_active.is_(True),
            )
            .order_by(ClientTimePreference.preference_id)
        )
    )
    if len(preferences) != len(wanted):
        raise NotFoundError("One or more time preferences were not found.")
    return preferences


def _validate_request(
    *,
    trainer_id,
    client_id,
    preference_ids,
    start_date,
    end_date,
    method,
    service_type_id,
    source_id,
    pattern_name,
) -> BookingMethod:
    if not all([trainer_id, client_id, start_date, end_date, method, service_type_id]):
        raise ValidationError("Missing required schedule data.")
    if not preference_ids or len(set(preference_ids)) > MAX_PREFERENCES:
        raise ValidationError(f"Select between 1 and {MAX_PREFERENCES} time preferences.")
    if end_date <= start_date:
        raise ValidationError("End date must be after start date.")
    if pattern_name and len(pattern_name) > MAX_PATTERN_NAME_LENGTH:
        raise ValidationError(
            f"Pattern name must be at most {MAX_PATTERN_NAME_LENGTH} characters."
        )
    booking_method = parse_method(method)
    if booking_method is BookingMethod.PACK and not source_id:
        raise ValidationError("Pack ID is required for pack booking.")
    if booking_method is BookingMethod.SUBSCRIPTION and not source_id:
        raise ValidationError("Subscription ID is required for subscription booking.")
    return booking_method


def _capacity_warning(session: Session, pack_id: int, needed: int) -> Optional[str]:
    pack = session.get(SessionPack, pack_id)
    if pack is None:
        return None
    available = pack_balance(session, pack)
    if available < needed:
        return f"Pack has {available} sessions remaining, need {needed}."
    return None


def generate_recurring_sessions(
    session: Session,
    *,
    caller: Caller,
    action: PlanAction | str,
    trainer_id: int,
    client_id: int,
    preference_ids: Sequence[int],
    start_date: date,
    end_date: date,
    method: BookingMethod | str,
    service_type_id: int,
    source_id: Optional[int] = None,
    pattern_name: Optional[str] = None,
    excluded: Iterable[Exclusion] = (),
    tz: Optional[ZoneInfo] = None,
) -> RecurringPlan:
    """
    Turn a client's weekly time preferences into sessions over a date range.

    ``preview`` lists every occurrence and marks the ones that collide with
    the trainer's calendar or with each other. ``confirm`` books the
    non-conflicting occurrences as scheduled sessions under one recurring
    schedule, charging the chosen pack or subscription, in a single
    transaction. Confirming the same request twice creates nothing new.
    """
    try:
        plan_action = PlanAction(action)
    except ValueError:
        raise ValidationError("Action must be preview or confirm.")
    booking_method = _validate_request(
        trainer_id=trainer_id,
        client_id=client_id,
        preference_ids=preference_ids,
        start_date=start_date,
        end_date=end_date,
        method=method,
        service_type_id=service_type_id,
        source_id=source_id,
        pattern_name=pattern_name,
    )
    excluded = list(excluded)

    with atomic(
        session,
        f"{plan_action.value} recurring sessions",
        conflict_message="Recurring sessions could not be created; refresh and try again.",
    ):
        ensure_can_schedule_for_client(
            session, caller, trainer_id=trainer_id, client_id=client_id, action="schedule"
        )
        if plan_action is PlanAction.CONFIRM:
            lock_trainer(session, trainer_id)
        if not session.get(ServiceType, service_type_id):
            raise NotFoundError("Service type not found.")

        preferences = _load_preferences(session, client_id, preference_ids)
        plan = RecurringPlan(
            proposed=plan_occurrences(
                preferences,
                start_date=start_date,
                end_date=end_date,
                excluded=excluded,
                tz=tz,
            )
        )
        _mark_conflicts(session, trainer_id, plan.proposed)
        if plan.conflicts:
            plan.warnings.append(
                f"{plan.conflicts} proposed sessions conflict with existing sessions "
                "and will be skipped."
            )

        if plan_action is PlanAction.PREVIEW:
            if booking_method is BookingMethod.PACK:
                warning = _capacity_warning(session, source_id, len(plan.bookable))
                if warning:
                    plan.warnings.append(warning)
            return plan

        key = idempotency_key(
            trainer_id=trainer_id,
            client_id=client_id,
            preference_ids=preference_ids,
            start_date=start_date,
            end_date=end_date,
            method=booking_method,
            source_id=source_id,
            service_type_id=service_type_id,
            excluded=excluded,
        )
        existing = session.scalars(
            select(RecurringSchedule).where(RecurringSchedule.idempotency_key == key)
        ).first()
        if existing is not None:
            log.info("Recurring schedule %s already created for this request", existing.schedule_id)
            plan.schedule_id = existing.schedule_id
            plan.already_existed = True
            return plan

        bookable = plan.bookable
        if not bookable:
            raise ConflictError("Every proposed session conflicts with an existing session.")

        pack: Optional[SessionPack] = None
        subscription_id: Optional[int] = None
        if booking_method is BookingMethod.PACK:
            pack = claim_pack(
                session,
                pack_id=source_id,
                client_id=client_id,
                trainer_id=trainer_id,
                service_type_id=service_type_id,
            )
            available = pack_balance(session, pack)
            if available < len(bookable):
                raise ConflictError(
                    f"Insufficient pack capacity: pack has {available} sessions "
                    f"remaining, need {len(bookable)}."
                )
        elif booking_method is BookingMethod.SUBSCRIPTION:
            subscription_id = check_subscription(
                session,
                subscription_id=source_id,
                client_id=client_id,
                trainer_id=trainer_id,
                service_type_id=service_type_id,
            ).subscription_id

        schedule = RecurringSchedule(
            trainer_id=trainer_id,
            client_id=client_id,
            service_type_id=service_type_id,
            pattern_name=pattern_name,
            start_date=start_date,
            end_date=end_date,
            booking_method=booking_method.value,
            session_pack_id=pack.pack_id if pack else None,
            subscription_id=subscription_id,
            total_sessions_generated=len(bookable),
            created_by=caller.describe(),
            idempotency_key=key,
        )
        schedule.preferences = [
            RecurringSchedulePreference(preference_id=pref.preference_id) for pref in preferences
        ]
        session.add(schedule)
        session.flush()

        session.add_all(
            TrainingSession(
                trainer_id=trainer_id,
                client_id=client_id,
                service_type_id=service_type_id,
                start_time=item.start,
                end_time=item.end,
                status=SessionStatus.SCHEDULED,
                session_pack_id=pack.pack_id if pack else None,
                subscription_id=subscription_id,
                recurring_schedule_id=schedule.schedule_id,
                notes=f"Recurring schedule {schedule.schedule_id}",
            )
            for item in bookable
        )
        session.flush()
        if pack is not None:
            settle_pack(session, pack)

        plan.schedule_id = schedule.schedule_id
        plan.sessions_created = len(bookable)

    log.info(
        "Created recurring schedule %s with %s sessions for client %s with trainer %s",
        plan.schedule_id,
        plan.sessions_created,
        client_id,
        trainer_id,
    )
    return plan
