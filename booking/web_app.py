from __future__ import annotations

import hmac
import logging
from datetime import date, datetime, time, timezone

import click
from flask import (
    Flask,
    request,
    session,
    abort,
    jsonify,
)
from sqlalchemy.exc import SQLAlchemyError

from booking import config
from booking.availability_service import resolve_availability
from booking.billing_service import generate_billing_periods
from booking.booking_service import (
    book_session,
    reschedule_session,
    update_session_status,
)
from booking.cancellation_service import cancel_session
from booking.entitlement_service import active_sources
from booking.errors import BookingError, ValidationError
from booking.identity import Caller, Role, ensure_can_act_for_client
from booking.recurring_service import PlanAction, generate_recurring_sessions
from models.base import get_session
from models.scheduling import SessionStatus

log = logging.getLogger(__name__)

CONFIRMATION_MESSAGES = {
    SessionStatus.SCHEDULED: "Session booked successfully!",
    SessionStatus.PENDING_APPROVAL: "Session request submitted for trainer approval.",
}


def confirmation_message(status: SessionStatus) -> str:
    return CONFIRMATION_MESSAGES.get(status, "Session saved.")


def require_role(*roles: str):
    """Abort with 403 unless the current session role is in the allowed roles."""
    current = session.get("role")
    normalized_current = current.lower() if isinstance(current, str) else current
    allowed = {role.lower() for role in roles}
    if normalized_current not in allowed:
        abort(403)


def current_caller() -> Caller:
    """Resolve the logged-in identity stored by the surrounding application."""
    role = session.get("role")
    if not role:
        abort(401)
    try:
        resolved = Role(role.lower())
    except ValueError:
        abort(403)
    return Caller(
        role=resolved,
        client_id=session.get("client_id"),
        trainer_id=session.get("trainer_id"),
    )


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _parse_flag(data: dict, key: str) -> bool:
    """Read an optional JSON boolean; strings such as "false" are rejected."""
    value = data.get(key, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false.")
    return value


def _parse_id(value, *, prefix: str = "") -> int | None:
    """Accept 12, "12" or the calendar UI's "pack-12" style ids."""
    if value is None or value == "":
        return None
    if isinstance(value, str) and prefix and value.startswith(prefix):
        value = value[len(prefix):]
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("Invalid identifier.")


def _parse_instant(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("Invalid date format.")


def _parse_date(value, field: str) -> date:
    if not value:
        raise ValidationError(f"{field} is required.")
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field}.")


def _iso(instant: datetime) -> str:
    return instant.replace(tzinfo=timezone.utc).isoformat()


def _parse_exclusions(items) -> list[tuple[date, time]]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValidationError("excludedSessions must be a list.")
    excluded = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Invalid excluded session.")
        day = _parse_date(item.get("date"), "date")
        try:
            clock = time.fromisoformat(str(item.get("time")))
        except ValueError:
            raise ValidationError("Invalid excluded session time.")
        excluded.append((day, clock))
    return excluded


def _parse_id_list(values) -> list[int]:
    if not isinstance(values, list):
        raise ValidationError("preferenceIds must be a list.")
    return [pid for pid in (_parse_id(v) for v in values) if pid is not None]


def create_app(session_factory=None) -> Flask:
    if session_factory is None:
        session_factory = get_session

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY

    @app.errorhandler(BookingError)
    def _booking_error(exc: BookingError):
        return jsonify({"success": False, "error": exc.public_message}), exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def _store_error(exc: SQLAlchemyError):
        log.exception("Unhandled store error")
        return jsonify({"success": False, "error": "An unexpected error occurred."}), 500

    # -------------------------------------------------
    # Booking
    # -------------------------------------------------
    @app.post("/sessions/book")
    def book():
        caller = current_caller()
        data = _payload()
        method = data.get("bookingMethod")
        if method == "pack":
            source_id = _parse_id(data.get("sourcePackId"), prefix="pack-")
        elif method == "subscription":
            source_id = _parse_id(data.get("sourceSubscriptionId"), prefix="subscription-")
        else:
            source_id = None

        with session_factory() as db:
            booked = book_session(
                db,
                caller=caller,
                client_id=_parse_id(data.get("clientId")),
                trainer_id=_parse_id(data.get("trainerId")),
                start_time=_parse_instant(data.get("sessionDate")),
                service_type_id=_parse_id(data.get("serviceTypeId")),
                method=method,
                source_id=source_id,
                use_credit=_parse_flag(data, "useCredit"),
                notes=data.get("notes"),
            )
            return jsonify(
                {
                    "success": True,
                    "sessionId": booked.session_id,
                    "status": booked.status.value,
                    "message": confirmation_message(booked.status),
                }
            )

    @app.post("/sessions/<int:session_id>/cancel")
    def cancel(session_id: int):
        caller = current_caller()
        data = _payload()
        with session_factory() as db:
            outcome = cancel_session(
                db,
                caller=caller,
                session_id=session_id,
                penalize=_parse_flag(data, "penalize"),
            )
        return jsonify(
            {
                "success": True,
                "status": outcome.status.value,
                "isLate": outcome.is_late,
                "penalized": outcome.penalized,
                "creditId": outcome.credit_id,
                "restoredCreditId": outcome.restored_credit_id,
            }
        )

    @app.patch("/sessions/<int:session_id>")
    def edit(session_id: int):
        caller = current_caller()
        data = _payload()
        with session_factory() as db:
            updated = reschedule_session(
                db,
                caller=caller,
                session_id=session_id,
                new_start=_parse_instant(data.get("sessionDate")),
                notes=data.get("notes"),
            )
            return jsonify(
                {
                    "success": True,
                    "sessionId": updated.session_id,
                    "sessionDate": _iso(updated.start_time),
                }
            )

    @app.post("/sessions/<int:session_id>/status")
    def change_status(session_id: int):
        require_role("trainer", "admin")
        caller = current_caller()
        data = _payload()
        with session_factory() as db:
            updated = update_session_status(
                db,
                caller=caller,
                session_id=session_id,
                new_status=data.get("status"),
            )
            return jsonify({"success": True, "status": updated.status.value})

    # -------------------------------------------------
    # Calendar
    # -------------------------------------------------
    @app.get("/trainers/<int:trainer_id>/availability")
    def availability(trainer_id: int):
        current_caller()
        window_start = _parse_date(request.args.get("start"), "start")
        window_end = _parse_date(request.args.get("end"), "end")
        with session_factory() as db:
            slots = resolve_availability(
                db,
                trainer_id=trainer_id,
                window_start=window_start,
                window_end=window_end,
            )
        return jsonify(
            {"slots": [{"start": _iso(slot.start), "end": _iso(slot.end)} for slot in slots]}
        )

    @app.get("/clients/<int:client_id>/entitlements")
    def entitlements(client_id: int):
        caller = current_caller()
        trainer_id = _parse_id(request.args.get("trainerId"))
        if trainer_id is None:
            raise ValidationError("trainerId is required.")
        service_type_id = _parse_id(request.args.get("serviceTypeId"))
        with session_factory() as db:
            ensure_can_act_for_client(db, caller, client_id, action="view entitlements")
            sources = active_sources(
                db,
                client_id=client_id,
                trainer_id=trainer_id,
                service_type_id=service_type_id,
            )
            return jsonify(
                {
                    "packs": [
                        {
                            "id": f"pack-{pe.pack.pack_id}",
                            "packId": pe.pack.pack_id,
                            "serviceTypeId": pe.pack.service_type_id,
                            "totalSessions": pe.pack.total_sessions,
                            "sessionsAvailable": pe.sessions_available,
                        }
                        for pe in sources.packs
                    ],
                    "subscriptions": [
                        {
                            "id": f"subscription-{se.subscription.subscription_id}",
                            "subscriptionId": se.subscription.subscription_id,
                            "costPerSession": (
                                str(se.allocation.cost_per_session) if se.allocation else None
                            ),
                            "availableCredits": se.available_credits,
                        }
                        for se in sources.subscriptions
                    ],
                    "oneOff": {
                        "available": sources.one_off_available,
                        "status": sources.one_off_status.value,
                    },
                }
            )

    @app.post("/clients/<int:client_id>/recurring-sessions")
    def recurring_sessions(client_id: int):
        caller = current_caller()
        data = _payload()
        method = data.get("bookingMethod")
        if method == "pack":
            source_id = _parse_id(data.get("sessionPackId"), prefix="pack-")
        elif method == "subscription":
            source_id = _parse_id(data.get("subscriptionId"), prefix="subscription-")
        else:
            source_id = None

        with session_factory() as db:
            plan = generate_recurring_sessions(
                db,
                caller=caller,
                action=data.get("action", PlanAction.PREVIEW.value),
                trainer_id=_parse_id(data.get("trainerId")),
                client_id=client_id,
                preference_ids=_parse_id_list(data.get("preferenceIds")),
                start_date=_parse_date(data.get("startDate"), "startDate"),
                end_date=_parse_date(data.get("endDate"), "endDate"),
                method=method,
                service_type_id=_parse_id(data.get("serviceTypeId")),
                source_id=source_id,
                pattern_name=data.get("patternName"),
                excluded=_parse_exclusions(data.get("excludedSessions")),
            )
        if plan.schedule_id is None:
            return jsonify(
                {
                    "success": True,
                    "proposedSessions": [
                        {
                            "date": item.day.isoformat(),
                            "time": item.clock.strftime("%H:%M"),
                            "weekday": item.weekday,
                            "preferenceId": item.preference_id,
                            "start": _iso(item.start),
                            "status": item.status,
                        }
                        for item in plan.proposed
                    ],
                    "warnings": plan.warnings,
                    "stats": {
                        "totalProposed": len(plan.proposed),
                        "conflicts": plan.conflicts,
                        "warnings": len(plan.warnings),
                    },
                }
            )
        if plan.already_existed:
            message = "Idempotent: already created"
        else:
            message = f"Created {plan.sessions_created} recurring sessions"
        return jsonify(
            {
                "success": True,
                "recurringScheduleId": plan.schedule_id,
                "sessionsCreated": plan.sessions_created,
                "message": message,
            }
        )

    # -------------------------------------------------
    # Billing
    # -------------------------------------------------
    @app.post("/billing/tick")
    def billing_tick():
        token = request.headers.get("X-Scheduler-Token", "")
        if not config.SCHEDULER_TOKEN or not hmac.compare_digest(token, config.SCHEDULER_TOKEN):
            abort(403)
        with session_factory() as db:
            result = generate_billing_periods(db)
        return jsonify(
            {
                "subscriptionsProcessed": result.subscriptions_processed,
                "periodsCreated": result.periods_created,
            }
        )

    @app.cli.command("billing-tick")
    def billing_tick_command():
        """Roll subscription billing periods forward (run from cron)."""
        with session_factory() as db:
            result = generate_billing_periods(db)
        click.echo(
            f"Processed {result.subscriptions_processed} subscriptions, "
            f"created {result.periods_created} billing periods."
        )

    return app


app = create_app()
