from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from booking.errors import AuthorizationError, NotFoundError
from models.client import Client
from models.scheduling import TrainingSession

log = logging.getLogger(__name__)


class Role(str, enum.Enum):
    CLIENT = "client"
    TRAINER = "trainer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    """Authenticated identity as resolved by the surrounding application."""

    role: Role
    client_id: Optional[int] = None
    trainer_id: Optional[int] = None

    def describe(self) -> str:
        if self.role is Role.CLIENT:
            return f"client:{self.client_id}"
        if self.role is Role.TRAINER:
            return f"trainer:{self.trainer_id}"
        return "admin"


def _deny(caller: Caller, action: str, target: str) -> AuthorizationError:
    log.warning("Denied %s on %s for %s", action, target, caller.describe())
    return AuthorizationError()


def ensure_can_act_for_client(
    session: Session,
    caller: Caller,
    client_id: int,
    *,
    action: str = "book",
) -> Client:
    """
    A client may act for itself; a trainer may act for its own clients;
    admins may act for anyone.
    """
    client = session.get(Client, client_id)
    if caller.role is Role.CLIENT:
        if caller.client_id != client_id:
            raise _deny(caller, action, f"client:{client_id}")
    elif caller.role is Role.TRAINER:
        if client is None or client.trainer_id != caller.trainer_id:
            raise _deny(caller, action, f"client:{client_id}")
    if client is None:
        raise NotFoundError("Client not found.")
    return client


def ensure_can_manage_session(
    caller: Caller,
    training_session: TrainingSession,
    *,
    action: str,
    trainer_only: bool = False,
) -> None:
    if caller.role is Role.ADMIN:
        return
    if caller.role is Role.TRAINER and caller.trainer_id == training_session.trainer_id:
        return
    if (
        not trainer_only
        and caller.role is Role.CLIENT
        and caller.client_id == training_session.client_id
    ):
        return
    raise _deny(caller, action, f"session:{training_session.session_id}")


def ensure_can_schedule_for_client(
    session: Session,
    caller: Caller,
    *,
    trainer_id: int,
    client_id: int,
    action: str = "schedule",
) -> Client:
    """Only the client's own trainer, or an admin, may plan on the trainer's calendar."""
    if caller.role is Role.CLIENT:
        raise _deny(caller, action, f"client:{client_id}")
    if caller.role is Role.TRAINER and caller.trainer_id != trainer_id:
        raise _deny(caller, action, f"trainer:{trainer_id}")
    client = ensure_can_act_for_client(session, caller, client_id, action=action)
    if client.trainer_id != trainer_id:
        raise _deny(caller, action, f"client:{client_id}")
    return client
