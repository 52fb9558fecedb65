"""
Ledger store primitives shared by every service.

All functions take the session of the caller's transaction; none of them
commits. Balance events are append-only: they are inserted here and never
updated or deleted anywhere in the application.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import (
    AssignmentAlreadyCompletedError,
    AssignmentNotFoundError,
    InvalidStateTransitionError,
    UserNotFoundError,
)
from .models import AssignmentStatus, BalanceEventType
from .money import q2
from .schema import Assignment, BalanceEvent, Deposit, Notification, User

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def lock_user(session: Session, user_id: int) -> User:
    user = session.execute(
        select(User).where(User.id == user_id).with_for_update()
    ).scalar_one_or_none()
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


def lock_assignment(session: Session, assignment_id: int, user_id: Optional[int] = None) -> Assignment:
    stmt = select(Assignment).where(Assignment.id == assignment_id)
    if user_id is not None:
        stmt = stmt.where(Assignment.user_id == user_id)
    assignment = session.execute(stmt.with_for_update()).scalar_one_or_none()
    if assignment is None:
        raise AssignmentNotFoundError(f"Assignment {assignment_id} not found")
    return assignment


def transition_assignment(
    session: Session,
    assignment: Assignment,
    from_statuses: Iterable[AssignmentStatus],
    **values,
) -> None:
    """
    Move an assignment out of one of ``from_statuses``.

    The status check is part of the UPDATE itself, so of two racing requests
    only one can match the row; the other gets a state-conflict error.
    """
    from_statuses = tuple(from_statuses)
    result = session.execute(
        update(Assignment)
        .where(Assignment.id == assignment.id, Assignment.status.in_(from_statuses))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        if values.get("status") == AssignmentStatus.COMPLETED:
            raise AssignmentAlreadyCompletedError(f"Assignment {assignment.id} is already completed")
        raise InvalidStateTransitionError(
            f"Assignment {assignment.id} is not in {[s.value for s in from_statuses]}"
        )
    session.expire(assignment)


def record_event(
    session: Session,
    user_id: int,
    event_type: BalanceEventType,
    amount,
    reference_date: date,
    details: Optional[str] = None,
) -> BalanceEvent:
    event = BalanceEvent(
        user_id=user_id,
        type=event_type,
        amount=q2(amount),
        reference_date=reference_date,
        details=details,
    )
    session.add(event)
    return event


def record_deposit(session: Session, user_id: int, amount: Decimal, description: str) -> Deposit:
    deposit = Deposit(user_id=user_id, amount=q2(amount), description=description)
    session.add(deposit)
    return deposit


def notify(session: Session, user_id: int, title: str, message: str) -> Notification:
    notification = Notification(user_id=user_id, title=title, message=message)
    session.add(notification)
    return notification
