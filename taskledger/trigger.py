"""
Negative-balance trigger and restoration.

An admin arms a one-shot rule ``(set, submission, amount)`` on a user. When the
user's upcoming task in that set reaches that submission index, the wallet is
forced to ``-amount`` and the task is held ``in_progress``. Once the admin
clears the balance back to zero, the next Submit restores the original balance
plus the deposit plus a 10x commission bonus.

    unarmed -> armed -> fired -> restoration_pending -> (cleared) unarmed
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from .commission import commission, restoration_bonus
from .errors import NegativeBalanceTriggered, ValidationError
from .ledger import lock_user, notify, record_deposit, record_event, transition_assignment
from .models import (
    AssignmentStatus, BalanceEventType, RestorationDetails, TriggerPhase, TriggerState, TriggerStatus,
)
from .money import fmt, q2, ZERO
from .schema import Assignment, User
from .storage import Storage

logger = logging.getLogger(__name__)

MAX_SET = 3


@dataclass
class TriggerFiring:
    phase: TriggerPhase
    set_number: int
    submission: int
    original_balance: Decimal
    negative_amount: Decimal
    potential_bonus: Decimal

    def rejection(self, product_cost: Decimal, rate: Decimal) -> NegativeBalanceTriggered:
        return NegativeBalanceTriggered(
            f"This product requires a deposit to complete. Your balance is now "
            f"-{fmt(self.negative_amount)}. Deposit this amount to continue and earn 10x commission!",
            shortfall=self.negative_amount,
            current_balance=-self.negative_amount,
            required_deposit=self.negative_amount,
            product_cost=product_cost,
            normal_commission=commission(product_cost, rate),
            bonus_commission=self.potential_bonus,
            trigger_info={
                "phase": self.phase.value,
                "set": self.set_number,
                "submission": self.submission,
                "original_balance": float(self.original_balance),
                "negative_amount": float(self.negative_amount),
                "potential_bonus": float(self.potential_bonus),
            },
        )


def trigger_state(user: User) -> TriggerState:
    if user.pending_balance_restoration:
        return TriggerState.RESTORATION_PENDING
    if user.negative_balance_triggered:
        return TriggerState.FIRED
    if user.has_trigger_armed:
        return TriggerState.ARMED
    return TriggerState.UNARMED


def evaluate_trigger(
    session: Session,
    user: User,
    phase: TriggerPhase,
    current_set: int,
    next_index: int,
    base_balance: Decimal,
    rate: Decimal,
    reference_date: date,
) -> Optional[TriggerFiring]:
    """
    Fire the user's trigger if it is armed for (``current_set``, ``next_index``).

    Shared by Start (``PRE_DEBIT``) and Submit (``PRE_CREDIT``). On a match the
    wallet is set to ``-amount`` and ``base_balance`` is kept for the
    restoration; the caller must stop its normal debit/credit flow.
    """
    if not user.has_trigger_armed or user.negative_balance_triggered:
        return None
    if current_set != user.negative_balance_set or next_index != user.negative_balance_submission:
        return None

    negative_amount = q2(user.negative_balance_amount)
    base_balance = q2(base_balance)
    bonus = restoration_bonus(base_balance, negative_amount, rate)

    user.wallet_balance = -negative_amount
    user.negative_balance_triggered = True
    user.balance_before_negative = base_balance
    user.negative_trigger_amount = negative_amount

    record_event(
        session,
        user.id,
        BalanceEventType.MANUAL_ADJUSTMENT,
        -negative_amount,
        reference_date,
        f"Automatic negative balance triggered on {phase.value} (Set {current_set}, Task {next_index}) "
        f"- Balance set to -{fmt(negative_amount)}",
    )
    logger.warning(
        f"Negative balance trigger fired for user {user.id} ({phase.value}): set {current_set}, "
        f"task {next_index}, balance {fmt(base_balance)} -> -{fmt(negative_amount)}, potential bonus {fmt(bonus)}"
    )
    return TriggerFiring(
        phase=phase,
        set_number=current_set,
        submission=next_index,
        original_balance=base_balance,
        negative_amount=negative_amount,
        potential_bonus=bonus,
    )


def clear_for_restoration(session: Session, user: User, reference_date: date) -> Optional[Decimal]:
    """
    Admin zeroed a fired trigger's negative balance: book the deficit as a
    deposit and defer the restoration to the next Submit.

    Returns the deposit amount, or None when the clearing rule does not apply.
    """
    balance = q2(user.wallet_balance)
    if balance >= 0 or not user.negative_balance_triggered or user.balance_before_negative is None:
        return None

    deposit_amount = -balance
    record_deposit(session, user.id, deposit_amount, "Account balance deposit")
    record_event(
        session, user.id, BalanceEventType.DEPOSIT, deposit_amount, reference_date,
        f"Negative balance cleared by deposit of {fmt(deposit_amount)}",
    )
    notify(session, user.id, "Deposit Received", f"You have deposited +{fmt(deposit_amount)} to your account.")

    user.wallet_balance = ZERO
    user.pending_balance_restoration = True
    logger.info(f"Negative balance cleared for user {user.id}: deposit {fmt(deposit_amount)}, restoration pending")
    return deposit_amount


def restore(
    session: Session,
    user: User,
    assignment: Assignment,
    rate: Decimal,
    tasks_completed_today: int,
    now: datetime,
) -> RestorationDetails:
    original_balance = q2(user.balance_before_negative)
    negative_amount = q2(user.negative_trigger_amount)
    # The clearing deposit is assumed to equal the negative amount
    deposit_amount = negative_amount
    bonus = restoration_bonus(original_balance, negative_amount, rate)
    base_amount = original_balance + negative_amount
    restored_balance = q2(original_balance + deposit_amount + bonus)

    transition_assignment(
        session, assignment, (AssignmentStatus.IN_PROGRESS,),
        status=AssignmentStatus.COMPLETED,
        amount_earned=base_amount,
        commission_earned=bonus,
        submitted_at=now,
    )

    user.wallet_balance = restored_balance
    user.commission_earned = q2(user.commission_earned) + bonus
    user.tasks_completed_at_level += 1
    user.total_tasks_completed += 1
    user.tasks_completed_today = tasks_completed_today
    _disarm(user)

    record_event(
        session, user.id, BalanceEventType.SUBMISSION_CREDIT, restored_balance, now.date(),
        f"Balance restored after clearing negative: original {fmt(original_balance)} + deposit "
        f"{fmt(deposit_amount)} + 10x commission {fmt(bonus)} = {fmt(restored_balance)}",
    )
    logger.info(
        f"Balance restored for user {user.id}: {fmt(original_balance)} + {fmt(deposit_amount)} "
        f"+ {fmt(bonus)} = {fmt(restored_balance)}"
    )
    return RestorationDetails(
        original_balance=original_balance,
        negative_amount=negative_amount,
        deposit_amount=deposit_amount,
        base_amount=base_amount,
        bonus_commission=bonus,
        restored_balance=restored_balance,
    )


def _disarm(user: User) -> None:
    user.negative_balance_set = None
    user.negative_balance_submission = None
    user.negative_balance_amount = None
    user.negative_balance_triggered = False
    user.balance_before_negative = None
    user.negative_trigger_amount = None
    user.pending_balance_restoration = False


class NegativeBalanceTrigger:
    """Admin operations on a user's trigger."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def arm(
        self,
        user_id: int,
        set_number: Optional[int],
        submission_number: Optional[int] = None,
        amount: Optional[Decimal] = None,
    ) -> TriggerStatus:
        if set_number is None:
            return self.clear(user_id)

        if not 1 <= set_number <= MAX_SET:
            raise ValidationError(f"Set number must be between 1 and {MAX_SET}")
        if submission_number is None or submission_number < 1:
            raise ValidationError("Submission number must be at least 1")
        if amount is None or amount <= 0:
            raise ValidationError("Negative balance amount must be greater than 0")

        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            if user.negative_balance_triggered:
                raise ValidationError("Trigger already fired; clear the negative balance first")
            user.negative_balance_set = set_number
            user.negative_balance_submission = submission_number
            user.negative_balance_amount = q2(amount)
            user.negative_balance_triggered = False

        logger.info(
            f"Negative balance trigger armed for user {user_id}: set {set_number}, "
            f"submission {submission_number}, amount {fmt(amount)}"
        )
        return TriggerStatus(
            state=TriggerState.ARMED,
            set_number=set_number,
            submission_number=submission_number,
            amount=q2(amount),
            message=(
                f"Negative balance trigger set: -{fmt(amount)} will be applied when user reaches "
                f"submission {submission_number} in set {set_number}"
            ),
        )

    def clear(self, user_id: int) -> TriggerStatus:
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            if user.negative_balance_triggered:
                raise ValidationError("Trigger already fired; clear the negative balance first")
            user.negative_balance_set = None
            user.negative_balance_submission = None
            user.negative_balance_amount = None
        logger.info(f"Negative balance trigger cleared for user {user_id}")
        return TriggerStatus(state=TriggerState.UNARMED, message="Negative balance trigger cleared")

    def status(self, user_id: int) -> TriggerStatus:
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            state = trigger_state(user)
            return TriggerStatus(
                state=state,
                set_number=user.negative_balance_set,
                submission_number=user.negative_balance_submission,
                amount=user.negative_balance_amount,
                message=f"Trigger is {state.value}",
            )
