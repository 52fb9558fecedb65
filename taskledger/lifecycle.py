"""
Task lifecycle: Start, Submit and batch Submit.

An assignment moves ``pending -> in_progress -> completed``. Start debits the
product cost; Submit refunds it and adds the commission, so a completed task
nets the user exactly the commission. Every state change is a guarded update,
so a replayed or concurrent request can never credit twice.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .assignment import task_limits
from .commission import commission, pay_referrer, rate_for_level, restoration_bonus
from .errors import (
    AssignmentAlreadyCompletedError,
    DailyLimitReachedError,
    InsufficientBalanceError,
    MinimumBalanceRequiredError,
    NegativeBalanceError,
    NoPendingTasksError,
    ProductAlreadyStartedError,
    ProductNotStartedError,
    SetCompleteError,
)
from .ledger import lock_assignment, lock_user, record_event, transition_assignment, utcnow
from .models import (
    AssignmentStatus,
    BalanceEventType,
    BatchSubmitResult,
    CreditBreakdown,
    StartResult,
    SubmitResult,
    TaskLimits,
    TriggerPhase,
)
from .money import fmt, q2, ZERO
from .schema import Assignment, User
from .storage import Storage
from .trigger import MAX_SET, evaluate_trigger, restore

logger = logging.getLogger(__name__)

# Only enforced until the user has completed a first task
MINIMUM_FIRST_BALANCE = Decimal("50.00")


def roll_over_day(session: Session, user: User, today: date) -> bool:
    """Reset daily progress on the first operation of a new day. Safe to race."""
    if user.last_task_reset_date == today:
        return False
    result = session.execute(
        update(User)
        .where(
            User.id == user.id,
            or_(User.last_task_reset_date.is_(None), User.last_task_reset_date != today),
        )
        .values(tasks_completed_today=0, current_set=1, last_task_reset_date=today)
        .execution_options(synchronize_session=False)
    )
    session.expire(user)
    if result.rowcount == 1:
        logger.info(f"Daily progress reset for user {user.id} on {today}")
        return True
    return False


def check_set_gate(user: User, limits: TaskLimits) -> None:
    completed = user.tasks_completed_today
    if completed < limits.per_set:
        return
    if user.current_set >= MAX_SET:
        raise SetCompleteError(
            user.current_set,
            f"You have completed Set {user.current_set} ({limits.per_set} tasks). "
            f"All {limits.total} tasks for today are complete. Come back tomorrow!",
            tasks_completed=completed,
            tasks_per_set=limits.per_set,
            requires_action=False,
        )
    raise SetCompleteError(
        user.current_set,
        f"You have completed Set {user.current_set} ({limits.per_set} tasks). "
        f"Please contact customer care to continue to Set {user.current_set + 1}.",
        tasks_completed=completed,
        tasks_per_set=limits.per_set,
        requires_action=True,
    )


def _negative_balance(balance: Decimal, action: str, **context) -> NegativeBalanceError:
    shortfall = -balance
    return NegativeBalanceError(
        f"Your balance is negative ({fmt(balance)}). Please deposit {fmt(shortfall)} before {action}.",
        shortfall=shortfall,
        current_balance=balance,
        required_deposit=shortfall,
        **context,
    )


class TaskLifecycle:
    def __init__(self, storage: Storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or utcnow

    def start(self, user_id: int, assignment_id: int) -> StartResult:
        """Debit the product cost and move a pending assignment to ``in_progress``."""
        now = self.clock()
        today = now.date()
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            assignment = lock_assignment(session, assignment_id, user_id)
            if assignment.status == AssignmentStatus.COMPLETED:
                raise AssignmentAlreadyCompletedError(f"Assignment {assignment_id} is already completed")
            if assignment.status == AssignmentStatus.IN_PROGRESS:
                raise ProductAlreadyStartedError(f"Assignment {assignment_id} is already started")

            roll_over_day(session, user, today)
            limits = task_limits(user.level)
            check_set_gate(user, limits)

            product = assignment.product
            cost = assignment.product_cost(user.level)
            balance = q2(user.wallet_balance)

            if balance < 0:
                logger.info(f"Start blocked for user {user_id}: negative balance {fmt(balance)}")
                raise _negative_balance(balance, "continuing")

            if user.total_tasks_completed == 0 and balance < MINIMUM_FIRST_BALANCE:
                shortfall = q2(MINIMUM_FIRST_BALANCE - balance)
                logger.info(f"Start blocked for user {user_id}: new account below minimum, has {fmt(balance)}")
                raise MinimumBalanceRequiredError(
                    f"A minimum balance of {fmt(MINIMUM_FIRST_BALANCE)} is required to start your first "
                    f"product. Your current balance is {fmt(balance)}. Please deposit {fmt(shortfall)} to continue.",
                    shortfall=shortfall,
                    current_balance=balance,
                    required_deposit=shortfall,
                    minimum_required=MINIMUM_FIRST_BALANCE,
                )

            if not assignment.is_manual and balance < cost:
                shortfall = q2(cost - balance)
                logger.info(f"Start blocked for user {user_id}: needs {fmt(cost)}, has {fmt(balance)}")
                raise InsufficientBalanceError(
                    f"Insufficient balance. This product costs {fmt(cost)} but your balance is "
                    f"{fmt(balance)}. Please deposit {fmt(shortfall)} to continue.",
                    shortfall=shortfall,
                    current_balance=balance,
                    required_deposit=shortfall,
                    product_cost=cost,
                )

            rate = rate_for_level(session, user.level, product)
            firing = evaluate_trigger(
                session, user, TriggerPhase.PRE_DEBIT,
                user.current_set, user.tasks_completed_today + 1, balance, rate, today,
            )
            if firing is not None:
                transition_assignment(
                    session, assignment, (AssignmentStatus.PENDING,),
                    status=AssignmentStatus.IN_PROGRESS,
                    balance_before_start=balance,
                )
                raise firing.rejection(cost, rate)

            new_balance = q2(balance - cost)
            user.wallet_balance = new_balance
            record_event(
                session, user_id, BalanceEventType.ASSIGNMENT_DEBIT, cost, today,
                f"Started product: {product.name} - Product cost deducted",
            )
            transition_assignment(
                session, assignment, (AssignmentStatus.PENDING,),
                status=AssignmentStatus.IN_PROGRESS,
                balance_before_start=balance,
            )
            logger.info(
                f"User {user_id} started {product.name}: cost {fmt(cost)}, "
                f"balance {fmt(balance)} -> {fmt(new_balance)}"
            )
            return StartResult(
                assignment_id=assignment_id,
                product_name=product.name,
                product_cost=cost,
                previous_balance=balance,
                new_balance=new_balance,
                balance_is_negative=new_balance < 0,
            )

    def submit(self, user_id: int, assignment_id: int) -> SubmitResult:
        """
        Complete a started assignment.

        Checked in priority order: a pending balance restoration, the
        ``PRE_CREDIT`` trigger, a negative balance, and finally the normal
        refund-plus-commission credit with its referral payout.
        """
        now = self.clock()
        today = now.date()
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            assignment = lock_assignment(session, assignment_id, user_id)
            if assignment.status == AssignmentStatus.COMPLETED:
                raise AssignmentAlreadyCompletedError(f"Assignment {assignment_id} is already completed")
            if assignment.status == AssignmentStatus.PENDING:
                raise ProductNotStartedError("Please start this product first before submitting.")

            roll_over_day(session, user, today)
            limits = task_limits(user.level)
            check_set_gate(user, limits)
            completed = user.tasks_completed_today
            if completed >= limits.total:
                raise DailyLimitReachedError(
                    f"You have completed all {limits.total} tasks for today. Come back tomorrow!",
                    tasks_completed=completed,
                    total_tasks_per_day=limits.total,
                )

            product = assignment.product
            cost = assignment.product_cost(user.level)
            rate = rate_for_level(session, user.level, product)
            current_set = user.current_set
            new_count = completed + 1
            set_complete = current_set < MAX_SET and new_count == limits.per_set

            if user.pending_balance_restoration:
                details = restore(session, user, assignment, rate, new_count, now)
                return SubmitResult(
                    earned=details.bonus_commission,
                    commission=details.bonus_commission,
                    product_cost=cost,
                    final_balance=details.restored_balance,
                    tasks_completed_today=new_count,
                    current_set=current_set,
                    tasks_per_set=limits.per_set,
                    total_tasks_per_day=limits.total,
                    set_complete=set_complete,
                    balance_restored=True,
                    restoration=details,
                )

            balance = q2(user.wallet_balance)
            balance_before_start = assignment.balance_before_start
            base_balance = q2(balance_before_start) if balance_before_start is not None else balance
            firing = evaluate_trigger(
                session, user, TriggerPhase.PRE_CREDIT, current_set, new_count, base_balance, rate, today,
            )
            if firing is not None:
                raise firing.rejection(cost, rate)

            if balance < 0:
                original = q2(user.balance_before_negative)
                negative = q2(user.negative_trigger_amount) if user.negative_trigger_amount is not None else -balance
                logger.info(f"Submit blocked for user {user_id}: negative balance {fmt(balance)}")
                raise _negative_balance(
                    balance, "submitting",
                    bonus_commission=restoration_bonus(original, negative, rate),
                )

            earned = commission(cost, rate)
            if balance_before_start is not None:
                credit = q2(q2(balance_before_start) + earned - balance)
            else:
                # Rows started before balance_before_start existed only get the commission
                credit = earned

            transition_assignment(
                session, assignment, (AssignmentStatus.IN_PROGRESS,),
                status=AssignmentStatus.COMPLETED,
                amount_earned=cost,
                commission_earned=earned,
                submitted_at=now,
            )
            final_balance = q2(balance + credit)
            user.wallet_balance = final_balance
            user.commission_earned = q2(user.commission_earned) + earned
            user.tasks_completed_at_level += 1
            user.total_tasks_completed += 1
            user.tasks_completed_today = new_count
            record_event(
                session, user_id, BalanceEventType.SUBMISSION_CREDIT, credit, today,
                f"Submitted product: {product.name} - Refund: {fmt(cost)} + Commission: {fmt(earned)}",
            )
            referral_bonus = pay_referrer(session, user, earned, today)

            logger.info(
                f"User {user_id} submitted {product.name}: credit {fmt(credit)} "
                f"(commission {fmt(earned)}), balance {fmt(balance)} -> {fmt(final_balance)}"
            )
            return SubmitResult(
                earned=earned,
                commission=earned,
                product_cost=cost,
                final_balance=final_balance,
                tasks_completed_today=new_count,
                current_set=current_set,
                tasks_per_set=limits.per_set,
                total_tasks_per_day=limits.total,
                set_complete=set_complete,
                referral_bonus=referral_bonus,
                breakdown=CreditBreakdown(
                    product_cost=cost,
                    refunded=cost,
                    commission=earned,
                    total_credited=credit,
                    net_earnings=earned,
                ),
            )

    def submit_today(self, user_id: int) -> BatchSubmitResult:
        """Complete every open assignment of today at once, or none of them."""
        now = self.clock()
        today = now.date()
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            rows = session.execute(
                select(Assignment)
                .where(
                    Assignment.user_id == user_id,
                    Assignment.assigned_date == today,
                    Assignment.status != AssignmentStatus.COMPLETED,
                )
                .order_by(Assignment.id)
                .with_for_update()
            ).scalars().all()
            if not rows:
                raise NoPendingTasksError("No pending tasks for today")

            balance = q2(user.wallet_balance)
            if balance < 0:
                logger.info(f"Batch submit blocked for user {user_id}: negative balance {fmt(balance)}")
                raise _negative_balance(balance, "submitting these tasks")

            total_cost = ZERO
            total_commission = ZERO
            for assignment in rows:
                cost = assignment.product_cost(user.level)
                earned = commission(cost, rate_for_level(session, user.level, assignment.product))
                transition_assignment(
                    session, assignment, (AssignmentStatus.PENDING, AssignmentStatus.IN_PROGRESS),
                    status=AssignmentStatus.COMPLETED,
                    amount_earned=cost,
                    commission_earned=earned,
                    submitted_at=now,
                )
                total_cost += cost
                total_commission += earned

            total_cost = q2(total_cost)
            total_commission = q2(total_commission)
            total_credit = q2(total_cost + total_commission)
            final_balance = q2(balance + total_credit)

            user.wallet_balance = final_balance
            user.commission_earned = q2(user.commission_earned) + total_commission
            user.tasks_completed_at_level += len(rows)
            user.total_tasks_completed += len(rows)
            record_event(
                session, user_id, BalanceEventType.SUBMISSION_CREDIT, total_credit, today,
                f"Submitted {len(rows)} tasks - Refund: {fmt(total_cost)} + Commission: {fmt(total_commission)}",
            )

            logger.info(
                f"User {user_id} batch submitted {len(rows)} tasks: credit {fmt(total_credit)}, "
                f"balance {fmt(balance)} -> {fmt(final_balance)}"
            )
            return BatchSubmitResult(
                tasks_submitted=len(rows),
                earned=total_commission,
                total_product_cost=total_cost,
                total_commission=total_commission,
                total_credit=total_credit,
                final_balance=final_balance,
                breakdown=CreditBreakdown(
                    product_cost=total_cost,
                    refunded=total_cost,
                    commission=total_commission,
                    total_credited=total_credit,
                    net_earnings=total_commission,
                ),
            )
