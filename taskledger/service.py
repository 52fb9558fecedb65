import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import case, func, select, update

from .assignment import task_limits
from .commission import FIRST_DEPOSIT_REFERRAL_SHARE, rate_for_level
from .errors import (
    InsufficientCommissionError,
    InvalidStateTransitionError,
    InvariantViolation,
    UserNotFoundError,
    ValidationError,
    WithdrawalNotFoundError,
)
from .ledger import lock_user, notify, record_deposit, record_event, utcnow
from .models import (
    AssignmentStatus,
    AssignmentView,
    BalanceEventType,
    BalanceEventView,
    BalanceUpdateResult,
    CommissionRateItem,
    DashboardResponse,
    DepositResult,
    NegativeBalanceView,
    TaskResetResult,
    UserSnapshot,
    WithdrawalStatus,
    WithdrawalView,
)
from .money import fmt, q2, ZERO
from .schema import Assignment, BalanceEvent, CommissionRate, User, WithdrawalRequest
from .storage import Storage
from .trigger import MAX_SET, clear_for_restoration

logger = logging.getLogger(__name__)

# History lists open work first
_STATUS_ORDER = case(
    (Assignment.status == AssignmentStatus.IN_PROGRESS, 0),
    (Assignment.status == AssignmentStatus.PENDING, 1),
    else_=2,
)


def _assignment_view(assignment: Assignment, level: int) -> AssignmentView:
    return AssignmentView(
        id=assignment.id,
        product_id=assignment.product_id,
        product_name=assignment.product.name,
        status=assignment.status,
        assigned_date=assignment.assigned_date,
        submitted_at=assignment.submitted_at,
        amount_earned=q2(assignment.amount_earned),
        commission_earned=q2(assignment.commission_earned),
        manual_bonus=q2(assignment.manual_bonus),
        custom_price=assignment.custom_price,
        is_manual=assignment.is_manual,
        product_cost=assignment.product_cost(level),
    )


class LedgerService:
    """Wallet operations outside the task lifecycle, plus the read side."""

    def __init__(self, storage: Storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or utcnow

    # ----------------------
    # Wallet
    # ----------------------

    def deposit(self, user_id: int, amount: Decimal) -> DepositResult:
        amount = q2(amount)
        if amount <= 0:
            raise ValidationError("Invalid deposit amount")

        today = self.clock().date()
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            user.wallet_balance = q2(user.wallet_balance) + amount
            record_deposit(session, user_id, amount, "Account balance deposit")
            record_event(session, user_id, BalanceEventType.DEPOSIT, amount, today, f"Deposit of {fmt(amount)}")
            notify(session, user_id, "Deposit Received", f"You have deposited +{fmt(amount)} to your account.")

            referral_bonus = ZERO
            if user.referrer_id is not None and not user.first_deposit_bonus_paid:
                referral_bonus = q2(amount * FIRST_DEPOSIT_REFERRAL_SHARE)
                session.execute(
                    update(User)
                    .where(User.id == user.referrer_id)
                    .values(wallet_balance=User.wallet_balance + referral_bonus)
                )
                record_event(
                    session, user.referrer_id, BalanceEventType.DEPOSIT, referral_bonus, today,
                    f"Referral bonus (10% of {fmt(amount)})",
                )
                notify(
                    session, user.referrer_id, "Referral Bonus Earned!",
                    f"You earned {fmt(referral_bonus)} from your referral's first deposit!",
                )
                user.first_deposit_bonus_paid = True
                logger.info(f"First deposit bonus {fmt(referral_bonus)} paid to referrer #{user.referrer_id}")

            logger.info(f"Deposit for user {user_id}: {fmt(amount)}, balance now {fmt(user.wallet_balance)}")
            return DepositResult(new_balance=q2(user.wallet_balance), referral_bonus=referral_bonus)

    def set_balance(self, user_id: int, balance: Decimal) -> BalanceUpdateResult:
        """
        Admin overwrite of a wallet balance.

        Setting a fired trigger's negative balance to exactly 0 books the
        deficit as a deposit and leaves the restoration to the user's next
        Submit. Any other increase is booked as a deposit; a decrease is a
        manual adjustment.
        """
        new_balance = q2(balance)
        today = self.clock().date()
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            old_balance = q2(user.wallet_balance)

            if new_balance == 0:
                deposited = clear_for_restoration(session, user, today)
                if deposited is not None:
                    return BalanceUpdateResult(
                        wallet_balance=ZERO,
                        restoration_pending=True,
                        message=(
                            f"Negative balance cleared with a deposit of {fmt(deposited)}. "
                            "The balance will be restored on the next submission."
                        ),
                    )

            delta = q2(new_balance - old_balance)
            if delta > 0:
                record_deposit(session, user_id, delta, "Account balance deposit")
                record_event(
                    session, user_id, BalanceEventType.DEPOSIT, delta, today,
                    f"Admin balance update: deposit of {fmt(delta)}",
                )
                notify(session, user_id, "Deposit Received", f"You have deposited +{fmt(delta)} to your account.")
            elif delta < 0:
                record_event(
                    session, user_id, BalanceEventType.MANUAL_ADJUSTMENT, delta, today,
                    f"Admin balance update: {fmt(old_balance)} -> {fmt(new_balance)}",
                )
            user.wallet_balance = new_balance

            logger.info(f"Admin set balance for user {user_id}: {fmt(old_balance)} -> {fmt(new_balance)}")
            return BalanceUpdateResult(wallet_balance=new_balance, message="Balance updated")

    # ----------------------
    # Sets
    # ----------------------

    def reset_user_tasks(self, user_id: int) -> TaskResetResult:
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            limits = task_limits(user.level)
            previous_set = user.current_set
            next_set = min(previous_set + 1, MAX_SET)

            user.current_set = next_set
            user.tasks_completed_today = 0
            notify(
                session, user_id, "Tasks Reset",
                f"Your tasks have been reset by admin. You can now continue to Set {next_set} "
                f"({limits.per_set} more tasks)!",
            )
            logger.info(f"Tasks reset for user {user_id}: set {previous_set} -> {next_set}")
            return TaskResetResult(
                current_set=next_set,
                tasks_per_set=limits.per_set,
                message=f"User task count reset to 0 and moved to Set {next_set}",
            )

    # ----------------------
    # Commission rates
    # ----------------------

    def get_commission_rates(self) -> list[CommissionRateItem]:
        with self.storage.transaction() as session:
            rows = session.execute(select(CommissionRate).order_by(CommissionRate.level)).scalars().all()
            return [CommissionRateItem.model_validate(row) for row in rows]

    def set_commission_rates(self, rates: list[CommissionRateItem]) -> list[CommissionRateItem]:
        if not rates:
            raise ValidationError("No commission rates given")
        with self.storage.transaction() as session:
            for item in rates:
                row = session.get(CommissionRate, item.level)
                if row is None:
                    session.add(CommissionRate(level=item.level, rate=item.rate))
                else:
                    row.rate = item.rate
                logger.info(f"Commission rate for level {item.level} set to {item.rate}")
        return self.get_commission_rates()

    # ----------------------
    # Withdrawals
    # ----------------------

    def request_withdrawal(self, user_id: int, amount: Decimal, wallet_address: str) -> WithdrawalView:
        amount = q2(amount)
        if amount <= 0:
            raise ValidationError("Invalid amount")
        if not wallet_address or not wallet_address.strip():
            raise ValidationError("Wallet address is required")

        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            earned = q2(user.commission_earned)
            if earned < amount:
                raise InsufficientCommissionError(
                    "Insufficient commission earned. You can only withdraw from your earned commissions.",
                    commission_earned=earned,
                    requested=amount,
                )
            pending = session.execute(
                select(WithdrawalRequest.id)
                .where(WithdrawalRequest.user_id == user_id, WithdrawalRequest.status == WithdrawalStatus.PENDING)
            ).first()
            if pending is not None:
                raise ValidationError(
                    "You already have a pending withdrawal request. Please wait for admin approval or rejection."
                )

            withdrawal = WithdrawalRequest(
                user_id=user_id,
                amount=amount,
                wallet_address=wallet_address.strip(),
                status=WithdrawalStatus.PENDING,
            )
            session.add(withdrawal)
            session.flush()
            logger.info(f"Withdrawal request #{withdrawal.id} for user {user_id}: {fmt(amount)}")
            return WithdrawalView.model_validate(withdrawal)

    def approve_withdrawal(self, withdrawal_id: int, admin_note: Optional[str] = None) -> WithdrawalView:
        now = self.clock()
        with self.storage.transaction() as session:
            withdrawal = self._lock_withdrawal(session, withdrawal_id)
            if withdrawal.status != WithdrawalStatus.PENDING:
                raise InvalidStateTransitionError(f"Withdrawal {withdrawal_id} is already {withdrawal.status.value}")

            user = lock_user(session, withdrawal.user_id)
            amount = q2(withdrawal.amount)
            if q2(user.commission_earned) < amount:
                raise InsufficientCommissionError(
                    "User has insufficient commission earned for this withdrawal",
                    commission_earned=q2(user.commission_earned),
                    requested=amount,
                )

            user.wallet_balance = q2(user.wallet_balance) - amount
            user.commission_earned = q2(user.commission_earned) - amount
            if user.commission_earned < 0:
                logger.critical(f"Withdrawal {withdrawal_id} would make commission negative for user {user.id}")
                raise InvariantViolation(f"commission_earned would go negative for user {user.id}")

            record_event(
                session, user.id, BalanceEventType.MANUAL_ADJUSTMENT, -amount, now.date(),
                f"Withdrawal #{withdrawal_id} approved",
            )
            withdrawal.status = WithdrawalStatus.APPROVED
            withdrawal.admin_note = admin_note or "Approved by admin"
            withdrawal.processed_at = now
            logger.info(f"Withdrawal #{withdrawal_id} approved: {fmt(amount)} debited from user {user.id}")
            return WithdrawalView.model_validate(withdrawal)

    def reject_withdrawal(self, withdrawal_id: int, admin_note: Optional[str] = None) -> WithdrawalView:
        """Reject a pending request, or reverse an approved one and give the money back."""
        now = self.clock()
        with self.storage.transaction() as session:
            withdrawal = self._lock_withdrawal(session, withdrawal_id)
            if withdrawal.status == WithdrawalStatus.REJECTED:
                raise InvalidStateTransitionError(f"Withdrawal {withdrawal_id} is already rejected")

            if withdrawal.status == WithdrawalStatus.APPROVED:
                user = lock_user(session, withdrawal.user_id)
                amount = q2(withdrawal.amount)
                user.wallet_balance = q2(user.wallet_balance) + amount
                user.commission_earned = q2(user.commission_earned) + amount
                record_event(
                    session, user.id, BalanceEventType.MANUAL_ADJUSTMENT, amount, now.date(),
                    f"Withdrawal #{withdrawal_id} rejected after approval, funds restored",
                )
                logger.info(f"Withdrawal #{withdrawal_id} reversed: {fmt(amount)} restored to user {user.id}")

            withdrawal.status = WithdrawalStatus.REJECTED
            withdrawal.admin_note = admin_note or "Rejected by admin"
            withdrawal.processed_at = now
            logger.info(f"Withdrawal #{withdrawal_id} rejected")
            return WithdrawalView.model_validate(withdrawal)

    def list_withdrawals(self, status: Optional[WithdrawalStatus] = None) -> list[WithdrawalView]:
        with self.storage.transaction() as session:
            stmt = select(WithdrawalRequest).order_by(WithdrawalRequest.id.desc())
            if status is not None:
                stmt = stmt.where(WithdrawalRequest.status == status)
            return [WithdrawalView.model_validate(w) for w in session.execute(stmt).scalars()]

    @staticmethod
    def _lock_withdrawal(session, withdrawal_id: int) -> WithdrawalRequest:
        withdrawal = session.execute(
            select(WithdrawalRequest).where(WithdrawalRequest.id == withdrawal_id).with_for_update()
        ).scalar_one_or_none()
        if withdrawal is None:
            raise WithdrawalNotFoundError("Withdrawal request not found")
        return withdrawal

    # ----------------------
    # Queries
    # ----------------------

    def get_user(self, user_id: int) -> UserSnapshot:
        with self.storage.transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            return UserSnapshot.model_validate(user)

    def dashboard(self, user_id: int) -> DashboardResponse:
        today = self.clock().date()
        with self.storage.transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")

            open_today = session.execute(
                select(Assignment)
                .where(
                    Assignment.user_id == user_id,
                    Assignment.assigned_date == today,
                    Assignment.status != AssignmentStatus.COMPLETED,
                )
                .order_by(_STATUS_ORDER, Assignment.id)
            ).scalars().all()
            completed_today = session.execute(
                select(func.count(Assignment.id))
                .where(
                    Assignment.user_id == user_id,
                    Assignment.assigned_date == today,
                    Assignment.status == AssignmentStatus.COMPLETED,
                )
            ).scalar_one()

            return DashboardResponse(
                user=UserSnapshot.model_validate(user),
                commission_rate=rate_for_level(session, user.level),
                task_limits=task_limits(user.level),
                today_products=[_assignment_view(a, user.level) for a in open_today],
                completed_today=completed_today,
            )

    def history(self, user_id: int, limit: int = 100, offset: int = 0) -> list[AssignmentView]:
        with self.storage.transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            rows = session.execute(
                select(Assignment)
                .where(Assignment.user_id == user_id)
                .order_by(_STATUS_ORDER, Assignment.assigned_date.desc(), Assignment.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [_assignment_view(a, user.level) for a in rows]

    def negative_balances(self) -> list[NegativeBalanceView]:
        with self.storage.transaction() as session:
            rows = session.execute(
                select(User).where(User.wallet_balance < 0).order_by(User.wallet_balance)
            ).scalars().all()
            return [NegativeBalanceView.model_validate(u) for u in rows]

    def balance_events(self, user_id: Optional[int] = None, limit: int = 100) -> list[BalanceEventView]:
        with self.storage.transaction() as session:
            stmt = select(BalanceEvent).order_by(BalanceEvent.id.desc()).limit(limit)
            if user_id is not None:
                stmt = stmt.where(BalanceEvent.user_id == user_id)
            return [BalanceEventView.model_validate(e) for e in session.execute(stmt).scalars()]
