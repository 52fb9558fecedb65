"""
Unit Tests for the Negative-Balance Trigger

Tests cover:
1. Arming and clearing validation
2. Firing on Start and on Submit
3. One-shot behaviour
4. Clearing by admin and balance restoration
"""

import pytest
from decimal import Decimal

from sqlalchemy import select

from taskledger.errors import NegativeBalanceError, NegativeBalanceTriggered, UserNotFoundError, ValidationError
from taskledger.lifecycle import TaskLifecycle
from taskledger.models import AssignmentStatus, BalanceEventType, TriggerState
from taskledger.schema import Assignment, BalanceEvent, Deposit, Notification, User
from taskledger.service import LedgerService
from taskledger.trigger import NegativeBalanceTrigger


def event_types(storage, user_id):
    with storage.transaction() as session:
        return list(session.execute(
            select(BalanceEvent.type).where(BalanceEvent.user_id == user_id).order_by(BalanceEvent.id)
        ).scalars())


class TestArmTrigger:
    """Tests for admin arming and clearing."""

    def test_arm_sets_rule(self, storage, make_user, reload):
        user_id = make_user()
        status = NegativeBalanceTrigger(storage).arm(user_id, 1, 12, Decimal("280.00"))

        assert status.state == TriggerState.ARMED
        user = reload(User, user_id)
        assert user.negative_balance_set == 1
        assert user.negative_balance_submission == 12
        assert user.negative_balance_amount == Decimal("280.00")
        assert user.negative_balance_triggered is False

    @pytest.mark.parametrize("set_number, submission, amount", [
        (0, 1, Decimal("10")),
        (4, 1, Decimal("10")),
        (1, 0, Decimal("10")),
        (1, 1, Decimal("0")),
        (1, 1, None),
    ])
    def test_arm_validation(self, storage, make_user, set_number, submission, amount):
        user_id = make_user()

        with pytest.raises(ValidationError):
            NegativeBalanceTrigger(storage).arm(user_id, set_number, submission, amount)

    def test_arm_without_set_clears(self, storage, make_user, reload):
        user_id = make_user()
        triggers = NegativeBalanceTrigger(storage)
        triggers.arm(user_id, 2, 5, Decimal("100"))

        status = triggers.arm(user_id, None)

        assert status.state == TriggerState.UNARMED
        assert reload(User, user_id).negative_balance_set is None

    def test_arm_unknown_user(self, storage):
        with pytest.raises(UserNotFoundError):
            NegativeBalanceTrigger(storage).arm(999, 1, 1, Decimal("10"))


class TestTriggerOnStart:
    """Tests for the trigger firing before the Start debit."""

    def test_fires_and_commits(self, storage, clock, make_user, make_product, make_assignment, reload):
        """The forced negative balance survives the rejection."""
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        NegativeBalanceTrigger(storage).arm(user_id, 1, 1, Decimal("280.00"))

        with pytest.raises(NegativeBalanceTriggered) as exc:
            TaskLifecycle(storage, clock).start(user_id, assignment_id)

        detail = exc.value.to_detail()
        assert detail["error"] == "NEGATIVE_BALANCE_TRIGGERED"
        assert detail["required_deposit"] == 280.0
        assert detail["bonus_commission"] == 2140.0
        assert detail["trigger_info"]["phase"] == "pre_debit"

        user = reload(User, user_id)
        assert user.wallet_balance == Decimal("-280.00")
        assert user.negative_balance_triggered is True
        assert user.balance_before_negative == Decimal("4000.00")
        assert user.negative_trigger_amount == Decimal("280.00")

        assignment = reload(Assignment, assignment_id)
        assert assignment.status == AssignmentStatus.IN_PROGRESS
        assert assignment.balance_before_start == Decimal("4000.00")
        assert event_types(storage, user_id) == [BalanceEventType.MANUAL_ADJUSTMENT]

    def test_other_position_does_not_fire(self, storage, clock, make_user, make_product, make_assignment):
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        NegativeBalanceTrigger(storage).arm(user_id, 1, 2, Decimal("280.00"))

        result = TaskLifecycle(storage, clock).start(user_id, assignment_id)

        assert result.new_balance == Decimal("3900.00")


class TestTriggerOnSubmit:
    """Tests for the trigger firing before the Submit credit."""

    def test_fires_with_balance_before_start(self, storage, clock, make_user, make_product, make_assignment, reload):
        user_id = make_user(balance="1000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        lifecycle = TaskLifecycle(storage, clock)
        lifecycle.start(user_id, assignment_id)
        NegativeBalanceTrigger(storage).arm(user_id, 1, 1, Decimal("280.00"))

        with pytest.raises(NegativeBalanceTriggered) as exc:
            lifecycle.submit(user_id, assignment_id)

        assert exc.value.context["trigger_info"]["phase"] == "pre_credit"
        user = reload(User, user_id)
        assert user.wallet_balance == Decimal("-280.00")
        assert user.balance_before_negative == Decimal("1000.00")
        assert reload(Assignment, assignment_id).status == AssignmentStatus.IN_PROGRESS

    def test_trigger_is_one_shot(self, storage, clock, make_user, make_product, make_assignment):
        """A fired trigger never fires twice; the user is told to deposit instead."""
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        lifecycle = TaskLifecycle(storage, clock)
        triggers = NegativeBalanceTrigger(storage)
        triggers.arm(user_id, 1, 1, Decimal("280.00"))

        with pytest.raises(NegativeBalanceTriggered):
            lifecycle.start(user_id, assignment_id)
        with pytest.raises(NegativeBalanceError) as exc:
            lifecycle.submit(user_id, assignment_id)

        assert exc.value.context["bonus_commission"] == Decimal("2140.00")
        assert event_types(storage, user_id) == [BalanceEventType.MANUAL_ADJUSTMENT]
        with pytest.raises(ValidationError):
            triggers.arm(user_id, 2, 1, Decimal("50.00"))
        assert triggers.status(user_id).state == TriggerState.FIRED


class TestRestoration:
    """Tests for clearing the negative balance and restoring on Submit."""

    def test_restoration_math(self, storage, clock, make_user, make_product, make_assignment, reload):
        """4000 balance, 280 trigger at 5%: bonus 2140.00, restored 6420.00."""
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        lifecycle = TaskLifecycle(storage, clock)
        triggers = NegativeBalanceTrigger(storage)
        triggers.arm(user_id, 1, 1, Decimal("280.00"))
        with pytest.raises(NegativeBalanceTriggered):
            lifecycle.start(user_id, assignment_id)

        update = LedgerService(storage, clock).set_balance(user_id, Decimal("0"))

        assert update.restoration_pending is True
        assert update.wallet_balance == Decimal("0.00")
        assert triggers.status(user_id).state == TriggerState.RESTORATION_PENDING

        result = lifecycle.submit(user_id, assignment_id)

        assert result.balance_restored is True
        assert result.restoration.bonus_commission == Decimal("2140.00")
        assert result.restoration.base_amount == Decimal("4280.00")
        assert result.final_balance == Decimal("6420.00")
        assert result.referral_bonus == Decimal("0.00")

        user = reload(User, user_id)
        assert user.wallet_balance == Decimal("6420.00")
        assert user.commission_earned == Decimal("2140.00")
        assert user.tasks_completed_today == 1
        assert user.pending_balance_restoration is False
        assert user.negative_balance_triggered is False
        assert user.balance_before_negative is None
        assert user.negative_balance_set is None

        assignment = reload(Assignment, assignment_id)
        assert assignment.status == AssignmentStatus.COMPLETED
        assert assignment.amount_earned == Decimal("4280.00")
        assert assignment.commission_earned == Decimal("2140.00")

        assert event_types(storage, user_id) == [
            BalanceEventType.MANUAL_ADJUSTMENT,
            BalanceEventType.DEPOSIT,
            BalanceEventType.SUBMISSION_CREDIT,
        ]
        assert triggers.status(user_id).state == TriggerState.UNARMED

    def test_clearing_records_deposit_and_notification(self, storage, clock, make_user, make_product, make_assignment):
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        NegativeBalanceTrigger(storage).arm(user_id, 1, 1, Decimal("280.00"))
        with pytest.raises(NegativeBalanceTriggered):
            TaskLifecycle(storage, clock).start(user_id, assignment_id)

        LedgerService(storage, clock).set_balance(user_id, Decimal("0"))

        with storage.transaction() as session:
            deposits = session.execute(select(Deposit).where(Deposit.user_id == user_id)).scalars().all()
            notes = session.execute(select(Notification).where(Notification.user_id == user_id)).scalars().all()
        assert [d.amount for d in deposits] == [Decimal("280.00")]
        assert [n.title for n in notes] == ["Deposit Received"]

    def test_nonzero_balance_is_plain_update(self, storage, clock, make_user, make_product, make_assignment, reload):
        """Only setting exactly 0 starts a restoration."""
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        NegativeBalanceTrigger(storage).arm(user_id, 1, 1, Decimal("280.00"))
        with pytest.raises(NegativeBalanceTriggered):
            TaskLifecycle(storage, clock).start(user_id, assignment_id)

        update = LedgerService(storage, clock).set_balance(user_id, Decimal("-100.00"))

        assert update.restoration_pending is False
        assert reload(User, user_id).pending_balance_restoration is False

    def test_rearm_after_restoration(self, storage, clock, make_user, make_product, make_assignment):
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))
        lifecycle = TaskLifecycle(storage, clock)
        triggers = NegativeBalanceTrigger(storage)
        triggers.arm(user_id, 1, 1, Decimal("280.00"))
        with pytest.raises(NegativeBalanceTriggered):
            lifecycle.start(user_id, assignment_id)
        LedgerService(storage, clock).set_balance(user_id, Decimal("0"))
        lifecycle.submit(user_id, assignment_id)

        status = triggers.arm(user_id, 1, 5, Decimal("50.00"))

        assert status.state == TriggerState.ARMED


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
