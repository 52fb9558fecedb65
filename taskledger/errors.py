from decimal import Decimal
from typing import Any


class LedgerServiceError(Exception):
    # Writes made before the error are committed instead of rolled back.
    persist_changes = False


class ValidationError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class ProductNotFoundError(NotFoundError):
    pass


class AssignmentNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class ProductAlreadyStartedError(InvalidStateTransitionError):
    pass


class AssignmentAlreadyCompletedError(InvalidStateTransitionError):
    pass


class NoEligibleProductsError(LedgerServiceError):
    pass


class NoPendingTasksError(LedgerServiceError):
    pass


class InvariantViolation(LedgerServiceError):
    """A ledger invariant would break. Never expected when the contracts hold."""


class TaskRejected(LedgerServiceError):
    """
    Named business-rule denial.

    ``code`` is the machine-readable condition (``SET_1_COMPLETE``,
    ``NEGATIVE_BALANCE`` ...) and ``context`` carries what the caller needs to
    act on it, e.g. ``current_balance``, ``shortfall``, ``required_deposit``.
    """

    code = "TASK_REJECTED"

    def __init__(self, message: str, code: str = None, **context: Any):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.context = context

    def to_detail(self) -> dict:
        detail = {"error": self.code, "message": self.message}
        for key, value in self.context.items():
            detail[key] = float(value) if isinstance(value, Decimal) else value
        return detail


class SetCompleteError(TaskRejected):
    def __init__(self, current_set: int, message: str, **context: Any):
        super().__init__(message, code=f"SET_{current_set}_COMPLETE", current_set=current_set, **context)


class DailyLimitReachedError(TaskRejected):
    code = "DAILY_LIMIT_REACHED"


class NegativeBalanceError(TaskRejected):
    code = "NEGATIVE_BALANCE"


class NegativeBalanceTriggered(TaskRejected):
    code = "NEGATIVE_BALANCE_TRIGGERED"
    persist_changes = True


class InsufficientBalanceError(TaskRejected):
    code = "INSUFFICIENT_BALANCE"


class MinimumBalanceRequiredError(TaskRejected):
    code = "MINIMUM_BALANCE_REQUIRED"


class ProductNotStartedError(TaskRejected):
    code = "PRODUCT_NOT_STARTED"


class InsufficientCommissionError(TaskRejected):
    code = "INSUFFICIENT_COMMISSION"
