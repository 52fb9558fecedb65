from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class BalanceEventType(str, Enum):
    ASSIGNMENT_DEBIT = "assignment_debit"
    SUBMISSION_CREDIT = "submission_credit"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    DEPOSIT = "deposit"
    REFERRAL_COMMISSION = "referral_commission"
    ASSIGNMENT_REFUND = "assignment_refund"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TriggerPhase(str, Enum):
    PRE_DEBIT = "pre_debit"     # evaluated by Start, before the product cost is debited
    PRE_CREDIT = "pre_credit"   # evaluated by Submit, before the credit is applied


class TriggerState(str, Enum):
    UNARMED = "unarmed"
    ARMED = "armed"
    FIRED = "fired"
    RESTORATION_PENDING = "restoration_pending"


# ----------------------
# Requests
# ----------------------

class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class SetBalanceRequest(BaseModel):
    balance: Decimal


class NegativeBalanceTriggerRequest(BaseModel):
    set_number: Optional[int] = Field(default=None, description="Omit or null to clear the trigger")
    submission_number: Optional[int] = None
    amount: Optional[Decimal] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"set_number": 1, "submission_number": 12, "amount": 280.00}
    })


class AssignProductsRequest(BaseModel):
    product_ids: Optional[list[int]] = None


class ManualAssignmentRequest(BaseModel):
    user_id: int
    product_id: int
    manual_bonus: Decimal = Decimal("0")
    custom_price: Optional[Decimal] = None


class ResetUserTasksRequest(BaseModel):
    user_id: int


class CommissionRateItem(BaseModel):
    level: int = Field(..., ge=1, le=5)
    rate: Decimal = Field(..., ge=0, le=1)

    model_config = ConfigDict(from_attributes=True)


class CommissionRatesUpdate(BaseModel):
    rates: list[CommissionRateItem]


class WithdrawalCreateRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    wallet_address: str = Field(..., min_length=1)


class WithdrawalDecisionRequest(BaseModel):
    admin_note: Optional[str] = None


# ----------------------
# Views
# ----------------------

class TaskLimits(BaseModel):
    total: int
    per_set: int


class UserSnapshot(BaseModel):
    id: int
    username: str
    level: int
    status: str
    wallet_balance: Decimal
    commission_earned: Decimal
    tasks_completed_at_level: int
    total_tasks_completed: int
    current_set: int
    tasks_completed_today: int
    last_task_reset_date: Optional[date] = None
    referrer_id: Optional[int] = None
    balance_before_negative: Optional[Decimal] = None
    negative_trigger_amount: Optional[Decimal] = None
    pending_balance_restoration: bool = False

    model_config = ConfigDict(from_attributes=True)


class AssignmentView(BaseModel):
    id: int
    product_id: int
    product_name: str
    status: AssignmentStatus
    assigned_date: date
    submitted_at: Optional[datetime] = None
    amount_earned: Decimal
    commission_earned: Decimal
    manual_bonus: Decimal
    custom_price: Optional[Decimal] = None
    is_manual: bool
    product_cost: Decimal


class BalanceEventView(BaseModel):
    id: int
    user_id: int
    type: BalanceEventType
    amount: Decimal
    reference_date: date
    details: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NegativeBalanceView(BaseModel):
    id: int
    username: str
    wallet_balance: Decimal

    model_config = ConfigDict(from_attributes=True)


class DashboardResponse(BaseModel):
    user: UserSnapshot
    commission_rate: Decimal
    task_limits: TaskLimits
    today_products: list[AssignmentView]
    completed_today: int


class CreditBreakdown(BaseModel):
    product_cost: Decimal
    refunded: Decimal
    commission: Decimal
    total_credited: Decimal
    net_earnings: Decimal


class StartResult(BaseModel):
    success: bool = True
    assignment_id: int
    product_name: str
    product_cost: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    balance_is_negative: bool


class RestorationDetails(BaseModel):
    original_balance: Decimal
    negative_amount: Decimal
    deposit_amount: Decimal
    base_amount: Decimal
    bonus_commission: Decimal
    restored_balance: Decimal


class SubmitResult(BaseModel):
    success: bool = True
    earned: Decimal
    commission: Decimal
    product_cost: Decimal
    final_balance: Decimal
    tasks_completed_today: int
    current_set: int
    tasks_per_set: int
    total_tasks_per_day: int
    set_complete: bool = False
    referral_bonus: Decimal = Decimal("0.00")
    balance_restored: bool = False
    breakdown: Optional[CreditBreakdown] = None
    restoration: Optional[RestorationDetails] = None


class BatchSubmitResult(BaseModel):
    success: bool = True
    tasks_submitted: int
    earned: Decimal
    total_product_cost: Decimal
    total_commission: Decimal
    total_credit: Decimal
    final_balance: Decimal
    breakdown: CreditBreakdown


class AssignmentRun(BaseModel):
    users_assigned: int
    assignments: int


class ManualAssignmentResult(BaseModel):
    success: bool = True
    assignment_id: int
    new_balance: Decimal
    balance_is_negative: bool
    product_name: str
    product_price: Decimal
    adjustment: Decimal


class BalanceUpdateResult(BaseModel):
    success: bool = True
    wallet_balance: Decimal
    restoration_pending: bool = False
    message: str


class TriggerStatus(BaseModel):
    success: bool = True
    state: TriggerState
    set_number: Optional[int] = None
    submission_number: Optional[int] = None
    amount: Optional[Decimal] = None
    message: str


class DepositResult(BaseModel):
    success: bool = True
    new_balance: Decimal
    referral_bonus: Decimal = Decimal("0.00")


class TaskResetResult(BaseModel):
    success: bool = True
    current_set: int
    tasks_per_set: int
    message: str


class WithdrawalView(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    wallet_address: str
    status: WithdrawalStatus
    admin_note: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
