import asyncio
import logging
import random
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .assignment import AssignmentEngine
from .config import settings
from .errors import (
    DailyLimitReachedError,
    InvalidStateTransitionError,
    InvariantViolation,
    LedgerServiceError,
    NotFoundError,
    SetCompleteError,
    TaskRejected,
)
from .lifecycle import TaskLifecycle
from .models import (
    AssignmentRun,
    AssignmentView,
    AssignProductsRequest,
    BalanceEventView,
    BalanceUpdateResult,
    BatchSubmitResult,
    CommissionRateItem,
    CommissionRatesUpdate,
    DashboardResponse,
    DepositRequest,
    DepositResult,
    ManualAssignmentRequest,
    ManualAssignmentResult,
    NegativeBalanceTriggerRequest,
    NegativeBalanceView,
    ResetUserTasksRequest,
    SetBalanceRequest,
    StartResult,
    SubmitResult,
    TaskResetResult,
    TriggerStatus,
    WithdrawalCreateRequest,
    WithdrawalDecisionRequest,
    WithdrawalStatus,
    WithdrawalView,
)
from .scheduler import DailyAssignmentScheduler
from .service import LedgerService
from .storage import Storage
from .trigger import NegativeBalanceTrigger

logger = logging.getLogger(__name__)


def http_error(e: Exception) -> HTTPException:
    if isinstance(e, TaskRejected):
        code = status.HTTP_403_FORBIDDEN if isinstance(e, (SetCompleteError, DailyLimitReachedError)) \
            else status.HTTP_400_BAD_REQUEST
        return HTTPException(status_code=code, detail=e.to_detail())
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidStateTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, InvariantViolation):
        logger.critical(f"Ledger invariant violated: {e}")
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal ledger error")
    if isinstance(e, LedgerServiceError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.error(f"Persistence failure: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database error, please try again",
    )


# ----------------------
# Dependencies
# ----------------------

def get_lifecycle(request: Request) -> TaskLifecycle:
    return request.app.state.lifecycle


def get_assignments(request: Request) -> AssignmentEngine:
    return request.app.state.assignments


def get_triggers(request: Request) -> NegativeBalanceTrigger:
    return request.app.state.triggers


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def current_user_id(x_user_id: int = Header(...)) -> int:
    if x_user_id < 1:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return x_user_id


def require_admin(request: Request, x_admin_key: str = Header(default="")) -> None:
    expected = request.app.state.admin_api_key
    if not expected or x_admin_key != expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


system_router = APIRouter(tags=["System"])
user_router = APIRouter(prefix="/user", tags=["User"])
admin_router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@system_router.get("/health")
def health_check():
    return {"status": "healthy", "service": "task-ledger"}


# ----------------------
# User routes
# ----------------------

@user_router.post("/start-product/{assignment_id}", response_model=StartResult)
def start_product(
    assignment_id: int,
    user_id: int = Depends(current_user_id),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
) -> StartResult:
    try:
        return lifecycle.start(user_id, assignment_id)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@user_router.post("/submit-product/{assignment_id}", response_model=SubmitResult)
def submit_product(
    assignment_id: int,
    user_id: int = Depends(current_user_id),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
) -> SubmitResult:
    try:
        return lifecycle.submit(user_id, assignment_id)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@user_router.post("/submit-today", response_model=BatchSubmitResult)
def submit_today(
    user_id: int = Depends(current_user_id),
    lifecycle: TaskLifecycle = Depends(get_lifecycle),
) -> BatchSubmitResult:
    try:
        return lifecycle.submit_today(user_id)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@user_router.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    user_id: int = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger),
) -> DashboardResponse:
    try:
        return ledger.dashboard(user_id)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@user_router.get("/history", response_model=list[AssignmentView])
def history(
    limit: int = 100,
    offset: int = 0,
    user_id: int = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger),
) -> list[AssignmentView]:
    try:
        return ledger.history(user_id, limit, offset)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@user_router.post("/deposit", response_model=DepositResult)
def deposit(
    request: DepositRequest,
    user_id: int = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger),
) -> DepositResult:
    try:
        return ledger.deposit(user_id, request.amount)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@user_router.post("/withdrawals", response_model=WithdrawalView, status_code=status.HTTP_201_CREATED)
def request_withdrawal(
    request: WithdrawalCreateRequest,
    user_id: int = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger),
) -> WithdrawalView:
    try:
        return ledger.request_withdrawal(user_id, request.amount, request.wallet_address)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


# ----------------------
# Admin routes
# ----------------------

@admin_router.put("/users/{user_id}/balance", response_model=BalanceUpdateResult)
def set_balance(
    user_id: int,
    request: SetBalanceRequest,
    ledger: LedgerService = Depends(get_ledger),
) -> BalanceUpdateResult:
    try:
        return ledger.set_balance(user_id, request.balance)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.get("/users/{user_id}/negative-balance-trigger", response_model=TriggerStatus)
def get_negative_balance_trigger(
    user_id: int,
    triggers: NegativeBalanceTrigger = Depends(get_triggers),
) -> TriggerStatus:
    try:
        return triggers.status(user_id)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.put("/users/{user_id}/negative-balance-trigger", response_model=TriggerStatus)
def set_negative_balance_trigger(
    user_id: int,
    request: NegativeBalanceTriggerRequest,
    triggers: NegativeBalanceTrigger = Depends(get_triggers),
) -> TriggerStatus:
    try:
        return triggers.arm(user_id, request.set_number, request.submission_number, request.amount)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.post("/trigger-assignment", response_model=AssignmentRun)
def trigger_assignment(assignments: AssignmentEngine = Depends(get_assignments)) -> AssignmentRun:
    try:
        return assignments.assign_tasks()
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.post("/assign-products", response_model=AssignmentRun)
def assign_products(
    request: AssignProductsRequest,
    assignments: AssignmentEngine = Depends(get_assignments),
) -> AssignmentRun:
    try:
        return assignments.assign_tasks(request.product_ids)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.post("/assign-product-to-user", response_model=ManualAssignmentResult)
def assign_product_to_user(
    request: ManualAssignmentRequest,
    assignments: AssignmentEngine = Depends(get_assignments),
) -> ManualAssignmentResult:
    try:
        return assignments.assign_product_to_user(
            request.user_id, request.product_id, request.manual_bonus, request.custom_price,
        )
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.post("/reset-user-tasks", response_model=TaskResetResult)
def reset_user_tasks(
    request: ResetUserTasksRequest,
    ledger: LedgerService = Depends(get_ledger),
) -> TaskResetResult:
    try:
        return ledger.reset_user_tasks(request.user_id)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.get("/commission-rates", response_model=list[CommissionRateItem])
def get_commission_rates(ledger: LedgerService = Depends(get_ledger)) -> list[CommissionRateItem]:
    try:
        return ledger.get_commission_rates()
    except SQLAlchemyError as e:
        raise http_error(e)


@admin_router.put("/commission-rates", response_model=list[CommissionRateItem])
def set_commission_rates(
    request: CommissionRatesUpdate,
    ledger: LedgerService = Depends(get_ledger),
) -> list[CommissionRateItem]:
    try:
        return ledger.set_commission_rates(request.rates)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.get("/negative-balances", response_model=list[NegativeBalanceView])
def negative_balances(ledger: LedgerService = Depends(get_ledger)) -> list[NegativeBalanceView]:
    try:
        return ledger.negative_balances()
    except SQLAlchemyError as e:
        raise http_error(e)


@admin_router.get("/balance-events", response_model=list[BalanceEventView])
def balance_events(
    user_id: Optional[int] = None,
    limit: int = 100,
    ledger: LedgerService = Depends(get_ledger),
) -> list[BalanceEventView]:
    try:
        return ledger.balance_events(user_id, limit)
    except SQLAlchemyError as e:
        raise http_error(e)


@admin_router.get("/withdrawals", response_model=list[WithdrawalView])
def list_withdrawals(
    status_filter: Optional[WithdrawalStatus] = None,
    ledger: LedgerService = Depends(get_ledger),
) -> list[WithdrawalView]:
    try:
        return ledger.list_withdrawals(status_filter)
    except SQLAlchemyError as e:
        raise http_error(e)


@admin_router.put("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalView)
def approve_withdrawal(
    withdrawal_id: int,
    request: WithdrawalDecisionRequest,
    ledger: LedgerService = Depends(get_ledger),
) -> WithdrawalView:
    try:
        return ledger.approve_withdrawal(withdrawal_id, request.admin_note)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


@admin_router.put("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalView)
def reject_withdrawal(
    withdrawal_id: int,
    request: WithdrawalDecisionRequest,
    ledger: LedgerService = Depends(get_ledger),
) -> WithdrawalView:
    try:
        return ledger.reject_withdrawal(withdrawal_id, request.admin_note)
    except (LedgerServiceError, SQLAlchemyError) as e:
        raise http_error(e)


# ----------------------
# Application
# ----------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    scheduler = None
    scheduler_task = None
    if app.state.scheduler_enabled:
        scheduler = DailyAssignmentScheduler(app.state.assignments, app.state.clock)
        scheduler_task = asyncio.create_task(scheduler.run())

    yield

    if scheduler is not None:
        await scheduler.stop()
        await scheduler_task


def create_app(
    storage: Optional[Storage] = None,
    admin_api_key: Optional[str] = None,
    scheduler_enabled: Optional[bool] = None,
    clock: Optional[Callable[[], datetime]] = None,
    rng: Optional[random.Random] = None,
    root_path: str = "",
) -> FastAPI:
    storage = storage or Storage(settings.DATABASE_URL)

    app = FastAPI(
        title="Task Ledger API",
        description="Balance ledger and task lifecycle engine for the earnings simulation",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.storage = storage
    app.state.clock = clock
    app.state.lifecycle = TaskLifecycle(storage, clock)
    app.state.assignments = AssignmentEngine(storage, rng, clock)
    app.state.triggers = NegativeBalanceTrigger(storage)
    app.state.ledger = LedgerService(storage, clock)
    app.state.admin_api_key = settings.ADMIN_API_KEY if admin_api_key is None else admin_api_key
    app.state.scheduler_enabled = settings.SCHEDULER_ENABLED if scheduler_enabled is None else scheduler_enabled

    app.include_router(system_router)
    app.include_router(user_router)
    app.include_router(admin_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
