import logging
import random
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import NoEligibleProductsError, ProductNotFoundError, ValidationError
from .ledger import lock_user, record_event, utcnow
from .models import (
    AssignmentRun, AssignmentStatus, BalanceEventType, ManualAssignmentResult, TaskLimits,
)
from .money import fmt, q2, ZERO
from .schema import Assignment, Product, User
from .storage import Storage

logger = logging.getLogger(__name__)

# level -> (total per day, per set); three sets per day
TASK_LIMITS = {
    1: TaskLimits(total=135, per_set=45),
    2: TaskLimits(total=150, per_set=50),
    3: TaskLimits(total=165, per_set=55),
    4: TaskLimits(total=180, per_set=60),
}

NEGLIGIBLE_ADJUSTMENT = Decimal("0.005")


def task_limits(level: Optional[int]) -> TaskLimits:
    return TASK_LIMITS.get(level, TASK_LIMITS[1])


def insert_if_absent(session: Session, **values) -> bool:
    """
    Insert one assignment row unless (user, product, day) already exists.

    Returns True when a row was inserted. A duplicate is silently skipped so
    concurrent assignment runs never fail on each other.
    """
    table = Assignment.__table__
    dialect = session.get_bind().dialect.name
    keys = ["user_id", "product_id", "assigned_date"]

    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values).on_conflict_do_nothing(index_elements=keys)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values).on_conflict_do_nothing(index_elements=keys)
    elif dialect in ("mysql", "mariadb"):
        stmt = table.insert().values(**values).prefix_with("IGNORE")
    else:
        raise NotImplementedError(f"insert-if-absent is not supported on {dialect}")

    return session.execute(stmt).rowcount > 0


def _clean_product_ids(product_ids: Iterable) -> set:
    cleaned = set()
    for raw in product_ids:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            continue
        if value > 0:
            cleaned.add(value)
    return cleaned


class AssignmentEngine:
    def __init__(
        self,
        storage: Storage,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.rng = rng or random.Random()
        self.clock = clock or utcnow

    def _today(self) -> date:
        return self.clock().date()

    def assign_tasks(self, product_ids: Optional[Iterable[int]] = None) -> AssignmentRun:
        # An empty or missing list means every active product
        restrict_to = None
        if product_ids:
            restrict_to = _clean_product_ids(product_ids)
            if not restrict_to:
                raise ValidationError("No valid products selected")

        today = self._today()
        with self.storage.transaction() as session:
            users = session.execute(
                select(User.id, User.level)
                .where(User.is_admin.is_(False), User.status == "active")
                .order_by(User.id)
            ).all()
            stmt = select(Product.id).where(Product.status == "active")
            if restrict_to:
                stmt = stmt.where(Product.id.in_(restrict_to))
            pool = list(session.execute(stmt.order_by(Product.id)).scalars())

        logger.info(f"Assignment run for {today}: {len(users)} active users, {len(pool)} eligible products")
        if not users:
            return AssignmentRun(users_assigned=0, assignments=0)
        if not pool:
            raise NoEligibleProductsError("No active products available for assignment")

        total_inserted = 0
        for user_id, level in users:
            try:
                total_inserted += self._assign_to_user(user_id, level, pool, today)
            except SQLAlchemyError:
                logger.exception(f"Assignment failed for user {user_id}, skipping")

        logger.info(f"Assignment run complete: {len(users)} users, {total_inserted} new assignments")
        return AssignmentRun(users_assigned=len(users), assignments=total_inserted)

    def _assign_to_user(self, user_id: int, level: int, pool: list, today: date) -> int:
        limits = task_limits(level)
        with self.storage.transaction() as session:
            already = set(session.execute(
                select(Assignment.product_id)
                .where(Assignment.user_id == user_id, Assignment.assigned_date == today)
            ).scalars())
            wanted = limits.total - len(already)
            if wanted <= 0:
                return 0

            candidates = [pid for pid in pool if pid not in already]
            self.rng.shuffle(candidates)

            inserted = 0
            for product_id in candidates:
                if inserted >= wanted:
                    break
                if insert_if_absent(
                    session,
                    user_id=user_id,
                    product_id=product_id,
                    assigned_date=today,
                    status=AssignmentStatus.PENDING,
                    manual_bonus=ZERO,
                    amount_earned=ZERO,
                    commission_earned=ZERO,
                    is_manual=False,
                ):
                    inserted += 1

        if inserted < wanted:
            logger.warning(f"User {user_id}: only {inserted} of {wanted} tasks assignable today")
        logger.info(f"User {user_id} (level {level}): {inserted} new assignments ({limits.per_set} per set)")
        return inserted

    def assign_product_to_user(
        self,
        user_id: int,
        product_id: int,
        manual_bonus: Decimal = ZERO,
        custom_price: Optional[Decimal] = None,
    ) -> ManualAssignmentResult:
        """
        Admin assignment of one product, debited immediately and left ``in_progress``.

        Re-assigning a product the user already has today edits that row:
        a completed one is reopened and charged in full, a pending one is
        charged in full, an in-progress one is charged (or refunded) only the
        difference to the price already debited.
        """
        bonus = q2(manual_bonus) if manual_bonus and manual_bonus > 0 else ZERO
        if custom_price is not None and custom_price < 0:
            raise ValidationError("Invalid custom price")

        today = self._today()
        with self.storage.transaction() as session:
            user = lock_user(session, user_id)
            product = session.get(Product, product_id)
            if product is None or product.status != "active":
                raise ProductNotFoundError(f"Product {product_id} not available")

            if custom_price is not None:
                price = q2(custom_price)
                stored_price = price
            else:
                price = product.price_for_level(user.level)
                stored_price = None
                if price <= 0:
                    raise ValidationError("Invalid product price for this user level")

            current_balance = q2(user.wallet_balance)
            assignment = session.execute(
                select(Assignment)
                .where(
                    Assignment.user_id == user_id,
                    Assignment.product_id == product_id,
                    Assignment.assigned_date == today,
                )
                .with_for_update()
            ).scalar_one_or_none()

            if assignment is None:
                adjustment = price
                assignment = Assignment(
                    user_id=user_id,
                    product_id=product_id,
                    assigned_date=today,
                    status=AssignmentStatus.IN_PROGRESS,
                    manual_bonus=bonus,
                    custom_price=stored_price,
                    is_manual=True,
                    balance_before_start=current_balance,
                )
                session.add(assignment)
                logger.info(f"Manual assignment for user {user_id}: new {product.name} at {fmt(price)}")
            else:
                if assignment.status == AssignmentStatus.IN_PROGRESS:
                    previous_price = assignment.product_cost(user.level)
                    adjustment = q2(price - previous_price)
                    if assignment.balance_before_start is None:
                        assignment.balance_before_start = current_balance
                    logger.info(
                        f"Manual assignment for user {user_id}: repricing {product.name} "
                        f"{fmt(previous_price)} -> {fmt(price)}"
                    )
                else:
                    adjustment = price
                    assignment.balance_before_start = current_balance
                    logger.info(
                        f"Manual assignment for user {user_id}: reopening {assignment.status.value} "
                        f"{product.name} at {fmt(price)}"
                    )
                assignment.status = AssignmentStatus.IN_PROGRESS
                assignment.manual_bonus = bonus
                assignment.custom_price = stored_price
                assignment.is_manual = True
                assignment.amount_earned = ZERO
                assignment.commission_earned = ZERO
                assignment.submitted_at = None

            if abs(adjustment) < NEGLIGIBLE_ADJUSTMENT:
                adjustment = ZERO

            new_balance = current_balance
            if adjustment > 0:
                new_balance = q2(current_balance - adjustment)
                record_event(
                    session, user_id, BalanceEventType.ASSIGNMENT_DEBIT, adjustment, today,
                    f"Manual assignment of {product.name} - Product cost deducted",
                )
            elif adjustment < 0:
                new_balance = q2(current_balance - adjustment)
                record_event(
                    session, user_id, BalanceEventType.ASSIGNMENT_REFUND, -adjustment, today,
                    f"Refund from updating {product.name} assignment",
                )
            user.wallet_balance = new_balance
            session.flush()

            logger.info(f"Manual assignment for user {user_id}: balance {fmt(current_balance)} -> {fmt(new_balance)}")
            return ManualAssignmentResult(
                assignment_id=assignment.id,
                new_balance=new_balance,
                balance_is_negative=new_balance < 0,
                product_name=product.name,
                product_price=price,
                adjustment=adjustment,
            )
