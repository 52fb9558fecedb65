from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .models import AssignmentStatus, BalanceEventType, WithdrawalStatus
from .money import q2

Base = declarative_base()

Money = Numeric(12, 2, asdecimal=True)

LEVELS = (1, 2, 3, 4, 5)


def _utcnow():
    return datetime.now(timezone.utc)


def _enum(enum_cls, name):
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default="active", nullable=False)
    level = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    wallet_balance = Column(Money, default=0, nullable=False)
    commission_earned = Column(Money, default=0, nullable=False)
    tasks_completed_at_level = Column(Integer, default=0, nullable=False)
    total_tasks_completed = Column(Integer, default=0, nullable=False)

    # Daily progress; reset on the first submission of a new day
    current_set = Column(Integer, default=1, nullable=False)
    tasks_completed_today = Column(Integer, default=0, nullable=False)
    last_task_reset_date = Column(Date, nullable=True)

    referrer_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    first_deposit_bonus_paid = Column(Boolean, default=False, nullable=False)

    # Negative balance trigger, armed by an admin
    negative_balance_set = Column(Integer, nullable=True)
    negative_balance_submission = Column(Integer, nullable=True)
    negative_balance_amount = Column(Money, nullable=True)
    negative_balance_triggered = Column(Boolean, default=False, nullable=False)
    # Snapshot taken when the trigger fires, consumed by the restoration
    balance_before_negative = Column(Money, nullable=True)
    negative_trigger_amount = Column(Money, nullable=True)
    pending_balance_restoration = Column(Boolean, default=False, nullable=False)

    referrer = relationship("User", remote_side=[id])
    assignments = relationship(
        "Assignment", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def has_trigger_armed(self) -> bool:
        return (
            self.negative_balance_set is not None
            and self.negative_balance_submission is not None
            and self.negative_balance_amount is not None
        )


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    level1_price = Column(Money, default=0, nullable=False)
    level2_price = Column(Money, nullable=True)
    level3_price = Column(Money, nullable=True)
    level4_price = Column(Money, nullable=True)
    level5_price = Column(Money, nullable=True)

    # Per-level commission rate override; NULL means "use commission_rates"
    level1_commission = Column(Numeric(6, 4), nullable=True)
    level2_commission = Column(Numeric(6, 4), nullable=True)
    level3_commission = Column(Numeric(6, 4), nullable=True)
    level4_commission = Column(Numeric(6, 4), nullable=True)
    level5_commission = Column(Numeric(6, 4), nullable=True)

    def price_for_level(self, level: int):
        price = getattr(self, f"level{level}_price", None) if level in LEVELS else None
        if not price:
            price = self.level1_price
        return q2(price)

    def commission_override(self, level: int):
        if level not in LEVELS:
            return None
        return getattr(self, f"level{level}_commission")


class CommissionRate(Base):
    __tablename__ = "commission_rates"

    level = Column(Integer, primary_key=True, autoincrement=False)
    rate = Column(Numeric(6, 4), nullable=False)


class Assignment(Base):
    __tablename__ = "user_products"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", "assigned_date", name="uq_user_product_day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    assigned_date = Column(Date, nullable=False, index=True)
    status = Column(_enum(AssignmentStatus, "assignment_status"), default=AssignmentStatus.PENDING, nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    amount_earned = Column(Money, default=0, nullable=False)
    commission_earned = Column(Money, default=0, nullable=False)
    manual_bonus = Column(Money, default=0, nullable=False)
    custom_price = Column(Money, nullable=True)
    is_manual = Column(Boolean, default=False, nullable=False)
    balance_before_start = Column(Money, nullable=True)

    user = relationship("User", back_populates="assignments")
    product = relationship("Product")

    def product_cost(self, level: int):
        if self.custom_price is not None:
            return q2(self.custom_price)
        return self.product.price_for_level(level)


class BalanceEvent(Base):
    __tablename__ = "balance_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(_enum(BalanceEventType, "balance_event_type"), nullable=False)
    amount = Column(Money, nullable=False)
    reference_date = Column(Date, nullable=False)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)


class Deposit(Base):
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    wallet_address = Column(String(255), nullable=False)
    status = Column(_enum(WithdrawalStatus, "withdrawal_status"), default=WithdrawalStatus.PENDING, nullable=False)
    admin_note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
