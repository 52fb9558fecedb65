import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .ledger import record_event
from .models import BalanceEventType
from .money import q2, fmt, ZERO
from .schema import CommissionRate, Product, User

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_RATE = Decimal("0.05")
REFERRAL_SHARE = Decimal("0.20")
RESTORATION_MULTIPLIER = 10
FIRST_DEPOSIT_REFERRAL_SHARE = Decimal("0.10")


def commission(product_cost, rate) -> Decimal:
    return q2(Decimal(product_cost) * Decimal(rate))


def referral_payout(commission_amount) -> Decimal:
    return q2(Decimal(commission_amount) * REFERRAL_SHARE)


def restoration_bonus(original_balance, negative_amount, rate) -> Decimal:
    """Bonus paid when a fired trigger is restored: 10x the level rate on (original + negative)."""
    base = q2(original_balance) + q2(negative_amount)
    return q2(base * Decimal(rate) * RESTORATION_MULTIPLIER)


def rate_for_level(session: Session, level: int, product: Optional[Product] = None) -> Decimal:
    if product is not None:
        override = product.commission_override(level)
        if override is not None:
            return Decimal(override)
    rate = session.execute(
        select(CommissionRate.rate).where(CommissionRate.level == level)
    ).scalar_one_or_none()
    return Decimal(rate) if rate is not None else DEFAULT_COMMISSION_RATE


def pay_referrer(session: Session, user: User, commission_amount, reference_date) -> Decimal:
    """
    Credit the direct referrer with its share of ``commission_amount``.

    One level only, added to ``wallet_balance`` and never to
    ``commission_earned``. Returns the amount paid (0.00 when nothing is due).
    """
    if user.referrer_id is None or commission_amount <= 0:
        return ZERO
    bonus = referral_payout(commission_amount)
    if bonus <= 0:
        return ZERO

    session.execute(
        update(User)
        .where(User.id == user.referrer_id)
        .values(wallet_balance=User.wallet_balance + bonus)
    )
    record_event(
        session,
        user.referrer_id,
        BalanceEventType.REFERRAL_COMMISSION,
        bonus,
        reference_date,
        f"Referral commission (20% of {fmt(commission_amount)}) from user #{user.id}",
    )
    logger.info(f"Referral bonus {fmt(bonus)} paid to referrer #{user.referrer_id} for user #{user.id}")
    return bonus
