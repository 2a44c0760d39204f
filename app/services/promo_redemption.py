"""
Promo code redemption.

A redemption is a straight line of checks, each of which can end it with a
specific message: eligibility, code lookup, usage cap, expiry. The usage
counter is then claimed with one conditional UPDATE (zero rows affected means
the cap was hit by a concurrent redemption), and the subscription upsert
commits in the same transaction, so current_uses never exceeds max_uses and a
failed upsert never consumes a use.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.base import utcnow
from app.models.promo_code import PromoCode, PromoCodeType
from app.models.subscription import SubscriptionStatus, SubscriptionTier
from app.services.subscription_store import get_subscription, upsert_subscription

logger = logging.getLogger(__name__)

MSG_UNAUTHORIZED = "Unauthorized"
MSG_MISSING_CODE = "Please enter a promo code"
MSG_ALREADY_PREMIUM = "You already have an active premium subscription"
MSG_INVALID_CODE = "Invalid promo code"
MSG_LIMIT_REACHED = "This promo code has reached its usage limit"
MSG_EXPIRED = "This promo code has expired"
MSG_APPLY_FAILED = "Failed to apply promo code. Please try again."


@dataclass(frozen=True)
class RedemptionResult:
    success: bool
    message: str
    status_code: int
    expires_at: Optional[datetime] = None


def _rejected(message: str, status_code: int = 400) -> RedemptionResult:
    return RedemptionResult(success=False, message=message, status_code=status_code)


def normalize_promo_code(raw: Any) -> str:
    # Anything but a string (numbers, lists, null) counts as no code
    if not isinstance(raw, str):
        return ""
    return raw.strip().upper()


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def last_redeemable_moment(day: date) -> datetime:
    """Expiry for a code redeemable through the whole of `day` (UTC)."""
    return datetime.combine(day, time.max)


def describe_duration(promo: PromoCode) -> str:
    if promo.type == PromoCodeType.UNLIMITED.value:
        return "lifetime"
    months = promo.duration_months
    return f"{months} month{'s' if months > 1 else ''}"


def _claim_promo_use(db: Session, promo_id: int, now: datetime) -> bool:
    """Atomically take one use of the code. False when the cap (or expiry) won the race."""
    result = db.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo_id,
            PromoCode.active.is_(True),
            or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            or_(PromoCode.expires_at.is_(None), PromoCode.expires_at >= now),
        )
        .values(current_uses=PromoCode.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def redeem_promo_code(
    db: Session, user_id: Optional[str], raw_code: Any, now: Optional[datetime] = None
) -> RedemptionResult:
    if not user_id:
        return _rejected(MSG_UNAUTHORIZED, 401)

    code = normalize_promo_code(raw_code)
    if not code:
        return _rejected(MSG_MISSING_CODE)

    now = now or utcnow()
    try:
        # Effective subscription: an expired promo grant no longer blocks a new code
        current = get_subscription(db, user_id, now)
        if current.is_premium:
            return _rejected(MSG_ALREADY_PREMIUM)

        promo = db.query(PromoCode).filter(
            PromoCode.code == code,
            PromoCode.active.is_(True),
        ).first()
        if not promo:
            return _rejected(MSG_INVALID_CODE)

        if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
            return _rejected(MSG_LIMIT_REACHED)

        if promo.expires_at is not None and promo.expires_at < now:
            return _rejected(MSG_EXPIRED)

        if promo.type == PromoCodeType.UNLIMITED.value:
            expires_at = None
        elif promo.duration_months and promo.duration_months > 0:
            expires_at = add_months(now, promo.duration_months)
        else:
            logger.error("Promo code %s is a duration code without duration_months", code)
            return _rejected(MSG_INVALID_CODE)

        duration_text = describe_duration(promo)

        if not _claim_promo_use(db, promo.id, now):
            db.rollback()
            logger.info("Promo code %s lost the usage race for user %s", code, user_id)
            return _rejected(MSG_LIMIT_REACHED)

        upsert_subscription(
            db,
            user_id,
            {
                "tier": SubscriptionTier.PROMO.value,
                "status": SubscriptionStatus.ACTIVE.value,
                "promo_code": code,
                "expires_at": expires_at,
            },
            commit=False,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to redeem promo code %s for user %s", code, user_id)
        return _rejected(MSG_APPLY_FAILED, 500)

    logger.info("User %s redeemed promo code %s (%s)", user_id, code, duration_text)
    return RedemptionResult(
        success=True,
        message=f"Success! You now have Premium access for {duration_text}",
        status_code=200,
        expires_at=expires_at,
    )


def create_promo_code(
    db: Session,
    code: str,
    promo_type: str = PromoCodeType.DURATION.value,
    duration_months: Optional[int] = None,
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    active: bool = True,
) -> PromoCode:
    """Admin helper: validate and store a new code (normalized to uppercase)."""
    normalized = normalize_promo_code(code)
    if not normalized:
        raise ValueError("Promo code cannot be empty")
    if promo_type not in {t.value for t in PromoCodeType}:
        raise ValueError(f"Unknown promo code type: {promo_type}")
    if promo_type == PromoCodeType.DURATION.value and (not duration_months or duration_months < 1):
        raise ValueError("Duration promo codes need duration_months >= 1")
    if max_uses is not None and max_uses < 1:
        raise ValueError("max_uses must be at least 1 when set")

    promo = PromoCode(
        code=normalized,
        active=active,
        max_uses=max_uses,
        current_uses=0,
        expires_at=expires_at,
        type=promo_type,
        duration_months=duration_months if promo_type == PromoCodeType.DURATION.value else None,
    )
    db.add(promo)
    db.commit()
    db.refresh(promo)
    logger.info("Created promo code %s (%s)", normalized, promo_type)
    return promo
