"""
Subscription store: the single source of truth for a user's entitlement.

Reads never rewrite rows. A promo grant whose expires_at has passed is still
stored as tier=promo until something rewrites it; resolve_effective_subscription()
is the one place that turns a stored row into what the user is entitled to now,
and every consumer goes through it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.db.base import utcnow
from app.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from app.schemas.subscription import SubscriptionResponse

logger = logging.getLogger(__name__)

PREMIUM_TIERS = (SubscriptionTier.PREMIUM.value, SubscriptionTier.PROMO.value)

_UPSERT_FIELDS = {
    "tier",
    "status",
    "expires_at",
    "stripe_customer_id",
    "stripe_subscription_id",
    "promo_code",
}


@dataclass(frozen=True)
class UserSubscription:
    tier: str
    status: str
    expires_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    promo_code: Optional[str] = None

    @property
    def is_premium(self) -> bool:
        """Premium quota applies only to an active premium or promo grant."""
        return is_premium_tier(self.tier) and self.status == SubscriptionStatus.ACTIVE.value


FREE_SUBSCRIPTION = UserSubscription(
    tier=SubscriptionTier.FREE.value,
    status=SubscriptionStatus.ACTIVE.value,
)


def is_premium_tier(tier: str) -> bool:
    return tier in PREMIUM_TIERS


def to_subscription_response(subscription: UserSubscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        tier=subscription.tier,
        status=subscription.status,
        expires_at=subscription.expires_at,
        stripe_customer_id=subscription.stripe_customer_id,
        stripe_subscription_id=subscription.stripe_subscription_id,
        promo_code=subscription.promo_code,
        is_premium=subscription.is_premium,
    )


def resolve_effective_subscription(
    row: Optional[Subscription], now: Optional[datetime] = None
) -> UserSubscription:
    """
    Turn a stored row (or its absence) into the user's effective subscription.

    - No row: free/active.
    - Promo row with a past expires_at: free/expired, keeping the stored
      identifiers so the caller can still show what lapsed.
    """
    if row is None:
        return FREE_SUBSCRIPTION

    now = now or utcnow()
    if (
        row.tier == SubscriptionTier.PROMO.value
        and row.expires_at is not None
        and row.expires_at < now
    ):
        return UserSubscription(
            tier=SubscriptionTier.FREE.value,
            status=SubscriptionStatus.EXPIRED.value,
            expires_at=row.expires_at,
            stripe_customer_id=row.stripe_customer_id,
            stripe_subscription_id=row.stripe_subscription_id,
            promo_code=row.promo_code,
        )

    return UserSubscription(
        tier=row.tier,
        status=row.status,
        expires_at=row.expires_at,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        promo_code=row.promo_code,
    )


def get_subscription_row(db: Session, user_id: str) -> Optional[Subscription]:
    # populate_existing: upserts are Core statements, so identity-mapped rows may be stale
    return db.query(Subscription).populate_existing().filter(
        Subscription.user_id == user_id
    ).first()


def get_subscription(db: Session, user_id: str, now: Optional[datetime] = None) -> UserSubscription:
    """
    Effective subscription for a user. A missing row is the free default;
    storage errors propagate to the caller.
    """
    return resolve_effective_subscription(get_subscription_row(db, user_id), now)


def get_subscription_by_stripe_subscription_id(
    db: Session, stripe_subscription_id: str
) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    return db.query(Subscription).populate_existing().filter(
        Subscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Subscription upsert is not supported on {dialect}")


def upsert_subscription(
    db: Session, user_id: str, fields: Dict[str, Any], commit: bool = True
) -> None:
    """
    Insert or update the user's subscription row in one statement
    (INSERT ... ON CONFLICT (user_id) DO UPDATE). Only the given fields are
    written on conflict; last writer wins.
    """
    unknown = set(fields) - _UPSERT_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")

    now = utcnow()
    insert_values = {
        "user_id": user_id,
        "tier": SubscriptionTier.FREE.value,
        "status": SubscriptionStatus.ACTIVE.value,
        "created_at": now,
        **fields,
        "updated_at": now,
    }
    update_values = {**fields, "updated_at": now}

    insert = _dialect_insert(db)
    stmt = insert(Subscription).values(**insert_values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_=update_values,
    )
    db.execute(stmt)
    if commit:
        db.commit()
    logger.info("Upserted subscription for user %s: %s", user_id, sorted(fields))


def update_subscription_fields(
    db: Session,
    user_id: str,
    fields: Dict[str, Any],
    commit: bool = True,
    stripe_subscription_id: Optional[str] = None,
) -> bool:
    """
    Update an existing row keyed by user_id. Returns False when no row matched.

    With stripe_subscription_id, a row already bound to a different Stripe
    subscription is left alone; rows with no Stripe subscription still match.
    """
    unknown = set(fields) - _UPSERT_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")

    stmt = update(Subscription).where(Subscription.user_id == user_id)
    if stripe_subscription_id:
        stmt = stmt.where(or_(
            Subscription.stripe_subscription_id.is_(None),
            Subscription.stripe_subscription_id == stripe_subscription_id,
        ))

    result = db.execute(
        stmt
        .values(**fields, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if commit:
        db.commit()
    return result.rowcount > 0


def expire_lapsed_promo_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """
    Rewrite promo rows whose grant has lapsed to free/expired. Reads already
    resolve these lazily; this only keeps stored rows honest for reporting.
    Returns the number of rows rewritten.
    """
    now = now or utcnow()
    result = db.execute(
        update(Subscription)
        .where(
            Subscription.tier == SubscriptionTier.PROMO.value,
            Subscription.expires_at.isnot(None),
            Subscription.expires_at < now,
        )
        .values(
            tier=SubscriptionTier.FREE.value,
            status=SubscriptionStatus.EXPIRED.value,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount
