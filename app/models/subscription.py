import enum

from sqlalchemy import Column, DateTime, Integer, String

from app.db.base import Base, utcnow


class SubscriptionTier(str, enum.Enum):
    FREE = "free"
    PREMIUM = "premium"
    PROMO = "promo"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(Base):
    """
    One row per user. Absence of a row means free/active.

    Rows are written by promo redemption, the Stripe webhook and admin tooling,
    always through an upsert keyed by user_id. They are never deleted:
    cancellation sets tier=free, status=cancelled.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    # Auth provider user id (UUID string); there is no local users table.
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    tier = Column(String(20), nullable=False, default=SubscriptionTier.FREE.value)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    expires_at = Column(DateTime, nullable=True)  # Promo duration end or billing-cycle end
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True)
    promo_code = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
