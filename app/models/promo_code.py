import enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String

from app.db.base import Base, utcnow


class PromoCodeType(str, enum.Enum):
    DURATION = "duration"  # Grants premium for duration_months
    UNLIMITED = "unlimited"  # Lifetime grant, subscription.expires_at stays NULL


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_promo_codes_uses_within_max",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False, index=True)  # Stored uppercase + trimmed
    active = Column(Boolean, nullable=False, default=True)
    max_uses = Column(Integer, nullable=True)  # NULL means no cap
    current_uses = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True)
    type = Column(String(20), nullable=False, default=PromoCodeType.DURATION.value)
    duration_months = Column(Integer, nullable=True)  # Required when type == duration
    created_at = Column(DateTime, default=utcnow)
