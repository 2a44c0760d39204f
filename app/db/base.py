from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns used across the models."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
