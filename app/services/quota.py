"""
Quota evaluator: monthly upload and vocal-exercise limits per subscription tier.

Usage is never stored as a counter. Each check aggregates the append-only
usage rows since the start of the current calendar month (server time, UTC on
deployed servers) and compares against PLAN_LIMITS.

Storage failures:
- Upload checks always fail closed (deny with a retry message).
- Vocal-exercise checks fail closed by default; QUOTA_FAIL_OPEN_VOCAL=true is
  the explicit override that lets them fail open.
"""
import enum
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import config
from app.core.plan_limits import UNLIMITED, get_plan_limit, quota_tier_for
from app.db.base import utcnow
from app.models.usage import VideoUpload, VocalExerciseCompletion
from app.schemas.subscription import (
    SubscriptionOverview,
    UploadQuotaResult,
    UploadQuotaStatus,
    VocalQuotaResult,
    VocalQuotaStatus,
)
from app.services.subscription_store import get_subscription, to_subscription_response

logger = logging.getLogger(__name__)

UPLOAD_CHECK_FAILED_REASON = "Unable to check upload quota. Please try again."
VOCAL_CHECK_FAILED_REASON = "Unable to check vocal exercise quota. Please try again."


class QuotaFailurePolicy(str, enum.Enum):
    FAIL_CLOSED = "fail_closed"
    FAIL_OPEN = "fail_open"


def vocal_failure_policy() -> QuotaFailurePolicy:
    if config.QUOTA_FAIL_OPEN_VOCAL:
        return QuotaFailurePolicy.FAIL_OPEN
    return QuotaFailurePolicy.FAIL_CLOSED


def get_start_of_month(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_next_month_reset_date(now: Optional[datetime] = None) -> datetime:
    start = get_start_of_month(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _monthly_upload_usage(db: Session, user_id: str, since: datetime) -> Tuple[int, int]:
    """(upload count, summed duration in seconds) since the window start."""
    count, total_duration = db.query(
        func.count(VideoUpload.id),
        func.coalesce(func.sum(VideoUpload.duration_seconds), 0),
    ).filter(
        VideoUpload.user_id == user_id,
        VideoUpload.uploaded_at >= since,
    ).one()
    return int(count or 0), int(total_duration or 0)


def _monthly_vocal_count(db: Session, user_id: str, since: datetime) -> int:
    return db.query(VocalExerciseCompletion).filter(
        VocalExerciseCompletion.user_id == user_id,
        VocalExerciseCompletion.completed_at >= since,
    ).count()


def _upload_limits(plan_tier: str) -> Tuple[int, int, int]:
    return (
        get_plan_limit(plan_tier, "uploads_per_month"),
        get_plan_limit(plan_tier, "max_video_length_seconds"),
        get_plan_limit(plan_tier, "total_duration_per_month_seconds"),
    )


def _upload_check_failed(plan_tier: str = "free") -> UploadQuotaResult:
    uploads_limit, _, duration_limit = _upload_limits(plan_tier)
    return UploadQuotaResult(
        allowed=False,
        reason=UPLOAD_CHECK_FAILED_REASON,
        uploads_used=0,
        uploads_limit=uploads_limit,
        total_duration_used=0,
        total_duration_limit=duration_limit,
    )


def _evaluate_upload(
    db: Session, user_id: str, duration_seconds: int, now: datetime
) -> UploadQuotaResult:
    """
    Upload decision. A failure resolving the tier propagates to the caller;
    a failed usage aggregation denies with the resolved tier's limits.
    """
    subscription = get_subscription(db, user_id, now)
    is_premium = subscription.is_premium
    plan_tier = quota_tier_for(is_premium)
    uploads_limit, max_length, duration_limit = _upload_limits(plan_tier)

    # Per-video cap is independent of monthly usage, so reject before aggregating
    if duration_seconds > max_length:
        return UploadQuotaResult(
            allowed=False,
            reason=(
                f"Video is too long ({duration_seconds // 60} min). "
                f"{'Premium' if is_premium else 'Free'} users can upload videos "
                f"up to {max_length // 60} minutes."
            ),
            uploads_used=0,
            uploads_limit=uploads_limit,
            total_duration_used=0,
            total_duration_limit=duration_limit,
        )

    try:
        uploads_used, duration_used = _monthly_upload_usage(db, user_id, get_start_of_month(now))
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Upload usage aggregation failed for user %s (tier %s)", user_id, plan_tier)
        return _upload_check_failed(plan_tier)

    if uploads_used >= uploads_limit:
        reason = f"You've reached your monthly limit of {uploads_limit} video uploads."
        if not is_premium:
            reason += " Upgrade to Premium for more uploads."
    elif duration_used + duration_seconds > duration_limit:
        reason = "Your uploads this month have reached the capacity limit."
        reason += " Try again next month." if is_premium else " Upgrade to Premium for more capacity."
    else:
        reason = None

    return UploadQuotaResult(
        allowed=reason is None,
        reason=reason,
        uploads_used=uploads_used,
        uploads_limit=uploads_limit,
        total_duration_used=duration_used,
        total_duration_limit=duration_limit,
    )


def can_user_upload_video(
    db: Session, user_id: str, duration_seconds: int, now: Optional[datetime] = None
) -> UploadQuotaResult:
    """
    Check whether the user may upload a video of the given length this month.

    Every result carries the usage snapshot (used/limit for count and duration)
    so the caller can render the quota without a second query.
    """
    try:
        return _evaluate_upload(db, user_id, duration_seconds, now or utcnow())
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Upload quota check failed for user %s", user_id)
        return _upload_check_failed()


def can_user_do_vocal_exercise(
    db: Session,
    user_id: str,
    now: Optional[datetime] = None,
    policy: Optional[QuotaFailurePolicy] = None,
) -> VocalQuotaResult:
    now = now or utcnow()
    policy = policy or vocal_failure_policy()
    free_limit = get_plan_limit("free", "vocal_exercises_per_month")

    try:
        subscription = get_subscription(db, user_id, now)
        limit = get_plan_limit(quota_tier_for(subscription.is_premium), "vocal_exercises_per_month")
        if limit == UNLIMITED:
            return VocalQuotaResult(allowed=True, count=0, limit=UNLIMITED)

        count = _monthly_vocal_count(db, user_id, get_start_of_month(now))
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Vocal exercise quota check failed for user %s (policy=%s)", user_id, policy.value)
        if policy == QuotaFailurePolicy.FAIL_OPEN:
            return VocalQuotaResult(allowed=True, count=0, limit=free_limit)
        return VocalQuotaResult(
            allowed=False, count=0, limit=free_limit, reason=VOCAL_CHECK_FAILED_REASON
        )

    if count < limit:
        return VocalQuotaResult(allowed=True, count=count, limit=limit)
    return VocalQuotaResult(
        allowed=False,
        count=count,
        limit=limit,
        reason=(
            f"You've used all {limit} vocal exercises for this month. "
            "Upgrade to Premium for unlimited practice."
        ),
    )


def get_upload_quota_status(
    db: Session, user_id: str, now: Optional[datetime] = None
) -> UploadQuotaStatus:
    now = now or utcnow()
    subscription = get_subscription(db, user_id, now)
    uploads_limit, _, duration_limit = _upload_limits(quota_tier_for(subscription.is_premium))
    uploads_used, duration_used = _monthly_upload_usage(db, user_id, get_start_of_month(now))
    return UploadQuotaStatus(
        uploads_used=uploads_used,
        uploads_limit=uploads_limit,
        total_duration_used=duration_used,
        total_duration_limit=duration_limit,
        is_premium=subscription.is_premium,
    )


def get_vocal_quota_status(
    db: Session, user_id: str, now: Optional[datetime] = None
) -> VocalQuotaStatus:
    now = now or utcnow()
    subscription = get_subscription(db, user_id, now)
    if subscription.is_premium:
        return VocalQuotaStatus(count=0, limit=UNLIMITED, is_premium=True)

    return VocalQuotaStatus(
        count=_monthly_vocal_count(db, user_id, get_start_of_month(now)),
        limit=get_plan_limit("free", "vocal_exercises_per_month"),
        is_premium=False,
    )


def get_subscription_overview(
    db: Session, user_id: str, now: Optional[datetime] = None
) -> SubscriptionOverview:
    """Subscription, both quota statuses and the next reset date in one payload."""
    now = now or utcnow()
    return SubscriptionOverview(
        subscription=to_subscription_response(get_subscription(db, user_id, now)),
        upload_quota=get_upload_quota_status(db, user_id, now),
        vocal_quota=get_vocal_quota_status(db, user_id, now),
        reset_date=get_next_month_reset_date(now),
    )


def record_vocal_exercise_completion(db: Session, user_id: str, video_id: str) -> bool:
    """Append a completion row. Returns False on storage failure; the caller decides what to do."""
    try:
        db.add(VocalExerciseCompletion(user_id=user_id, video_id=video_id, completed_at=utcnow()))
        db.commit()
        return True
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record vocal exercise completion for user %s (video %s)", user_id, video_id)
        return False


def _serialize_user_uploads(db: Session, user_id: str) -> None:
    """
    Hold a per-user lock for the rest of the transaction so two uploads cannot
    both pass the monthly check before either inserts. SQLite already
    serializes writers.
    """
    if db.get_bind().dialect.name == "postgresql":
        db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
            {"lock_key": f"video_uploads:{user_id}"},
        )


def record_video_upload(
    db: Session,
    user_id: str,
    duration_seconds: int,
    video_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UploadQuotaResult:
    """
    Check the upload quota and append the upload row in one transaction.
    Returns the result that governed the decision; nothing is written when it
    is a denial.
    """
    now = now or utcnow()
    try:
        _serialize_user_uploads(db, user_id)
        result = _evaluate_upload(db, user_id, duration_seconds, now)
        if not result.allowed:
            db.rollback()
            return result

        db.add(VideoUpload(
            user_id=user_id,
            video_id=video_id,
            duration_seconds=duration_seconds,
            uploaded_at=now,
        ))
        db.commit()
        logger.info("Recorded %ss upload for user %s", duration_seconds, user_id)
        return result
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record video upload for user %s", user_id)
        return _upload_check_failed()
