"""
Subscription and quota routes.

Every response here is derived from the effective subscription, so an expired
promo grant reads as free without anything having rewritten the row.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.schemas.subscription import (
    SubscriptionOverview,
    SubscriptionResponse,
    UploadCheckRequest,
    UploadQuotaResult,
    UploadQuotaStatus,
    UploadRecordRequest,
    VocalCompletionRequest,
    VocalCompletionResponse,
    VocalQuotaResult,
    VocalQuotaStatus,
)
from app.services import quota
from app.services.subscription_store import get_subscription, to_subscription_response

router = APIRouter()

STORAGE_UNAVAILABLE = "Subscription data is temporarily unavailable. Please try again."


def _storage_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=STORAGE_UNAVAILABLE,
    )


@router.get("/me", response_model=SubscriptionResponse)
def get_my_subscription(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return to_subscription_response(get_subscription(db, user_id))
    except SQLAlchemyError:
        db.rollback()
        raise _storage_unavailable()


@router.get("/overview", response_model=SubscriptionOverview)
def get_overview(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Subscription, upload and vocal quota, and the next reset date in one call."""
    try:
        return quota.get_subscription_overview(db, user_id)
    except SQLAlchemyError:
        db.rollback()
        raise _storage_unavailable()


@router.get("/quota/uploads", response_model=UploadQuotaStatus)
def get_upload_quota(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return quota.get_upload_quota_status(db, user_id)
    except SQLAlchemyError:
        db.rollback()
        raise _storage_unavailable()


@router.get("/quota/vocal", response_model=VocalQuotaStatus)
def get_vocal_quota(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return quota.get_vocal_quota_status(db, user_id)
    except SQLAlchemyError:
        db.rollback()
        raise _storage_unavailable()


@router.post("/quota/uploads/check", response_model=UploadQuotaResult)
def check_upload_quota(
    body: UploadCheckRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return quota.can_user_upload_video(db, user_id, body.duration_seconds)


@router.post("/quota/vocal/check", response_model=VocalQuotaResult)
def check_vocal_quota(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return quota.can_user_do_vocal_exercise(db, user_id)


@router.post("/uploads", response_model=UploadQuotaResult, status_code=status.HTTP_201_CREATED)
def record_upload(
    body: UploadRecordRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Check the upload quota and record the upload; 403 with the quota result when denied."""
    result = quota.record_video_upload(db, user_id, body.duration_seconds, video_id=body.video_id)
    if not result.allowed:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content=result.model_dump(mode="json", by_alias=True),
        )
    return result


@router.post("/vocal-completions", response_model=VocalCompletionResponse)
def record_vocal_completion(
    body: VocalCompletionRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return VocalCompletionResponse(
        success=quota.record_vocal_exercise_completion(db, user_id, body.video_id)
    )
