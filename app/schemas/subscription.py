from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    # The web client speaks camelCase; Python code keeps snake_case field names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionResponse(CamelModel):
    tier: str
    status: str
    expires_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    promo_code: Optional[str] = None
    is_premium: bool


class UploadQuotaResult(CamelModel):
    allowed: bool
    reason: Optional[str] = None
    uploads_used: int
    uploads_limit: int
    total_duration_used: int
    total_duration_limit: int


class VocalQuotaResult(CamelModel):
    allowed: bool
    count: int
    limit: int  # -1 means unlimited
    reason: Optional[str] = None


class UploadQuotaStatus(CamelModel):
    uploads_used: int
    uploads_limit: int
    total_duration_used: int
    total_duration_limit: int
    is_premium: bool


class VocalQuotaStatus(CamelModel):
    count: int
    limit: int
    is_premium: bool


class SubscriptionOverview(CamelModel):
    subscription: SubscriptionResponse
    upload_quota: UploadQuotaStatus
    vocal_quota: VocalQuotaStatus
    reset_date: datetime


class UploadCheckRequest(CamelModel):
    duration_seconds: int = Field(..., ge=0)


class UploadRecordRequest(CamelModel):
    duration_seconds: int = Field(..., ge=0)
    video_id: Optional[str] = None


class VocalCompletionRequest(CamelModel):
    video_id: str = Field(..., min_length=1)


class VocalCompletionResponse(CamelModel):
    success: bool
