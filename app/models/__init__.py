from app.models.subscription import Subscription, SubscriptionTier, SubscriptionStatus
from app.models.promo_code import PromoCode, PromoCodeType
from app.models.usage import VideoUpload, VocalExerciseCompletion

__all__ = [
    "Subscription",
    "SubscriptionTier",
    "SubscriptionStatus",
    "PromoCode",
    "PromoCodeType",
    "VideoUpload",
    "VocalExerciseCompletion",
]
