from typing import Dict

# -1 means unlimited. It is a sentinel only: callers check for it explicitly and
# never compare it numerically against usage.
UNLIMITED = -1

# Plan limits configuration, keyed by the quota tier a subscription resolves to.
# "promo" subscriptions are evaluated against the premium row.
PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {
        "uploads_per_month": 2,
        "max_video_length_seconds": 600,  # 10 minutes
        "total_duration_per_month_seconds": 1200,  # 20 minutes
        "vocal_exercises_per_month": 5,
    },
    "premium": {
        "uploads_per_month": 10,
        "max_video_length_seconds": 900,  # 15 minutes
        "total_duration_per_month_seconds": 9000,  # 150 minutes
        "vocal_exercises_per_month": UNLIMITED,
    },
}


def get_plan_limit(plan_tier: str, limit_type: str) -> int:
    """Get the limit value for a specific plan and limit type."""
    return PLAN_LIMITS.get(plan_tier, PLAN_LIMITS["free"]).get(limit_type, 0)


def quota_tier_for(is_premium: bool) -> str:
    return "premium" if is_premium else "free"
