from app.tasks.subscription_tasks import expire_promo_subscriptions

__all__ = [
    'expire_promo_subscriptions',
]
