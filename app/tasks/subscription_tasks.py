import logging

from sqlalchemy.exc import SQLAlchemyError

from app.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.subscription_store import expire_lapsed_promo_subscriptions

logger = logging.getLogger(__name__)


@celery_app.task(name="expire_promo_subscriptions")
def expire_promo_subscriptions():
    """Hourly: rewrite lapsed promo grants to free/expired."""
    db = SessionLocal()
    try:
        expired = expire_lapsed_promo_subscriptions(db)
        if expired:
            logger.info("Expired %d lapsed promo subscriptions", expired)
        return {"status": "success", "expired": expired}
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Promo expiry sweep failed")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
