"""
Subscription & Quota Backend API
Subscription tiers, monthly quotas, promo codes and Stripe billing for the
language-learning app.
"""
from dotenv import load_dotenv
load_dotenv()

import logging
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.core import config

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Run Alembic migrations on startup. Uses alembic.ini and DATABASE_URL.
    Fails startup if migrations fail, so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise  # Fail startup so the DB is not left out of sync


from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import billing, health, promo, subscription, webhooks
from app.db.base import Base
from app.db.session import engine
# Import all models to ensure they're registered with Base
from app.models import PromoCode, Subscription, VideoUpload, VocalExerciseCompletion  # noqa: F401

app = FastAPI(title="Language App Subscription API")


@app.on_event("startup")
async def startup_event():
    """Create tables, then run Alembic migrations on every server restart.
    If a migration fails the server refuses to start."""
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    logger.info("Running Alembic migrations...")
    run_migrations()


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(health.router, tags=["Health"])
app.include_router(subscription.router, prefix="/subscription", tags=["Subscription"])
app.include_router(promo.router, prefix="/promo", tags=["Promo Codes"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
def root():
    return {"message": "Language App Subscription API"}
