"""
Celery worker entry point.

    celery -A gamelens.worker worker --loglevel=info
"""
import logging

from celery.signals import worker_init

from gamelens.core.config import settings
from gamelens.core.database import check_db_connection, init_db
from gamelens.tasks import celery_app

logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking (production)
if settings.SENTRY_DSN:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.celery import CeleryIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[
                CeleryIntegration(),
                SqlalchemyIntegration(),
            ],
            # Don't send PII
            send_default_pii=False,
        )
        logger.info("Sentry error tracking initialized")
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


@worker_init.connect
def prepare_database(**kwargs):
    """Create missing tables before the first task runs."""
    if not check_db_connection():
        logger.error("Database unreachable at worker start")
        return
    init_db()
    logger.info("Database schema ready")


# Health check task
@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok", "database": check_db_connection()}


__all__ = ["celery_app"]
