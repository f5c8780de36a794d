"""
Celery tasks for the analysis pipeline.

Tasks are defined here and imported by the worker (to execute) and by
anything that kicks off an analysis (to enqueue).
"""
from celery import Celery
from celery.signals import setup_logging as setup_logging_signal
from gamelens.core.config import settings
from gamelens.core.logging import setup_logging

# Create Celery app instance
celery_app = Celery(
    "gamelens",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes max per task
    task_soft_time_limit=9 * 60,
    # A task lost with its worker is redelivered, not dropped.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)


@setup_logging_signal.connect
def _configure_logging(**kwargs):
    # Connecting to this signal stops Celery from replacing our handlers.
    setup_logging()


# Import tasks to register them
from . import trigger_tasks  # noqa: E402
from . import synthesis_tasks  # noqa: E402
from . import correlation_tasks  # noqa: E402
from . import analysis_tasks  # noqa: E402

__all__ = ["celery_app"]
