from celery import Celery
from celery.schedules import crontab
import logging
from datetime import timedelta

from config import load_settings

# Same configuration as the web process; a bad value stops the worker at startup
settings = load_settings()

logger = logging.getLogger(__name__)
logger.info(f"Using Redis URL: {settings.redis_url}")

celery_app = Celery(
    "tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["tasks"]  # Name of the module where tasks will be defined
)

# Configure the Celery application
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.keep_alive_timezone,
    enable_utc=True,
    worker_concurrency=1,
    worker_prefetch_multiplier=1,

    beat_schedule={
        # Keeps an idle hosting platform from suspending the web process
        'keep-alive-every-13-minutes': {
            'task': 'tasks.keep_alive',
            'schedule': crontab(minute='*/13'),
        },
        'sweep-stale-downloads-every-hour': {
            'task': 'tasks.sweep_stale_downloads',
            'schedule': timedelta(hours=1),
        },
    },
)

if __name__ == "__main__":
    celery_app.start()
