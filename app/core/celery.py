"""
Celery configuration for background tasks
"""
from celery import Celery
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

redis_url = settings.redis_url

# Create Celery instance
celery_app = Celery(
    "whop_saas",
    broker=redis_url,
    backend=redis_url,
    include=[
        "app.modules.webhooks.tasks",
        "app.modules.email.tasks",
        "app.modules.memberships.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Webhook deliveries may be retried; ack only after the attempt finished
    task_acks_late=True,

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Task routes for different queues
    task_routes={
        "app.modules.webhooks.tasks.*": {"queue": "webhooks"},
        "app.modules.email.tasks.*": {"queue": "email"},
        "app.modules.memberships.tasks.*": {"queue": "memberships"},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        "expire-memberships": {
            "task": "app.modules.memberships.tasks.expire_memberships",
            "schedule": 3600.0,  # Run every hour
        },
    }
)


if __name__ == "__main__":
    celery_app.start()
