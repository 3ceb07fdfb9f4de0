"""
Celery application configuration for scheduled email connection jobs.

Beat runs the same renewal and watchdog services the internal HTTP
endpoints expose, so a deployment can use either (or both) triggers.
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init
from kombu import Queue

from billybot.core.config import get_settings
from billybot.core.sentry import init_sentry

settings = get_settings()

celery_app = Celery(
    "billybot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["billybot.tasks.email"],
)


celery_app.conf.update(
    # Serialization (JSON only for security)
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,

    # A batch touches every due account, one provider call each
    task_time_limit=600,
    task_soft_time_limit=540,

    # Failed accounts are retried on the next scheduled run, not by Celery
    task_max_retries=0,

    # Result backend settings
    result_expires=3600,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Queue settings
    task_queues=(
        Queue("default", routing_key="task.#"),
        Queue("priority", routing_key="priority.#"),
    ),
    task_default_queue="default",
    task_default_exchange="tasks",
    task_default_exchange_type="topic",
    task_default_routing_key="task.default",
)


# Celery Beat Schedule (periodic tasks)
celery_app.conf.beat_schedule = {
    # Graph subscriptions last 2 days; renew anything within 12h of expiry
    "renew-microsoft-subscriptions": {
        "task": "billybot.tasks.email.renew_microsoft_subscriptions",
        "schedule": crontab(minute="0"),  # Hourly
        "options": {"queue": "priority"},
    },

    # Recover lapsed Gmail watches / Graph subscriptions
    "run-email-watchdog": {
        "task": "billybot.tasks.email.run_email_watchdog",
        "schedule": crontab(minute="*/30"),  # Every 30 minutes
        "options": {"queue": "default"},
    },
}


celery_app.conf.task_routes = {
    "billybot.tasks.email.renew_microsoft_subscriptions": {"queue": "priority"},
    "billybot.tasks.email.run_email_watchdog": {"queue": "default"},
}


# Logging configuration
celery_app.conf.worker_hijack_root_logger = False  # Don't override logging config
celery_app.conf.worker_log_format = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
celery_app.conf.worker_task_log_format = (
    "[%(asctime)s: %(levelname)s/%(processName)s] "
    "[%(task_name)s(%(task_id)s)] %(message)s"
)


@worker_process_init.connect
def init_worker_monitoring(**kwargs):
    init_sentry(settings)


if __name__ == "__main__":
    celery_app.start()
