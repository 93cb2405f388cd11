"""Celery configuration from environment variables."""

import os

from celery.schedules import crontab

# Broker and backend (Redis)
broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

# Serialization
task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]

# Timezone
timezone = "UTC"
enable_utc = True

# Task settings
task_track_started = True
task_time_limit = 1800  # 30 minutes max per task
task_soft_time_limit = 1700
task_acks_late = True
worker_prefetch_multiplier = 1

# Retry settings
task_default_retry_delay = 30
task_max_retries = 3

# Queue settings
task_default_queue = "default"
task_queues = {
    "default": {},
    "sync": {},
    "webhooks": {},
    "maintenance": {},
}

_TASKS = "activity_ops.workers.tasks"

# Beat schedule (periodic tasks)
beat_schedule = {
    "resume-blocked-jobs": {
        "task": f"{_TASKS}.resume_blocked_jobs",
        "schedule": 300.0,
        "options": {"queue": "maintenance"},
    },
    "fail-zombie-jobs": {
        "task": f"{_TASKS}.fail_zombie_jobs",
        "schedule": 300.0,
        "options": {"queue": "maintenance"},
    },
    "finalize-batches": {
        "task": f"{_TASKS}.finalize_batches",
        "schedule": 300.0,
        "options": {"queue": "maintenance"},
    },
    "cleanup-retention": {
        "task": f"{_TASKS}.cleanup_retention",
        "schedule": crontab(minute=15),
        "options": {"queue": "maintenance"},
    },
    "dispatch-scheduled-syncs": {
        "task": f"{_TASKS}.dispatch_scheduled_syncs",
        "schedule": crontab(minute=0),
        "options": {"queue": "default"},
    },
    "run-catch-up-sync": {
        "task": f"{_TASKS}.run_catch_up_sync",
        "schedule": crontab(hour=3, minute=30),
        "options": {"queue": "maintenance"},
    },
}

# Result settings
result_expires = 86400  # Results expire after 24 hours
