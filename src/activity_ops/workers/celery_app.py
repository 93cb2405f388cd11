"""Celery application factory and instance."""

from celery import Celery


def create_celery_app() -> Celery:
    """Create and configure the Celery application."""
    app = Celery("activity_ops")

    app.config_from_object("activity_ops.workers.config")

    # Tasks live in activity_ops.workers.tasks
    app.autodiscover_tasks(["activity_ops.workers"])

    return app


celery_app = create_celery_app()

# Celery CLI entry point: celery -A activity_ops.workers.celery_app worker
app = celery_app
