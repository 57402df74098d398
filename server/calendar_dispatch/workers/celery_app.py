from __future__ import annotations
"""calendar_dispatch/workers/celery_app.py
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Celery app + routage + auto-import des modules de tâches + beat schedule.
"""
from celery import Celery

from calendar_dispatch.core.config import settings
from calendar_dispatch.workers.scheduler.beat_schedule import beat_schedule

celery = Celery("calendar_dispatch", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

# Routage par files
celery.conf.task_routes = {
    "outbox.dispatch": {"queue": "dispatch"},
}

celery.conf.update(
    imports=[
        "calendar_dispatch.workers.tasks.outbox_tasks",
    ],
    # Un cycle en retard est remplacé par le suivant : inutile de les empiler.
    task_ignore_result=True,
    worker_prefetch_multiplier=1,
    beat_schedule=beat_schedule,
)
