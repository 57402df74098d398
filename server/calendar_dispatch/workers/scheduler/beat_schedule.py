from __future__ import annotations
"""server/calendar_dispatch/workers/scheduler/beat_schedule.py
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Planification périodique des tâches Celery (Beat).
"""
from calendar_dispatch.core.config import settings

_poll_seconds = settings.DISPATCH_POLL_INTERVAL_MS / 1000

beat_schedule = {
    "dispatch-outbox": {
        "task": "outbox.dispatch",
        "schedule": _poll_seconds,
        # Un tick non consommé avant le suivant est obsolète.
        "options": {"expires": _poll_seconds},
    },
}
