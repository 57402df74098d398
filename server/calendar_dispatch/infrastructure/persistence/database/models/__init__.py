from __future__ import annotations
"""server/calendar_dispatch/infrastructure/persistence/database/models/__init__.py
~~~~~~~~~~~~~~~~~~~~~~~~
Modèles ORM (register for Alembic).
"""

from .event import Event
from .outbox_item import OutboxItem
from .scheduler_state import SchedulerState

__all__ = ["Event", "OutboxItem", "SchedulerState"]
