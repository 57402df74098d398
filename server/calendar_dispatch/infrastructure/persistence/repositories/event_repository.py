from __future__ import annotations

"""server/calendar_dispatch/infrastructure/persistence/repositories/event_repository.py
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Repository des évènements calendrier.

Principes :
- Session fournie par l'appelant, pas de commit ici.
- `delete()` supprime d'abord les items outbox de l'évènement PUIS
  l'évènement, dans la même transaction : aucune ligne orpheline même sans
  ON DELETE CASCADE effectif (SQLite sans PRAGMA foreign_keys).
"""

import uuid
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from calendar_dispatch.core.utils.datetime import utc_now
from calendar_dispatch.infrastructure.persistence.database.models.event import Event
from calendar_dispatch.infrastructure.persistence.repositories.outbox_repository import (
    OutboxRepository,
    _coerce_uuid,
)


class EventRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def add(self, **fields: Any) -> Event:
        now = fields.pop("now", None) or utc_now()
        ev = Event(id=fields.pop("id", None) or uuid.uuid4(), created_at=now, updated_at=now, **fields)
        self.db.add(ev)
        self.db.flush()
        return ev

    def get(self, event_id: str | uuid.UUID) -> Event | None:
        eid = _coerce_uuid(event_id)
        if eid is None:
            return None
        return self.db.execute(
            select(Event).where(Event.id == eid).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def update(self, ev: Event, **fields: Any) -> Event:
        now = fields.pop("now", None) or utc_now()
        for name, value in fields.items():
            setattr(ev, name, value)
        ev.updated_at = now
        self.db.flush()
        return ev

    def delete(self, event_id: str | uuid.UUID) -> bool:
        """Supprime l'évènement et ses items outbox. True si l'évènement existait."""
        eid = _coerce_uuid(event_id)
        if eid is None:
            return False
        OutboxRepository(self.db).delete_for_event(eid)
        res = self.db.execute(
            delete(Event).where(Event.id == eid).execution_options(synchronize_session=False)
        )
        # Les instances déjà chargées dans la session ne doivent plus être servies.
        self.db.expire_all()
        return res.rowcount == 1
