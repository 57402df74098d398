from __future__ import annotations

"""server/calendar_dispatch/infrastructure/persistence/repositories/scheduler_state_repository.py
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Repository clé/valeur de scheduler_state.

Principes :
- Session fournie par l'appelant, pas de commit ici.
- `put()` : upsert simple (watermark).
- `compare_and_set()` : écriture conditionnée à `updated_at` relu, pour les
  read-modify-write concurrents (lease). True ssi la ligne a été modifiée.
- `insert_if_absent()` : création au premier usage ; False si un autre
  process l'a créée entre-temps. À appeler dans une transaction dédiée :
  en cas de conflit la session est rollback.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calendar_dispatch.core.utils.datetime import as_utc, utc_now
from calendar_dispatch.infrastructure.persistence.database.models.scheduler_state import SchedulerState


class SchedulerStateRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, key: str) -> SchedulerState | None:
        return self.db.execute(
            select(SchedulerState)
            .where(SchedulerState.key == key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_value(self, key: str) -> dict[str, Any] | None:
        row = self.get(key)
        return dict(row.value) if row is not None else None

    def put(self, key: str, value: dict[str, Any], *, now: datetime | None = None) -> SchedulerState:
        now = now or utc_now()
        row = self.get(key)
        if row is None:
            row = SchedulerState(key=key, value=dict(value), updated_at=now)
            self.db.add(row)
        else:
            # Réassignation (pas de mutation en place) pour que l'ORM voie le changement.
            row.value = dict(value)
            row.updated_at = now
        self.db.flush()
        return row

    def compare_and_set(
        self,
        key: str,
        *,
        expected_updated_at: datetime,
        value: dict[str, Any],
        now: datetime | None = None,
    ) -> bool:
        expected = as_utc(expected_updated_at)
        # updated_at doit strictement avancer, sinon un second CAS au même instant passerait.
        new_ts = max(as_utc(now) or utc_now(), expected + timedelta(microseconds=1))
        stmt = (
            update(SchedulerState)
            .where(
                SchedulerState.key == key,
                SchedulerState.updated_at == expected,
            )
            .values(value=dict(value), updated_at=new_ts)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def insert_if_absent(self, key: str, value: dict[str, Any], *, now: datetime | None = None) -> bool:
        self.db.add(SchedulerState(key=key, value=dict(value), updated_at=now or utc_now()))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            return False
        return True
