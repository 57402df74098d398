from __future__ import annotations
"""server/calendar_dispatch/infrastructure/scheduling/lease.py
~~~~~~~~~~~~~~~~~~~~~~~~
Lease coopératif dans scheduler_state (clé "dispatch_lock").

Valeur : {"holder_id": ..., "expires_at": ISO-8601, "acquired_at": ISO-8601}

- acquis si absent, si déjà détenu par nous (renouvellement) ou si expiré ;
- remplacement par compare-and-set sur updated_at : deux candidats sur un
  lease expiré ne peuvent pas gagner tous les deux ;
- simple optimisation : le claim conditionnel reste la vraie garde.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager

from sqlalchemy.orm import Session

from calendar_dispatch.core.utils.datetime import from_iso, to_iso
from calendar_dispatch.infrastructure.persistence.database.session import open_session
from calendar_dispatch.infrastructure.persistence.repositories.scheduler_state_repository import (
    SchedulerStateRepository,
)

log = logging.getLogger(__name__)

LEASE_KEY = "dispatch_lock"

SessionFactory = Callable[[], ContextManager[Session]]


class LeaseManager:
    def __init__(
        self,
        holder_id: str,
        duration: timedelta,
        *,
        key: str = LEASE_KEY,
        session_factory: SessionFactory = open_session,
    ):
        self.holder_id = holder_id
        self.duration = duration
        self.key = key
        self._session_factory = session_factory
        self.expires_at: datetime | None = None

    @property
    def held(self) -> bool:
        return self.expires_at is not None

    def acquire(self, now: datetime) -> bool:
        """Acquiert ou renouvelle le lease à l'instant `now`."""
        expires_at = now + self.duration
        with self._session_factory() as s:
            repo = SchedulerStateRepository(s)
            row = repo.get(self.key)
            if row is None:
                won = repo.insert_if_absent(self.key, self._value(now, expires_at, None), now=now)
            else:
                current: dict[str, Any] = dict(row.value or {})
                holder = current.get("holder_id")
                current_expiry = from_iso(current.get("expires_at"))
                if holder != self.holder_id and current_expiry is not None and current_expiry > now:
                    log.debug("lease %s held by %s until %s", self.key, holder, current_expiry)
                    self.expires_at = None
                    return False
                acquired_at = current.get("acquired_at") if holder == self.holder_id else None
                won = repo.compare_and_set(
                    self.key,
                    expected_updated_at=row.updated_at,
                    value=self._value(now, expires_at, acquired_at),
                    now=now,
                )
                if won and holder not in (None, self.holder_id):
                    log.info("lease %s taken over from %s (expired %s)", self.key, holder, current_expiry)

        self.expires_at = expires_at if won else None
        return won

    def ensure(self, now: datetime) -> bool:
        """Renouvelle si plus de la moitié de la durée est consommée."""
        if self.expires_at is not None and now < self.expires_at - self.duration / 2:
            return True
        return self.acquire(now)

    def release(self, now: datetime) -> bool:
        """Rend le lease (expires_at = now) s'il est encore à nous."""
        if self.expires_at is None:
            return False
        with self._session_factory() as s:
            repo = SchedulerStateRepository(s)
            row = repo.get(self.key)
            if row is None or (row.value or {}).get("holder_id") != self.holder_id:
                released = False
            else:
                value = dict(row.value)
                value["expires_at"] = to_iso(now)
                released = repo.compare_and_set(
                    self.key, expected_updated_at=row.updated_at, value=value, now=now
                )
        self.expires_at = None
        return released

    def _value(self, now: datetime, expires_at: datetime, acquired_at: str | None) -> dict[str, Any]:
        return {
            "holder_id": self.holder_id,
            "expires_at": to_iso(expires_at),
            "acquired_at": acquired_at or to_iso(now),
        }
