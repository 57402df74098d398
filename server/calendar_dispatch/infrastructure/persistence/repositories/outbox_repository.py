# server/calendar_dispatch/infrastructure/persistence/repositories/outbox_repository.py
from __future__ import annotations
"""
Repository Outbox : opérations bas niveau sur notification_outbox.

Points clés :
- Le repo **reçoit** une Session gérée par l'appelant (`open_session()`) et
  ne commit pas : une transition = une transaction côté appelant.
- `fetch_due(..., as_of=...)` : status = pending ET scheduled_for <= as_of,
  tri scheduled_for asc, limit.
- Toutes les transitions sont des UPDATE conditionnels (WHERE status IN
  <sources autorisées>) : jamais de lecture-puis-écriture côté client.
  Le booléen retourné dit si la ligne a effectivement changé ; False veut
  dire course perdue, annulation concurrente ou ligne supprimée (cascade).
- `transition(..., expected=...)` vérifie le couple source → cible contre la
  table des transitions avant tout SQL (InvalidTransition sinon).
- Conversions UUID robustes pour accepter str/uuid.UUID.
"""
import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from calendar_dispatch.core.utils.datetime import as_utc, utc_now
from calendar_dispatch.domain.status import OutboxStatus, ensure_transition, sources_of
from calendar_dispatch.infrastructure.persistence.database.models.outbox_item import OutboxItem


def _coerce_uuid(v: str | uuid.UUID | None) -> uuid.UUID | None:
    """Convertit str → UUID (ou passe-through) ; None si invalide."""
    if v is None:
        return None
    if isinstance(v, uuid.UUID):
        return v
    try:
        return uuid.UUID(str(v))
    except (TypeError, ValueError, AttributeError):
        return None


def _require_uuid(v: str | uuid.UUID | None, *, field: str) -> uuid.UUID:
    """Variante stricte : lève si invalide (champs NOT NULL en DB)."""
    u = _coerce_uuid(v)
    if u is None:
        raise ValueError(f"OutboxRepository: invalid {field}={v!r}")
    return u


class OutboxRepository:
    def __init__(self, session: Session):
        self.s = session

    # --- Create ---------------------------------------------------------------

    def insert(
        self,
        *,
        event_id: str | uuid.UUID,
        scheduled_for: datetime,
        payload: dict,
        channel: str = "in_app",
        now: datetime | None = None,
    ) -> OutboxItem:
        """Insère un item `pending` planifié à `scheduled_for`."""
        now = now or utc_now()
        item = OutboxItem(
            id=uuid.uuid4(),
            event_id=_require_uuid(event_id, field="event_id"),
            scheduled_for=as_utc(scheduled_for),
            channel=channel,
            payload=dict(payload),
            status=OutboxStatus.PENDING,
            attempts=0,
            last_error="",
            created_at=now,
            updated_at=now,
        )
        self.s.add(item)
        self.s.flush()
        return item

    # --- Read ----------------------------------------------------------------

    def get(self, item_id: str | uuid.UUID) -> OutboxItem | None:
        iid = _coerce_uuid(item_id)
        if iid is None:
            return None
        return self.s.execute(
            select(OutboxItem).where(OutboxItem.id == iid).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def status_of(self, item_id: str | uuid.UUID) -> OutboxStatus | None:
        """Relit le statut en base (None si la ligne a disparu)."""
        iid = _coerce_uuid(item_id)
        if iid is None:
            return None
        return self.s.scalar(select(OutboxItem.status).where(OutboxItem.id == iid))

    def fetch_due(self, *, limit: int, as_of: Optional[datetime] = None) -> list[OutboxItem]:
        """Items dus à `as_of` (now UTC par défaut), au plus `limit`, scheduled_for asc."""
        pivot = as_utc(as_of) or utc_now()
        stmt = (
            select(OutboxItem)
            .where(
                OutboxItem.status == OutboxStatus.PENDING,
                OutboxItem.scheduled_for <= pivot,
            )
            .order_by(OutboxItem.scheduled_for.asc(), OutboxItem.id.asc())
            .limit(limit)
        )
        return list(self.s.scalars(stmt))

    def list_for_event(
        self,
        event_id: str | uuid.UUID,
        *,
        statuses: Sequence[OutboxStatus] | None = None,
    ) -> list[OutboxItem]:
        eid = _coerce_uuid(event_id)
        if eid is None:
            return []
        stmt = select(OutboxItem).where(OutboxItem.event_id == eid)
        if statuses:
            stmt = stmt.where(OutboxItem.status.in_(list(statuses)))
        stmt = stmt.order_by(OutboxItem.scheduled_for.asc()).execution_options(populate_existing=True)
        return list(self.s.scalars(stmt))

    def fetch_stale_processing(self, *, older_than: datetime, limit: int) -> list[OutboxItem]:
        """Items restés en `processing` depuis avant `older_than` (dispatcher mort en vol)."""
        stmt = (
            select(OutboxItem)
            .where(
                OutboxItem.status == OutboxStatus.PROCESSING,
                OutboxItem.updated_at < as_utc(older_than),
            )
            .order_by(OutboxItem.updated_at.asc())
            .limit(limit)
        )
        return list(self.s.scalars(stmt))

    def list_failed(self, *, limit: int = 100) -> list[OutboxItem]:
        """Visibilité opérateur : échecs définitifs, les plus récents d'abord."""
        stmt = (
            select(OutboxItem)
            .where(OutboxItem.status == OutboxStatus.FAILED)
            .order_by(OutboxItem.updated_at.desc())
            .limit(limit)
        )
        return list(self.s.scalars(stmt))

    def count_by_status(self) -> dict[OutboxStatus, int]:
        rows = self.s.execute(
            select(OutboxItem.status, func.count()).group_by(OutboxItem.status)
        ).all()
        return {OutboxStatus(status): int(n) for status, n in rows}

    # --- Transitions (UPDATE conditionnels) -----------------------------------

    def transition(
        self,
        item_id: str | uuid.UUID,
        target: OutboxStatus,
        *,
        expected: OutboxStatus | None = None,
        **values,
    ) -> bool:
        """UPDATE conditionnel vers `target` ; `expected` restreint la garde à ce seul statut source."""
        if expected is not None:
            sources: tuple[OutboxStatus, ...] = (OutboxStatus(expected),)
            ensure_transition(expected, target)
        else:
            sources = sources_of(target)
        iid = _coerce_uuid(item_id)
        if iid is None:
            return False
        stmt = (
            update(OutboxItem)
            .where(
                OutboxItem.id == iid,
                OutboxItem.status.in_(sources),
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return self.s.execute(stmt).rowcount == 1

    def claim(self, item_id: str | uuid.UUID, *, now: datetime | None = None) -> bool:
        """
        pending → processing + attempts++ en UN seul UPDATE conditionnel.
        Sur N claims concurrents d'un même item, exactement un retourne True.
        """
        return self.transition(
            item_id,
            OutboxStatus.PROCESSING,
            expected=OutboxStatus.PENDING,
            attempts=OutboxItem.attempts + 1,
            updated_at=now or utc_now(),
        )

    def mark_sent(self, item_id: str | uuid.UUID, *, now: datetime | None = None) -> bool:
        now = now or utc_now()
        return self.transition(
            item_id, OutboxStatus.SENT, expected=OutboxStatus.PROCESSING, sent_at=now, updated_at=now
        )

    def mark_retry(
        self,
        item_id: str | uuid.UUID,
        *,
        when: datetime,
        error: str,
        now: datetime | None = None,
    ) -> bool:
        """processing → pending, replanifié à `when` (attempts déjà incrémenté au claim)."""
        return self.transition(
            item_id,
            OutboxStatus.PENDING,
            expected=OutboxStatus.PROCESSING,
            scheduled_for=as_utc(when),
            last_error=error,
            updated_at=now or utc_now(),
        )

    def mark_failed(self, item_id: str | uuid.UUID, *, error: str, now: datetime | None = None) -> bool:
        return self.transition(
            item_id,
            OutboxStatus.FAILED,
            expected=OutboxStatus.PROCESSING,
            last_error=error,
            updated_at=now or utc_now(),
        )

    def cancel(self, item_id: str | uuid.UUID, *, now: datetime | None = None) -> bool:
        return self.transition(item_id, OutboxStatus.CANCELLED, updated_at=now or utc_now())

    def cancel_for_event(self, event_id: str | uuid.UUID, *, now: datetime | None = None) -> int:
        """Annule tous les items pending/processing d'un évènement. Retourne le nombre touché."""
        eid = _coerce_uuid(event_id)
        if eid is None:
            return 0
        stmt = (
            update(OutboxItem)
            .where(
                OutboxItem.event_id == eid,
                OutboxItem.status.in_(sources_of(OutboxStatus.CANCELLED)),
            )
            .values(status=OutboxStatus.CANCELLED, updated_at=now or utc_now())
            .execution_options(synchronize_session=False)
        )
        return self.s.execute(stmt).rowcount

    def reschedule_pending(
        self,
        item_id: str | uuid.UUID,
        *,
        scheduled_for: datetime,
        payload: dict,
        now: datetime | None = None,
    ) -> bool:
        """Mise à jour en place d'un item encore `pending` (attempts conservé)."""
        iid = _coerce_uuid(item_id)
        if iid is None:
            return False
        stmt = (
            update(OutboxItem)
            .where(OutboxItem.id == iid, OutboxItem.status == OutboxStatus.PENDING)
            .values(scheduled_for=as_utc(scheduled_for), payload=dict(payload), updated_at=now or utc_now())
            .execution_options(synchronize_session=False)
        )
        return self.s.execute(stmt).rowcount == 1

    def delete_for_event(self, event_id: str | uuid.UUID) -> int:
        """Suppression explicite (miroir du ON DELETE CASCADE, même transaction)."""
        eid = _coerce_uuid(event_id)
        if eid is None:
            return 0
        stmt = (
            delete(OutboxItem)
            .where(OutboxItem.event_id == eid)
            .execution_options(synchronize_session=False)
        )
        return self.s.execute(stmt).rowcount
