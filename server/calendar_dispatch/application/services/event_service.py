from __future__ import annotations
"""server/calendar_dispatch/application/services/event_service.py
~~~~~~~~~~~~~~~~~~~~~~~~
Hooks de mutation des évènements → lignes notification_outbox.

- create_event()     : insère l'évènement + un rappel par (offset, canal)
- reschedule_event() : nouvelle plage horaire ; les rappels encore `pending`
                       sont mis à jour EN PLACE (attempts conservé), ou
                       annulés si l'évènement a déjà commencé
- update_details()   : titre/lieu/... ; rafraîchit le payload des `pending`
- cancel_reminders() : pending|processing → cancelled
- delete_event()     : suppression dure, items outbox compris (même transaction)

Les items `processing` sont en vol : ils ne sont jamais modifiés ici (sauf
annulation), le dispatcher relit le statut avant d'envoyer.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Iterable, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from calendar_dispatch.core.config import parse_reminder_offsets, settings
from calendar_dispatch.core.utils.datetime import Clock, to_iso, utc_now
from calendar_dispatch.domain.errors import EventValidationError
from calendar_dispatch.domain.status import OutboxStatus
from calendar_dispatch.infrastructure.messaging.outbox import Outbox
from calendar_dispatch.infrastructure.persistence.database.models.event import Event
from calendar_dispatch.infrastructure.persistence.database.session import open_session
from calendar_dispatch.infrastructure.persistence.repositories.event_repository import EventRepository
from calendar_dispatch.infrastructure.persistence.repositories.outbox_repository import OutboxRepository

log = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]

_DETAIL_FIELDS = ("title", "description", "location", "color", "all_day")


@dataclass(frozen=True)
class RescheduleResult:
    event_id: uuid.UUID
    updated: int
    cancelled: int
    skipped: int


def validate_window(start_at: datetime, end_at: datetime) -> None:
    if start_at.tzinfo is None or end_at.tzinfo is None:
        raise EventValidationError("start_at and end_at must carry a timezone offset")
    if end_at < start_at:
        raise EventValidationError(f"end_at ({end_at.isoformat()}) is before start_at ({start_at.isoformat()})")


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise EventValidationError(f"unknown timezone {name!r}") from exc
    return name


def build_payload(ev: Event, *, offset_minutes: int, recipient: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "kind": "event_reminder",
        "event_id": str(ev.id),
        "title": ev.title,
        "start_at": to_iso(ev.start_at),
        "end_at": to_iso(ev.end_at),
        "timezone": ev.timezone,
        "all_day": bool(ev.all_day),
        "location": ev.location,
        "offset_minutes": offset_minutes,
    }
    if recipient:
        payload["recipient"] = recipient
    return payload


class EventService:
    def __init__(
        self,
        *,
        session_factory: SessionFactory = open_session,
        reminder_offsets: Iterable[int] | None = None,
        default_channel: str | None = None,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self.reminder_offsets = parse_reminder_offsets(
            list(reminder_offsets) if reminder_offsets is not None else None
        )
        self.default_channel = default_channel or settings.DEFAULT_CHANNEL
        self.clock = clock

    # --- Create ---------------------------------------------------------------

    def create_event(
        self,
        *,
        title: str,
        start_at: datetime,
        end_at: datetime,
        timezone: str = "UTC",
        description: str = "",
        all_day: bool = False,
        location: str | None = None,
        color: str | None = None,
        channels: Sequence[str] | None = None,
        recipient: str | None = None,
        reminder_offsets: Iterable[int] | None = None,
    ) -> Event:
        validate_window(start_at, end_at)
        validate_timezone(timezone)
        offsets = (
            parse_reminder_offsets(list(reminder_offsets))
            if reminder_offsets is not None
            else self.reminder_offsets
        )
        channels = list(channels or [self.default_channel])
        now = self.clock()

        with self._session_factory() as s:
            ev = EventRepository(s).add(
                title=title,
                description=description or "",
                start_at=start_at,
                end_at=end_at,
                timezone=timezone,
                all_day=all_day,
                location=location,
                color=color,
                now=now,
            )
            outbox = Outbox(OutboxRepository(s))
            created = 0
            if start_at > now:
                for offset in offsets:
                    # Rappel dont l'heure est passée mais l'évènement à venir : dû immédiatement.
                    trigger = max(start_at - timedelta(minutes=offset), now)
                    for channel in channels:
                        outbox.save_item(
                            event_id=ev.id,
                            scheduled_for=trigger,
                            payload=build_payload(ev, offset_minutes=offset, recipient=recipient),
                            channel=channel,
                            now=now,
                        )
                        created += 1
            log.info("event %s created with %s reminder(s)", ev.id, created)
            return ev

    # --- Update ---------------------------------------------------------------

    def reschedule_event(
        self,
        event_id: str | uuid.UUID,
        *,
        start_at: datetime,
        end_at: datetime | None = None,
        timezone: str | None = None,
    ) -> RescheduleResult:
        now = self.clock()
        with self._session_factory() as s:
            events = EventRepository(s)
            ev = events.get(event_id)
            if ev is None:
                raise LookupError(f"event {event_id} not found")

            # Sans end_at explicite on conserve la durée.
            if end_at is None:
                end_at = start_at + (ev.end_at - ev.start_at)
            validate_window(start_at, end_at)
            fields: dict[str, Any] = {"start_at": start_at, "end_at": end_at}
            if timezone is not None:
                fields["timezone"] = validate_timezone(timezone)
            events.update(ev, now=now, **fields)

            repo = OutboxRepository(s)
            updated = cancelled = skipped = 0
            for item in repo.list_for_event(ev.id, statuses=[OutboxStatus.PENDING]):
                if start_at <= now:
                    changed = repo.cancel(item.id, now=now)
                    cancelled += int(changed)
                else:
                    payload = dict(item.payload or {})
                    offset = int(payload.get("offset_minutes", 0))
                    payload.update(build_payload(ev, offset_minutes=offset, recipient=payload.get("recipient")))
                    changed = repo.reschedule_pending(
                        item.id,
                        scheduled_for=max(start_at - timedelta(minutes=offset), now),
                        payload=payload,
                        now=now,
                    )
                    updated += int(changed)
                if not changed:
                    # Claimé par un dispatcher entre la lecture et l'UPDATE.
                    skipped += 1

            log.info(
                "event %s rescheduled to %s: %s updated, %s cancelled, %s in flight",
                ev.id, start_at.isoformat(), updated, cancelled, skipped,
            )
            return RescheduleResult(event_id=ev.id, updated=updated, cancelled=cancelled, skipped=skipped)

    def update_details(self, event_id: str | uuid.UUID, **fields: Any) -> Event:
        unknown = set(fields) - set(_DETAIL_FIELDS)
        if unknown:
            raise EventValidationError(f"not editable here: {sorted(unknown)} (use reschedule_event)")
        now = self.clock()
        with self._session_factory() as s:
            events = EventRepository(s)
            ev = events.get(event_id)
            if ev is None:
                raise LookupError(f"event {event_id} not found")
            events.update(ev, now=now, **fields)

            repo = OutboxRepository(s)
            for item in repo.list_for_event(ev.id, statuses=[OutboxStatus.PENDING]):
                payload = dict(item.payload or {})
                payload.update(
                    build_payload(
                        ev,
                        offset_minutes=int(payload.get("offset_minutes", 0)),
                        recipient=payload.get("recipient"),
                    )
                )
                repo.reschedule_pending(item.id, scheduled_for=item.scheduled_for, payload=payload, now=now)
            return ev

    # --- Cancel / delete ------------------------------------------------------

    def cancel_reminders(self, event_id: str | uuid.UUID) -> int:
        with self._session_factory() as s:
            n = OutboxRepository(s).cancel_for_event(event_id, now=self.clock())
        log.info("event %s: %s reminder(s) cancelled", event_id, n)
        return n

    def delete_event(self, event_id: str | uuid.UUID) -> bool:
        with self._session_factory() as s:
            deleted = EventRepository(s).delete(event_id)
        if deleted:
            log.info("event %s deleted (reminders removed)", event_id)
        return deleted
