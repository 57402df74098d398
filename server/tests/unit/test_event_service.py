# server/tests/unit/test_event_service.py
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

pytestmark = pytest.mark.unit

START = datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)


def _items(Session, event_id):
    from calendar_dispatch.infrastructure.persistence.repositories.outbox_repository import OutboxRepository

    with Session() as s:
        return OutboxRepository(s).list_for_event(event_id)


def _count(Session, table):
    with Session() as s:
        return s.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()


# --- Création -----------------------------------------------------------------

def test_create_event_writes_one_reminder_per_offset_and_channel(Session, event_service):
    ev = event_service.create_event(
        title="Comité",
        start_at=START,
        end_at=START + timedelta(hours=1),
        timezone="Europe/Paris",
        location="Salle 3",
        channels=["in_app", "email"],
        recipient="ada@example.test",
        reminder_offsets=[60, 15],
    )

    items = _items(Session, ev.id)
    assert len(items) == 4
    assert sorted({i.scheduled_for for i in items}) == [START - timedelta(minutes=60), START - timedelta(minutes=15)]
    assert {i.channel for i in items} == {"in_app", "email"}

    payload = items[0].payload
    assert payload["kind"] == "event_reminder"
    assert payload["event_id"] == str(ev.id)
    assert payload["title"] == "Comité"
    assert payload["timezone"] == "Europe/Paris"
    assert payload["start_at"] == START.isoformat()
    assert payload["recipient"] == "ada@example.test"


def test_reminder_already_past_is_due_immediately(Session, clock, event_service):
    start = clock() + timedelta(minutes=5)
    ev = event_service.create_event(title="Café", start_at=start, end_at=start + timedelta(minutes=15))

    (item,) = _items(Session, ev.id)
    assert item.scheduled_for == clock()
    assert item.payload["offset_minutes"] == 15


def test_past_event_gets_no_reminder(Session, clock, event_service):
    start = clock() - timedelta(hours=1)
    ev = event_service.create_event(title="Hier", start_at=start, end_at=start + timedelta(minutes=30))
    assert _items(Session, ev.id) == []


@pytest.mark.parametrize(
    "start_at,end_at",
    [
        (START, START - timedelta(minutes=1)),
        (START.replace(tzinfo=None), START.replace(tzinfo=None) + timedelta(hours=1)),
    ],
)
def test_create_event_rejects_invalid_window(Session, event_service, start_at, end_at):
    from calendar_dispatch.domain.errors import EventValidationError

    with pytest.raises(EventValidationError):
        event_service.create_event(title="x", start_at=start_at, end_at=end_at)
    assert _count(Session, "events") == 0


def test_create_event_rejects_unknown_timezone(Session, event_service):
    from calendar_dispatch.domain.errors import EventValidationError

    with pytest.raises(EventValidationError):
        event_service.create_event(title="x", start_at=START, end_at=START, timezone="Mars/Olympus")
    assert _count(Session, "notification_outbox") == 0


def test_database_rejects_end_before_start(Session, clock):
    from calendar_dispatch.infrastructure.persistence.database.models.event import Event

    with Session() as s:
        s.add(Event(id=uuid.uuid4(), title="x", start_at=START, end_at=START - timedelta(seconds=1)))
        with pytest.raises(IntegrityError):
            s.flush()
        s.rollback()


# --- Replanification ------------------------------------------------------------

def test_reschedule_updates_pending_in_place(Session, clock, make_event, event_service, session_factory):
    from calendar_dispatch.domain.status import OutboxStatus
    from calendar_dispatch.infrastructure.persistence.repositories.outbox_repository import OutboxRepository

    ev = make_event()
    (before,) = _items(Session, ev.id)

    # Une tentative déjà consommée : elle doit survivre à la replanification
    with session_factory() as s:
        repo = OutboxRepository(s)
        assert repo.claim(before.id, now=clock())
        assert repo.mark_retry(before.id, when=clock() + timedelta(seconds=30), error="503", now=clock())

    new_start = START + timedelta(days=1)
    result = event_service.reschedule_event(ev.id, start_at=new_start)
    assert (result.updated, result.cancelled, result.skipped) == (1, 0, 0)

    (after,) = _items(Session, ev.id)
    assert after.id == before.id
    assert after.status is OutboxStatus.PENDING
    assert after.attempts == 1
    assert after.scheduled_for == new_start - timedelta(minutes=15)
    assert after.payload["start_at"] == new_start.isoformat()
    # Durée conservée sans end_at explicite
    assert after.payload["end_at"] == (new_start + timedelta(hours=1)).isoformat()


def test_reschedule_leaves_in_flight_and_sent_alone(Session, clock, make_event, event_service, session_factory):
    from calendar_dispatch.domain.status import OutboxStatus
    from calendar_dispatch.infrastructure.persistence.repositories.outbox_repository import OutboxRepository

    ev = make_event(reminder_offsets=[60, 30, 15])
    first, second, third = _items(Session, ev.id)
    with session_factory() as s:
        repo = OutboxRepository(s)
        repo.claim(first.id, now=clock())
        repo.mark_sent(first.id, now=clock())
        repo.claim(second.id, now=clock())

    result = event_service.reschedule_event(ev.id, start_at=START + timedelta(hours=3))
    assert result.updated == 1

    by_id = {i.id: i for i in _items(Session, ev.id)}
    assert by_id[first.id].status is OutboxStatus.SENT
    assert by_id[first.id].scheduled_for == first.scheduled_for
    assert by_id[second.id].status is OutboxStatus.PROCESSING
    assert by_id[second.id].scheduled_for == second.scheduled_for
    assert by_id[third.id].scheduled_for == START + timedelta(hours=3) - timedelta(minutes=15)


def test_reschedule_into_the_past_cancels_pending(Session, clock, make_event, event_service):
    from calendar_dispatch.domain.status import OutboxStatus

    ev = make_event()
    result = event_service.reschedule_event(ev.id, start_at=clock() - timedelta(minutes=1))
    assert result.cancelled == 1
    (item,) = _items(Session, ev.id)
    assert item.status is OutboxStatus.CANCELLED


def test_reschedule_validates_and_requires_existing_event(make_event, event_service):
    from calendar_dispatch.domain.errors import EventValidationError

    ev = make_event()
    with pytest.raises(EventValidationError):
        event_service.reschedule_event(ev.id, start_at=START, end_at=START - timedelta(hours=1))
    with pytest.raises(LookupError):
        event_service.reschedule_event(uuid.uuid4(), start_at=START)


def test_update_details_refreshes_pending_payload(Session, make_event, event_service):
    from calendar_dispatch.domain.errors import EventValidationError

    ev = make_event(title="Ancien titre")
    event_service.update_details(ev.id, title="Nouveau titre", location="Visio")

    (item,) = _items(Session, ev.id)
    assert item.payload["title"] == "Nouveau titre"
    assert item.payload["location"] == "Visio"
    assert item.payload["offset_minutes"] == 15

    with pytest.raises(EventValidationError):
        event_service.update_details(ev.id, start_at=START)


# --- Annulation / suppression ---------------------------------------------------

def test_cancel_reminders(Session, make_event, event_service):
    from calendar_dispatch.domain.status import OutboxStatus

    ev = make_event(reminder_offsets=[60, 15])
    assert event_service.cancel_reminders(ev.id) == 2
    assert {i.status for i in _items(Session, ev.id)} == {OutboxStatus.CANCELLED}
    # Idempotent
    assert event_service.cancel_reminders(ev.id) == 0


def test_delete_event_leaves_no_orphan(Session, make_event, event_service):
    keep = make_event(title="garde")
    gone = make_event(title="supprimé", reminder_offsets=[60, 15])

    assert event_service.delete_event(gone.id) is True
    assert event_service.delete_event(gone.id) is False

    assert _items(Session, gone.id) == []
    assert len(_items(Session, keep.id)) == 1
    assert _count(Session, "events") == 1


def test_foreign_key_cascade_on_raw_delete(Session, make_event):
    ev = make_event(reminder_offsets=[60, 15])
    assert _count(Session, "notification_outbox") == 2

    with Session() as s:
        s.execute(text("DELETE FROM events WHERE id = :id"), {"id": str(ev.id)})
        s.commit()

    assert _count(Session, "notification_outbox") == 0
