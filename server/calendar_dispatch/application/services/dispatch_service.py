from __future__ import annotations
"""server/calendar_dispatch/application/services/dispatch_service.py
~~~~~~~~~~~~~~~~~~~~~~~~
Dispatcher : un cycle de poll de notification_outbox.

Déroulé d'un cycle (run_cycle) :
  1. acquérir / renouveler le lease "dispatch_lock" ; détenu ailleurs → cycle sauté
  2. remettre en circulation les items bloqués en `processing` (crash en vol)
  3. lire les items dus (pending, scheduled_for <= now), batch borné
  4. pour chacun : claim conditionnel (course perdue → on passe)
  5. relire le statut (annulé entre-temps → StaleWork, pas d'envoi)
  6. envoyer via le Notifier avec timeout ; sent / retry / failed
  7. avancer le watermark APRÈS les écritures finales du batch :
     batch plein → jusqu'au scheduled_for du dernier item traité ;
     lease perdu en cours de batch → watermark laissé au nouveau détenteur

Chaque transition est sa propre transaction (open_session). Une panne de
stockage (StorageUnavailable) abandonne le cycle entier : pas de watermark,
le loop retente au tick suivant.

Un envoi qui dépasse le timeout laisse son thread bloqué dans le pool : le pool
est alors remplacé, les envois suivants ne font jamais la queue derrière lui.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, ContextManager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calendar_dispatch.core.config import DispatchConfig, default_dispatcher_id
from calendar_dispatch.core.utils.datetime import Clock, ms, to_iso, utc_now
from calendar_dispatch.domain.errors import DeliveryError, DeliveryTimeout, StaleWork, StorageUnavailable
from calendar_dispatch.domain.policies import FailureDecision
from calendar_dispatch.domain.status import OutboxStatus
from calendar_dispatch.infrastructure.messaging.outbox import Outbox
from calendar_dispatch.infrastructure.notifications.notifier import Notifier
from calendar_dispatch.infrastructure.persistence.database.session import open_session
from calendar_dispatch.infrastructure.persistence.repositories.outbox_repository import OutboxRepository
from calendar_dispatch.infrastructure.persistence.repositories.scheduler_state_repository import (
    SchedulerStateRepository,
)
from calendar_dispatch.infrastructure.scheduling.lease import LeaseManager

logger = logging.getLogger(__name__)

WATERMARK_KEY = "dispatch_watermark"

SessionFactory = Callable[[], ContextManager[Session]]


@dataclass
class CycleReport:
    started_at: datetime
    holder_id: str
    skipped: bool = False
    requeued: int = 0
    due: int = 0
    claimed: int = 0
    lost_races: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    stale: int = 0
    lease_lost: bool = False
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = to_iso(self.started_at)
        return data


@dataclass(frozen=True)
class _DueItem:
    """Primitives seulement : on ne garde pas d'objets ORM détachés entre transactions."""
    id: Any
    scheduled_for: datetime
    channel: str
    payload: dict


class Dispatcher:
    def __init__(
        self,
        notifier: Notifier,
        *,
        config: DispatchConfig | None = None,
        clock: Clock = utc_now,
        session_factory: SessionFactory = open_session,
        holder_id: str | None = None,
        max_workers: int = 4,
    ):
        self.notifier = notifier
        self.config = config or DispatchConfig.from_settings()
        self.clock = clock
        self._session_factory = session_factory
        self.holder_id = holder_id or default_dispatcher_id()
        self.lease = LeaseManager(
            self.holder_id,
            ms(self.config.lease_duration_ms),
            session_factory=session_factory,
        )
        self._max_workers = max_workers
        self._executor = self._new_executor()

    # --- Cycle -----------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        now = self.clock()
        report = CycleReport(started_at=now, holder_id=self.holder_id)
        try:
            if not self.lease.acquire(now):
                report.skipped = True
                logger.debug("dispatch: lease held elsewhere, cycle skipped")
                return report

            report.requeued = self._requeue_stale(now)

            due = self._fetch_due(now)
            report.due = len(due)

            scanned_through = now
            for item in due:
                if not self.lease.ensure(self.clock()):
                    report.lease_lost = True
                    logger.warning("dispatch: lease lost mid-batch, stopping after %s items", report.claimed)
                    break
                self._process(item, report)
                scanned_through = item.scheduled_for

            if report.lease_lost:
                return report
            # Batch plein : des items dus avant `now` peuvent rester en attente.
            self._advance_watermark(scanned_through if len(due) >= self.config.batch_size else now, report)
        except SQLAlchemyError as exc:
            logger.exception("dispatch: storage unavailable, cycle aborted")
            raise StorageUnavailable(str(exc)) from exc

        if report.due or report.requeued:
            logger.info(
                "dispatch: cycle done due=%s claimed=%s sent=%s retried=%s failed=%s stale=%s lost=%s requeued=%s",
                report.due, report.claimed, report.sent, report.retried,
                report.failed, report.stale, report.lost_races, report.requeued,
            )
        return report

    def close(self) -> None:
        """Rend le lease et libère le pool de threads du notifier."""
        try:
            self.lease.release(self.clock())
        except SQLAlchemyError:
            logger.exception("dispatch: failed to release lease")
        self._executor.shutdown(wait=False, cancel_futures=True)

    def watermark(self) -> dict[str, Any] | None:
        with self._session_factory() as s:
            return SchedulerStateRepository(s).get_value(WATERMARK_KEY)

    # --- Étapes ----------------------------------------------------------------

    def _requeue_stale(self, now: datetime) -> int:
        with self._session_factory() as s:
            return Outbox(OutboxRepository(s)).requeue_stale(
                older_than=now - ms(self.config.stale_after_ms),
                limit=self.config.batch_size,
                policy_for=self.config.policy_for,
                now=now,
            )

    def _fetch_due(self, now: datetime) -> list[_DueItem]:
        with self._session_factory() as s:
            rows = Outbox(OutboxRepository(s)).due_items(limit=self.config.batch_size, as_of=now)
            return [
                _DueItem(id=r.id, scheduled_for=r.scheduled_for, channel=r.channel, payload=dict(r.payload or {}))
                for r in rows
            ]

    def _process(self, item: _DueItem, report: CycleReport) -> None:
        # Claim : transaction courte et dédiée, commit avant tout envoi.
        with self._session_factory() as s:
            claimed = Outbox(OutboxRepository(s)).claim(item.id, now=self.clock())
        if not claimed:
            report.lost_races += 1
            logger.debug("dispatch: item_id=%s claimed elsewhere", item.id)
            return
        report.claimed += 1

        try:
            attempts = self._recheck(item)
        except StaleWork as exc:
            report.stale += 1
            logger.info("dispatch: %s", exc)
            return

        policy = self.config.policy_for(item.channel)
        try:
            self._deliver(item)
        except DeliveryError as exc:
            error = str(exc) or type(exc).__name__
            with self._session_factory() as s:
                decision = Outbox(OutboxRepository(s)).record_failure(
                    item.id, attempts=attempts, error=error, policy=policy, now=self.clock()
                )
            report.errors.append(f"{item.id}: {error}")
            if decision is FailureDecision.RETRY:
                report.retried += 1
            elif decision is FailureDecision.GIVE_UP:
                report.failed += 1
            else:
                report.stale += 1
            return

        with self._session_factory() as s:
            marked = Outbox(OutboxRepository(s)).mark_sent(item.id, now=self.clock())
        if marked:
            report.sent += 1
        else:
            # Annulé ou supprimé pendant l'envoi : le statut reste celui posé par l'autre acteur.
            report.stale += 1
            logger.info("dispatch: item_id=%s changed during send, sent state not recorded", item.id)

    def _recheck(self, item: _DueItem) -> int:
        """Relit l'item après claim ; StaleWork s'il a été annulé/supprimé. Retourne attempts."""
        with self._session_factory() as s:
            row = OutboxRepository(s).get(item.id)
            if row is None or row.status != OutboxStatus.PROCESSING:
                raise StaleWork(item.id)
            return row.attempts

    def _deliver(self, item: _DueItem) -> None:
        timeout = self.config.notifier_timeout_ms / 1000
        future = self._executor.submit(self.notifier.send, item.channel, item.payload)
        try:
            outcome = future.result(timeout=timeout)
        except FuturesTimeoutError:
            future.cancel()
            self._replace_executor()
            raise DeliveryTimeout(
                f"notifier timed out after {self.config.notifier_timeout_ms} ms", channel=item.channel
            ) from None
        except DeliveryError:
            raise
        except Exception as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}", channel=item.channel) from exc
        if not outcome.ok:
            raise DeliveryError(outcome.error or "delivery failed", channel=item.channel)

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="notifier")

    def _replace_executor(self) -> None:
        """Abandonne le pool qui porte un thread bloqué ; il s'éteindra quand ce thread rendra la main."""
        stuck, self._executor = self._executor, self._new_executor()
        stuck.shutdown(wait=False, cancel_futures=True)
        logger.warning("dispatch: notifier thread stuck, executor replaced")

    def _advance_watermark(self, scanned_through: datetime, report: CycleReport) -> None:
        # Lecture-modification-écriture dans UNE transaction.
        with self._session_factory() as s:
            repo = SchedulerStateRepository(s)
            previous = repo.get_value(WATERMARK_KEY) or {}
            repo.put(
                WATERMARK_KEY,
                {
                    "scanned_through": to_iso(scanned_through),
                    "cycle": int(previous.get("cycle", 0)) + 1,
                    "holder_id": self.holder_id,
                    "due": report.due,
                    "sent": report.sent,
                    "retried": report.retried,
                    "failed": report.failed,
                    "stale": report.stale,
                },
                now=self.clock(),
            )
