# server/calendar_dispatch/infrastructure/messaging/outbox.py
from __future__ import annotations
"""
Service Outbox : API haut-niveau au-dessus du repository
- save_item() : création d'un rappel à livrer
- due_items() : sélection des items "dûs"
- claim() / mark_sent() / record_failure()
- requeue_stale() : récupération des items bloqués en processing

La décision retry / échec définitif et le calcul du backoff viennent de
domain.policies ; ce module ne fait qu'appliquer les transitions.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Mapping

from calendar_dispatch.core.config import RetryPolicy
from calendar_dispatch.core.utils.datetime import utc_now
from calendar_dispatch.domain.policies import FailureDecision, decide_after_failure, next_attempt_at
from calendar_dispatch.infrastructure.persistence.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)

STALE_PROCESSING_ERROR = "processing lease expired"


class Outbox:
    def __init__(self, repo: OutboxRepository):
        self.repo = repo

    # --- Écriture -------------------------------------------------------------

    def save_item(
        self,
        *,
        event_id: str | uuid.UUID,
        scheduled_for: datetime,
        payload: Mapping[str, Any],
        channel: str = "in_app",
        now: datetime | None = None,
    ):
        """Crée un item outbox `pending`."""
        return self.repo.insert(
            event_id=event_id,
            scheduled_for=scheduled_for,
            payload=dict(payload),
            channel=channel,
            now=now,
        )

    # --- Lecture --------------------------------------------------------------

    def due_items(self, *, limit: int = 100, as_of: datetime | None = None):
        """Items dus à `as_of` (UTC now par défaut), triés par scheduled_for."""
        return self.repo.fetch_due(limit=limit, as_of=as_of or utc_now())

    # --- Transitions d’état ---------------------------------------------------

    def claim(self, item_id, *, now: datetime | None = None) -> bool:
        return self.repo.claim(item_id, now=now)

    def mark_sent(self, item_id, *, now: datetime | None = None) -> bool:
        return self.repo.mark_sent(item_id, now=now)

    def record_failure(
        self,
        item_id,
        *,
        attempts: int,
        error: str,
        policy: RetryPolicy,
        now: datetime | None = None,
    ) -> FailureDecision | None:
        """
        Applique la politique après un échec de livraison.
        attempts = valeur après le claim (tentative échouée incluse).
        Retourne la décision appliquée, ou None si l'UPDATE n'a rien touché
        (item annulé/supprimé pendant l'envoi).
        """
        now = now or utc_now()
        decision = decide_after_failure(attempts, policy)
        if decision is FailureDecision.RETRY:
            when = next_attempt_at(now, attempts, policy)
            changed = self.repo.mark_retry(item_id, when=when, error=error, now=now)
            if changed:
                logger.warning(
                    "outbox: item_id=%s attempt %s/%s failed, retry at %s: %s",
                    item_id, attempts, policy.max_attempts, when.isoformat(), error,
                )
        else:
            changed = self.repo.mark_failed(item_id, error=error, now=now)
            if changed:
                logger.error(
                    "outbox: item_id=%s permanently failed after %s attempts: %s",
                    item_id, attempts, error,
                )
        return decision if changed else None

    def requeue_stale(
        self,
        *,
        older_than: datetime,
        limit: int,
        policy_for,
        now: datetime | None = None,
    ) -> int:
        """
        Items restés en `processing` (dispatcher mort entre claim et écriture
        finale) : traités comme un échec de livraison.
        """
        now = now or utc_now()
        n = 0
        for item in self.repo.fetch_stale_processing(older_than=older_than, limit=limit):
            decision = self.record_failure(
                item.id,
                attempts=item.attempts,
                error=STALE_PROCESSING_ERROR,
                policy=policy_for(item.channel),
                now=now,
            )
            if decision is not None:
                n += 1
        return n
