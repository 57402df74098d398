# server/calendar_dispatch/workers/tasks/outbox_tasks.py
from __future__ import annotations

from typing import Any

from celery.utils.log import get_task_logger

from calendar_dispatch.application.services.dispatch_service import Dispatcher
from calendar_dispatch.core.config import DispatchConfig
from calendar_dispatch.domain.errors import StorageUnavailable
from calendar_dispatch.infrastructure.notifications.notifier import build_notifier
from calendar_dispatch.workers.celery_app import celery

logger = get_task_logger(__name__)

_dispatcher: Dispatcher | None = None


def get_dispatcher() -> Dispatcher:
    """Un Dispatcher par process worker : holder_id (hostname:pid) stable pour le lease."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher(build_notifier(), config=DispatchConfig.from_settings())
    return _dispatcher


def dispatch_outbox_cycle(dispatcher: Dispatcher | None = None) -> dict[str, Any]:
    """
    Exécute UN cycle de dispatch et retourne son rapport (dict sérialisable).

    - Lease détenu par un autre worker → {"skipped": True, ...}
    - Stockage indisponible → {"aborted": True} ; pas de retry Celery : le
      prochain tick beat fait office de retry.
    """
    dispatcher = dispatcher or get_dispatcher()
    try:
        report = dispatcher.run_cycle()
    except StorageUnavailable as exc:
        logger.error("outbox.dispatch aborted: %s", exc)
        return {"aborted": True, "error": str(exc)}
    return report.as_dict()


@celery.task(name="outbox.dispatch")
def dispatch_outbox_task() -> dict[str, Any]:
    return dispatch_outbox_cycle()
