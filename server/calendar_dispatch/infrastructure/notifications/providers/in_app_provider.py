from __future__ import annotations
"""server/calendar_dispatch/infrastructure/notifications/providers/in_app_provider.py
~~~~~~~~~~~~~~~~~~~~~~~~
Push in-app : POST JSON vers le service de push de l'application.
"""
import logging

import httpx

from calendar_dispatch.infrastructure.notifications.payload import ReminderPayload

log = logging.getLogger(__name__)


class InAppProvider:
    def __init__(self, url: str, *, timeout: float = 5.0):
        if not url:
            raise ValueError("IN_APP_PUSH_URL must be provided")
        self.url = url
        self.timeout = timeout

    def deliver(self, payload: ReminderPayload) -> bool:
        body = payload.model_dump(mode="json")
        body["message"] = payload.summary()
        r = httpx.post(self.url, json=body, timeout=self.timeout)
        if r.status_code >= 400:
            log.warning("in_app push refusé: HTTP %s pour event_id=%s", r.status_code, payload.event_id)
            return False
        return True
