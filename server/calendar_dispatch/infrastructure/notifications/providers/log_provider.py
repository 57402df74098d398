from __future__ import annotations
"""server/calendar_dispatch/infrastructure/notifications/providers/log_provider.py
~~~~~~~~~~~~~~~~~~~~~~~~
Provider stub (STUB_NOTIFIER=1) : journalise le rappel et réussit toujours.
"""
import logging

from calendar_dispatch.infrastructure.notifications.payload import ReminderPayload

log = logging.getLogger(__name__)


class LogProvider:
    def __init__(self, channel: str):
        self.channel = channel

    def deliver(self, payload: ReminderPayload) -> bool:
        log.info("[stub:%s] %s (event_id=%s)", self.channel, payload.summary(), payload.event_id)
        return True
