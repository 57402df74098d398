from __future__ import annotations
"""server/calendar_dispatch/workers/dispatch_loop.py
~~~~~~~~~~~~~~~~~~~~~~~~
Boucle de poll autonome (hors Celery) :

    python -m calendar_dispatch.workers.dispatch_loop

- un cycle Dispatcher.run_cycle() par tick (DISPATCH_POLL_INTERVAL_MS)
- StorageUnavailable : loggué, aucune progression, on retente au tick suivant
- SIGTERM / SIGINT : arrêt propre, le lease est rendu
- wake() : réveil anticipé (p.ex. juste après un insert dans le même process)
"""

import logging
import signal
import threading

from calendar_dispatch.application.services.dispatch_service import CycleReport, Dispatcher
from calendar_dispatch.core.config import DispatchConfig
from calendar_dispatch.core.logging import setup_logging
from calendar_dispatch.domain.errors import StorageUnavailable
from calendar_dispatch.infrastructure.notifications.notifier import build_notifier

logger = logging.getLogger(__name__)


class DispatchLoop:
    def __init__(self, dispatcher: Dispatcher, *, poll_interval_ms: int | None = None):
        self.dispatcher = dispatcher
        self.poll_interval = (poll_interval_ms or dispatcher.config.poll_interval_ms) / 1000
        self._stop = threading.Event()
        self._wake = threading.Event()
        self.cycles = 0

    def run_once(self) -> CycleReport | None:
        self.cycles += 1
        try:
            return self.dispatcher.run_cycle()
        except StorageUnavailable:
            # Déjà loggué avec la trace par le dispatcher.
            logger.warning("dispatch loop: cycle %s aborted, retry in %.1fs", self.cycles, self.poll_interval)
            return None

    def run_forever(self, *, max_cycles: int | None = None) -> None:
        logger.info(
            "dispatch loop started holder=%s interval=%.1fs", self.dispatcher.holder_id, self.poll_interval
        )
        try:
            while not self._stop.is_set():
                self.run_once()
                if max_cycles is not None and self.cycles >= max_cycles:
                    break
                self._wake.wait(self.poll_interval)
                self._wake.clear()
        finally:
            self.dispatcher.close()
            logger.info("dispatch loop stopped after %s cycles", self.cycles)

    def wake(self) -> None:
        self._wake.set()

    def stop(self, *_: object) -> None:
        self._stop.set()
        self._wake.set()


def main() -> None:
    setup_logging()
    dispatcher = Dispatcher(build_notifier(), config=DispatchConfig.from_settings())
    loop = DispatchLoop(dispatcher)
    signal.signal(signal.SIGTERM, loop.stop)
    signal.signal(signal.SIGINT, loop.stop)
    loop.run_forever()


if __name__ == "__main__":
    main()
