from __future__ import annotations
"""server/calendar_dispatch/core/logging.py
~~~~~~~~~~~~~~~~~~~~~~~~
Configuration logs.
"""
import logging


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Le SQL d'un poll toutes les 5s noierait le reste.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
