# server/tests/conftest.py
"""
Conftest *global* pour toute la suite de tests.

Points clés :
- ENV sûres posées AVANT tout import calendar_dispatch.* (Settings() est
  instancié à l'import) : SQLite in-memory, pas de canal réel configuré.
- Pour les tests @unit uniquement :
  - Monte une DB SQLite in-memory partagée + Base.create_all (FK ON pour
    que ON DELETE CASCADE soit effectif).
  - Patch FORT de la pile DB : le sessionmaker/engine singletons du module
    session pointent vers SQLite, donc `open_session()` aussi.
  - Active Celery en mode "eager" (exécution in-process).
  - Purge des tables après chaque test.
- Fixtures communes : horloge contrôlable, notifier qui enregistre, fabrique
  de Dispatcher.
"""

import importlib
import os
import pkgutil
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


# ============================================================================
# Helpers
# ============================================================================
def _is_unit(request: pytest.FixtureRequest) -> bool:
    """True si le test courant est marqué @pytest.mark.unit."""
    return request.node.get_closest_marker("unit") is not None


def pytest_configure(config) -> None:
    """
    S'exécute avant la collecte → parfait pour poser les ENV lues par Settings().
    """
    os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    os.environ.setdefault("REMINDER_OFFSETS_MINUTES", "15")
    os.environ.setdefault("DISPATCHER_ID", "pytest-dispatcher")


# ============================================================================
# UNIT-ONLY: DB SQLite in-memory partagée + Base.metadata.create_all
# ============================================================================
@pytest.fixture(scope="session")
def _sqlite_engine_unit():
    """
    Engine in-memory **partagé** entre connexions (StaticPool + check_same_thread=False)
    + activation des contraintes FK sur chaque connexion.
    """
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    # Charger tous les modèles avant create_all
    from calendar_dispatch.infrastructure.persistence.database import base as db_base
    from calendar_dispatch.infrastructure.persistence.database import models as models_pkg

    for _finder, name, _ispkg in pkgutil.walk_packages(
        models_pkg.__path__, models_pkg.__name__ + "."
    ):
        importlib.import_module(name)

    db_base.Base.metadata.create_all(engine)
    return engine


@pytest.fixture(scope="session")
def _Session_unit(_sqlite_engine_unit):
    """Retourne un sessionmaker lié au moteur SQLite in-memory."""
    return sessionmaker(
        bind=_sqlite_engine_unit,
        future=True,
        autoflush=True,
        expire_on_commit=False,
    )


@pytest.fixture
def Session(request, _Session_unit):
    """
    Fournit un sessionmaker à utiliser comme `with Session() as s:` pour les tests unitaires.
    Sera *skippé* s'il est injecté dans un test non marqué @unit (sécurité d'usage).
    """
    if not _is_unit(request):
        pytest.skip("Session fixture is only available for unit tests")
    return _Session_unit


@pytest.fixture
def session_factory(Session):
    """
    Équivalent de `open_session()` sur SQLite : commit si OK, rollback sinon.
    À passer en `session_factory=` aux services.
    """
    @contextmanager
    def _open():
        s = Session()
        try:
            yield s
            s.commit()
        except Exception:
            s.rollback()
            raise
        finally:
            s.close()

    return _open


# Purge DB entre tests unitaires (évite les fuites d'état)
@pytest.fixture(autouse=True)
def _clear_db_between_unit_tests(request, _Session_unit):
    """
    Après chaque test unitaire, on supprime le contenu de toutes les tables.
    ⚠️ Générateur : doit 'yield' aussi hors unit.
    """
    if not _is_unit(request):
        yield
        return

    yield
    from calendar_dispatch.infrastructure.persistence.database import base as db_base
    with _Session_unit() as s:
        for table in reversed(db_base.Base.metadata.sorted_tables):
            s.execute(table.delete())
        s.commit()


# ============================================================================
# UNIT-ONLY: Patch DB fort (sessionmaker + engine singletons)
# ============================================================================
@pytest.fixture(autouse=True)
def patch_db_stack_for_unit(request, monkeypatch, _Session_unit, _sqlite_engine_unit):
    """
    Rend *impossible* l'usage de Postgres pendant les tests unitaires.

    Les services prennent `session_factory=open_session` par défaut (lié à la
    définition) : on ne peut pas remplacer `open_session` lui-même. On remplace
    donc les singletons qu'il utilise (`_SessionLocal`, `_engine`) : tout
    `open_session()` ouvre alors une session SQLite.
    """
    if not _is_unit(request):
        return

    sess_mod = importlib.import_module("calendar_dispatch.infrastructure.persistence.database.session")
    monkeypatch.setattr(sess_mod, "_SessionLocal", _Session_unit, raising=True)
    monkeypatch.setattr(sess_mod, "_engine", _sqlite_engine_unit, raising=True)


# ============================================================================
# UNIT-ONLY: Celery en mode "eager" (tâches exécutées in-process)
# ============================================================================
@pytest.fixture(autouse=True)
def celery_eager(request):
    """
    Active le mode 'eager' de Celery en unit (tâches exécutées in-process).
    ⚠️ Comme c'est un fixture générateur, il DOIT toujours 'yield', même hors unit.
    """
    if not _is_unit(request):
        yield
        return

    from calendar_dispatch.workers.celery_app import celery

    prev_always = celery.conf.task_always_eager
    prev_propag = celery.conf.task_eager_propagates
    celery.conf.task_always_eager = True
    celery.conf.task_eager_propagates = True
    try:
        yield
    finally:
        celery.conf.task_always_eager = prev_always
        celery.conf.task_eager_propagates = prev_propag


# ============================================================================
# Horloge contrôlable
# ============================================================================
T0 = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Horloge figée ; avance uniquement via advance()/set()."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Notifier factice
# ============================================================================
class RecordingNotifier:
    """
    Enregistre chaque send(channel, payload).
    `outcomes` : liste consommée dans l'ordre ; un élément peut être un
    DeliveryOutcome, une exception (levée), ou un callable(channel, payload).
    Liste vide → succès.
    """

    def __init__(self, outcomes=None):
        self.calls: list[tuple[str, dict]] = []
        self.outcomes = list(outcomes or [])

    def send(self, channel, payload):
        from calendar_dispatch.infrastructure.notifications.notifier import DeliveryOutcome

        self.calls.append((channel, dict(payload)))
        if not self.outcomes:
            return DeliveryOutcome.success(channel=channel)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(channel, payload)
        return outcome


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    """Notifier qui échoue toujours (erreur transitoire côté provider)."""
    from calendar_dispatch.infrastructure.notifications.notifier import DeliveryOutcome

    class _Failing(RecordingNotifier):
        def send(self, channel, payload):
            self.calls.append((channel, dict(payload)))
            return DeliveryOutcome.failure(f"{channel}: HTTPError: 503 upstream unavailable")

    return _Failing()


# ============================================================================
# Fabriques : config, dispatcher, évènements
# ============================================================================
@pytest.fixture
def dispatch_config():
    """Config de test : backoff court, petit batch, timeouts en ms raisonnables."""
    from calendar_dispatch.core.config import DispatchConfig

    def _make(**overrides):
        data = dict(
            poll_interval_ms=1_000,
            batch_size=50,
            max_attempts=3,
            backoff_base_ms=1_000,
            backoff_max_ms=60_000,
            lease_duration_ms=30_000,
            notifier_timeout_ms=2_000,
            stale_after_ms=300_000,
        )
        data.update(overrides)
        return DispatchConfig(**data)

    return _make


@pytest.fixture
def make_dispatcher(session_factory, clock, dispatch_config):
    """Fabrique de Dispatcher branchés sur SQLite + horloge de test ; fermés en teardown."""
    from calendar_dispatch.application.services.dispatch_service import Dispatcher

    created = []

    def _make(notifier, *, holder_id="dispatcher-a", config=None, max_workers=4, **overrides):
        d = Dispatcher(
            notifier,
            config=config or dispatch_config(**overrides),
            clock=clock,
            session_factory=session_factory,
            holder_id=holder_id,
            max_workers=max_workers,
        )
        created.append(d)
        return d

    yield _make
    for d in created:
        d.close()


@pytest.fixture
def event_service(session_factory, clock):
    from calendar_dispatch.application.services.event_service import EventService

    return EventService(session_factory=session_factory, reminder_offsets=[15], default_channel="in_app", clock=clock)


@pytest.fixture
def make_event(event_service):
    """Crée un évènement (+ rappels) d'une heure, par défaut le 2025-06-01 à 10:00 UTC."""
    def _make(start_at=None, *, duration=timedelta(hours=1), **kw):
        start_at = start_at or datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)
        kw.setdefault("title", "Standup")
        return event_service.create_event(start_at=start_at, end_at=start_at + duration, **kw)

    return _make


@pytest.fixture
def make_notifier():
    """Fabrique de RecordingNotifier à issues scriptées."""
    return RecordingNotifier
