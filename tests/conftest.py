import secrets

import pytest

from smartlocker.adapters.blobs import LocalBlobStore
from smartlocker.adapters.mqtt_client import InMemoryEventRepo
from smartlocker.adapters.store import InMemoryStateStore
from smartlocker.application.admin import ensure_lockers
from smartlocker.application.hardware import HardwareService
from smartlocker.application.session import SessionContext
from smartlocker.domain.models import Role, SensorEvent, device_id_for


# -------------------------------------------------------------------
# Store + colaboradores aislados por test
# -------------------------------------------------------------------

@pytest.fixture
async def store():
    s = InMemoryStateStore()
    await ensure_lockers(s, 2)
    return s


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def hardware(store):
    return HardwareService(store, InMemoryEventRepo(), weight_threshold=45)


@pytest.fixture
async def make_session(store):
    """Fabrica de sesiones; todas se cierran al terminar el test."""
    created = []

    def _make(role: Role, identity: str, watchdog_seconds: float = 0.05) -> SessionContext:
        session = SessionContext(secrets.token_hex(8), identity, role, store, watchdog_seconds)
        created.append(session)
        return session

    yield _make
    for session in created:
        await session.close()


@pytest.fixture
def courier(make_session):
    return make_session(Role.COURIER, "courier-01", watchdog_seconds=5)


@pytest.fixture
def jane(make_session):
    return make_session(Role.RECIPIENT, "Jane")


@pytest.fixture
def monitor(make_session):
    return make_session(Role.MONITOR, "terminal-01")


def sensor(locker_id: int, kind: str, **payload) -> SensorEvent:
    return SensorEvent(device_id=device_id_for(locker_id), type=kind, payload=payload)
