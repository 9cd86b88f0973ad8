import logging
from typing import List

from pydantic import BaseModel

from smartlocker.application.ports import StateStore
from smartlocker.domain.models import (
    LOCKERS_PATH,
    LifecycleState,
    Locker,
    LockCommand,
    PARCELS_PATH,
    REVENUE_PATH,
    device_id_for,
)

"""
Operaciones de mantenimiento (no son parte del protocolo normal).

reset_system deja todos los lockers en el estado seguro canonico, borra los
parcels y pone el recaudado en 0. find_orphaned_lockers detecta el hueco de
atomicidad del drop-off: locker abierto con token pero sin parcel que lo
respalde.
"""

logger = logging.getLogger(__name__)


class Anomaly(BaseModel):
    locker_id: int
    kind: str
    detail: str


def safe_state_documents(locker_count: int) -> dict:
    return {
        device_id_for(n): Locker.safe_state(n).model_dump(mode="json")
        for n in range(1, locker_count + 1)
    }


async def reset_system(store: StateStore, locker_count: int) -> None:
    await store.set(LOCKERS_PATH, safe_state_documents(locker_count))
    await store.set(PARCELS_PATH, None)
    await store.set(REVENUE_PATH, 0)
    logger.warning("[ADMIN] factory reset: %s lockers restored, parcels cleared", locker_count)


async def ensure_lockers(store: StateStore, locker_count: int) -> None:
    """Crea los documentos que falten sin tocar los existentes."""
    for key, doc in safe_state_documents(locker_count).items():
        path = f"{LOCKERS_PATH}/{key}"
        if await store.get(path) is None:
            await store.set(path, doc)
            logger.info("[ADMIN] seeded %s", path)


async def find_orphaned_lockers(store: StateStore) -> List[Anomaly]:
    lockers = await store.get(LOCKERS_PATH) or {}
    parcels = await store.get(PARCELS_PATH) or {}
    tokens = {p.get("secure_token") for p in parcels.values() if isinstance(p, dict)}

    anomalies = []
    for doc in lockers.values():
        locker = Locker(**doc)
        token = locker.ui_session.monitor_token
        if locker.state == LifecycleState.DROPPING_OFF and token is not None and token not in tokens:
            anomalies.append(Anomaly(
                locker_id=locker.id,
                kind="ORPHANED_DROP_OFF",
                detail="locker opened for drop-off but no parcel record carries its token",
            ))
        elif (locker.lock_command == LockCommand.UNLOCKED
              and locker.state == LifecycleState.AVAILABLE):
            anomalies.append(Anomaly(
                locker_id=locker.id,
                kind="UNLOCKED_IDLE",
                detail="lock command is UNLOCKED with no cycle in progress",
            ))
    return anomalies
