import logging
from typing import Dict, Optional, Protocol, Tuple

from smartlocker.application.ports import ActuatorOut, StateStore
from smartlocker.domain import state_machine as sm
from smartlocker.domain.errors import NotFoundError
from smartlocker.domain.models import (
    Command,
    LOCKERS_PATH,
    Locker,
    SensorEvent,
    device_id_for,
    locker_id_from_device,
    locker_path,
)
from smartlocker.application.sync import parse_lockers

"""
Puente con el controlador embebido, sin detalles de red:
1) Deduplica: la entrega es at-least-once (repo.seen_event(ev.event_id))
2) Escribe en el store solo los campos que reporta el hardware (puerta,
   peso, ocupacion) y, al cerrarse la puerta, el cierre del ciclo.
3) Registra el evento (repo.save_event(ev)) recien despues de aplicarlo.

En sentido inverso, CommandRelay observa system_control y publica un Command
por locker cada vez que cambian lock_command / led_state / buzzer_alarm.
"""

logger = logging.getLogger(__name__)


class EventRepo(Protocol):
    async def save_event(self, ev: SensorEvent) -> None: ...
    async def seen_event(self, event_id: str) -> bool: ...


class HardwareService:
    def __init__(self, store: StateStore, repo: EventRepo, weight_threshold: float):
        self.store = store
        self.repo = repo
        self.weight_threshold = weight_threshold

    async def handle_sensor_event(self, ev: SensorEvent) -> Dict:
        if await self.repo.seen_event(ev.event_id):
            return {}
        try:
            locker_id = locker_id_from_device(ev.device_id)
        except ValueError:
            raise NotFoundError(f"sensor event for unknown {ev.device_id}") from None
        doc = await self.store.get(locker_path(locker_id))
        if doc is None:
            raise NotFoundError(f"sensor event for unknown {ev.device_id}")

        changes = sm.hardware_report(Locker(**doc), ev, self.weight_threshold)
        if changes:
            await self.store.update(locker_path(locker_id), changes)
            logger.info("[HW] %s %s -> %s", ev.device_id, ev.type, changes)
        # se marca visto solo despues de aplicarlo
        await self.repo.save_event(ev)
        return changes


class CommandRelay:
    def __init__(self, store: StateStore, actuator: ActuatorOut):
        self.store = store
        self.actuator = actuator
        self._last: Dict[int, Tuple] = {}

    async def relay(self, lockers_value: Optional[Dict]) -> int:
        sent = 0
        for locker in parse_lockers(lockers_value):
            outputs = (locker.lock_command, locker.led_state, locker.buzzer_alarm)
            if self._last.get(locker.id) == outputs:
                continue
            cmd = Command(
                device_id=device_id_for(locker.id),
                lock_command=locker.lock_command,
                led_state=locker.led_state,
                buzzer_alarm=locker.buzzer_alarm,
            )
            await self.actuator.publish_command(cmd)
            self._last[locker.id] = outputs
            sent += 1
        return sent

    async def run(self) -> None:
        sub = self.store.subscribe(LOCKERS_PATH)
        try:
            async for snap in sub:
                await self.relay(snap.value)
        finally:
            sub.cancel()
