import asyncio
import logging
from typing import Dict, Optional

from smartlocker.application.ports import AlertCallback, StateStore
from smartlocker.domain import state_machine as sm
from smartlocker.domain.errors import LockerError
from smartlocker.domain.models import Locker, locker_path

"""
Watchdog por locker: despues de un unlock, si la puerta no volvio a quedar
asegurada en `delay` segundos, escala a BREACH.

El chequeo relee el documento al disparar (el cierre de puerta lo reporta el
hardware de forma asincronica y puede competir con el timer). Cada sesion de
actor tiene su propio Watchdog; cancelar solo afecta a los timers propios.
"""

logger = logging.getLogger(__name__)


class Watchdog:
    def __init__(
        self,
        store: StateStore,
        delay: float,
        on_alert: Optional[AlertCallback] = None,
        on_error: Optional[AlertCallback] = None,
    ):
        self.store = store
        self.delay = delay
        self.on_alert = on_alert
        self.on_error = on_error
        self._timers: Dict[int, asyncio.Task] = {}

    def arm(self, locker_id: int) -> None:
        """Programa un chequeo unico; reemplaza cualquier chequeo pendiente del mismo locker."""
        self.cancel(locker_id)
        self._timers[locker_id] = asyncio.create_task(
            self._run(locker_id), name=f"watchdog-locker-{locker_id}"
        )
        logger.info("[WATCHDOG] armed locker %s (%.1fs)", locker_id, self.delay)

    def cancel(self, locker_id: int) -> bool:
        task = self._timers.pop(locker_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for locker_id in list(self._timers):
            self.cancel(locker_id)

    def pending(self, locker_id: int) -> bool:
        task = self._timers.get(locker_id)
        return task is not None and not task.done()

    async def disarm(self, locker_id: int) -> None:
        self.cancel(locker_id)
        await self.store.update(locker_path(locker_id), sm.disarm())
        logger.info("[WATCHDOG] disarmed locker %s", locker_id)

    async def _run(self, locker_id: int) -> None:
        await asyncio.sleep(self.delay)
        if self._timers.get(locker_id) is asyncio.current_task():
            del self._timers[locker_id]
        try:
            await self.check(locker_id)
        except LockerError as e:
            logger.error("[WATCHDOG] check for locker %s failed: %s", locker_id, e)
            if self.on_error:
                await self.on_error(locker_id, f"Watchdog check failed for Locker 0{locker_id}: {e}")

    async def check(self, locker_id: int) -> bool:
        doc = await self.store.get(locker_path(locker_id))
        if doc is None:
            return False
        locker = Locker(**doc)
        if not sm.needs_breach(locker):
            return False

        await self.store.update(locker_path(locker_id), sm.breach())
        logger.warning("[WATCHDOG] locker %s left open, breach raised", locker_id)
        if self.on_alert:
            await self.on_alert(locker_id, f"CRITICAL ALERT: Locker 0{locker_id} door left open!")
        return True
