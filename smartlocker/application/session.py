import asyncio
import logging
import secrets
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Set

from smartlocker.application.ports import IdentityProvider, StateStore
from smartlocker.application.watchdog import Watchdog
from smartlocker.domain import state_machine as sm
from smartlocker.domain.errors import AuthorizationBlocked, LockerError
from smartlocker.domain.models import Locker, Notification, NotificationLevel, Role
from smartlocker.domain.tokens import ScanSession

"""
Contexto de sesion de un actor (courier / recipient / monitor).

Reemplaza el estado global (rol, timers, scanner): se crea al autenticar y
se destruye al cerrar sesion, cancelando sus watchdogs, suscripciones y
tareas de sync. Tambien acumula las notificaciones descartables y el
indicador persistente de alarma por locker.
"""

logger = logging.getLogger(__name__)


class SessionContext:
    def __init__(self, token: str, identity: str, role: Role, store: StateStore, watchdog_seconds: float):
        self.token = token
        self.identity = identity
        self.role = role
        self.store = store
        self.watchdog = Watchdog(store, watchdog_seconds, on_alert=self.raise_alarm, on_error=self._report_error)
        self.notifications: List[Notification] = []
        self.alarms: Set[int] = set()
        self._alarmed_at: Dict[int, int] = {}  # revision del store al alarmar
        self.scan: Optional[ScanSession] = None
        self._tasks: Set[asyncio.Task] = set()
        self._subscriptions: Set = set()
        self.closed = False

    # --- roles ---
    def require(self, *roles: Role) -> None:
        if self.role not in roles:
            raise AuthorizationBlocked(f"{self.role.value} may not perform this action")

    # --- notificaciones ---
    def notify(self, level: NotificationLevel, message: str, locker_id: Optional[int] = None,
               persistent: bool = False) -> Notification:
        note = Notification(level=level, message=message, locker_id=locker_id, persistent=persistent)
        self.notifications.append(note)
        return note

    def dismiss(self, notification_id: str) -> bool:
        for note in self.notifications:
            if note.id == notification_id and not note.persistent:
                self.notifications.remove(note)
                return True
        return False

    async def raise_alarm(self, locker_id: int, message: str) -> None:
        self.alarms.add(locker_id)
        self._alarmed_at[locker_id] = self.store.revision
        self.notify("alarm", message, locker_id=locker_id, persistent=True)

    def clear_alarm(self, locker_id: int) -> None:
        self.alarms.discard(locker_id)
        self._alarmed_at.pop(locker_id, None)
        self.notifications = [
            n for n in self.notifications if not (n.persistent and n.locker_id == locker_id)
        ]

    def reconcile_alarms(self, lockers: Iterable[Locker], revision: int) -> None:
        """Apaga la alarma local de los lockers que el store ya muestra SECURE.

        Solo cuentan snapshots posteriores a la alarma: uno viejo que todavia
        no trae el BREACH no la apaga.
        """
        for locker in lockers:
            if locker.id not in self.alarms or sm.is_breached(locker):
                continue
            if revision >= self._alarmed_at.get(locker.id, 0):
                self.clear_alarm(locker.id)

    async def _report_error(self, locker_id: int, message: str) -> None:
        self.notify("error", message, locker_id=locker_id)

    @contextmanager
    def reporting(self, success: Optional[str] = None, locker_id: Optional[int] = None):
        """Toda falla de dominio deja una notificacion y se re-lanza."""
        try:
            yield
        except LockerError as e:
            self.notify("error", str(e), locker_id=locker_id)
            raise
        if success:
            self.notify("success", success, locker_id=locker_id)

    # --- recursos ---
    def track_task(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def track_subscription(self, sub) -> None:
        self._subscriptions.add(sub)

    def untrack_subscription(self, sub) -> None:
        self._subscriptions.discard(sub)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.watchdog.cancel_all()
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.scan = None
        logger.info("[SESSION] closed %s (%s)", self.identity, self.role.value)


class SessionRegistry:
    def __init__(self, store: StateStore, identity: IdentityProvider, watchdog_seconds: float):
        self.store = store
        self.identity = identity
        self.watchdog_seconds = watchdog_seconds
        self._sessions: Dict[str, SessionContext] = {}

    async def sign_in(self, identity: str, credential: str) -> SessionContext:
        who = await self.identity.authenticate(identity, credential)
        role = self.identity.role_of(who)  # se resuelve una sola vez por sesion
        token = secrets.token_urlsafe(24)
        session = SessionContext(token, who, role, self.store, self.watchdog_seconds)
        self._sessions[token] = session
        logger.info("[SESSION] %s signed in as %s", who, role.value)
        return session

    def get(self, token: Optional[str]) -> SessionContext:
        session = self._sessions.get(token or "")
        if session is None:
            raise AuthorizationBlocked("unknown or expired session")
        return session

    async def sign_out(self, token: str) -> None:
        session = self._sessions.pop(token, None)
        if session is not None:
            await session.close()
            self.identity.sign_out(session.identity)

    async def close_all(self) -> None:
        for token in list(self._sessions):
            await self.sign_out(token)
