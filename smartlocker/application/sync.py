import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel

from smartlocker.application.ports import BlobStore, StateStore
from smartlocker.application.session import SessionContext
from smartlocker.domain import state_machine as sm
from smartlocker.domain.models import (
    HISTORY_STATUSES,
    LOCKERS_PATH,
    LifecycleState,
    Locker,
    Notification,
    PARCELS_PATH,
    Parcel,
    ParcelStatus,
    PaymentStatus,
    REVENUE_PATH,
    Role,
    wallet_path,
)

"""
Capa de sync por rol.

Todos los roles se suscriben a system_control (grilla de lockers) y al total
recaudado; courier y recipient ademas a parcels, proyectados en pendientes e
historial; el monitor proyecta ui_session en lo que muestra cada terminal.
El cache local se reemplaza entero con cada snapshot (sin deltas).
"""

logger = logging.getLogger(__name__)

NextAction = Literal["VERIFY", "PAY", "SCAN", "SCANNING", "WAIT"]
DisplayMode = Literal["PROCESSING", "TOKEN", "IDLE"]


class LockerTile(BaseModel):
    locker_id: int
    render_state: sm.RenderState
    label: str
    weight_grams: int
    led_on: bool
    alarm: bool
    parcel_sensed: bool
    delivery_status: str


class ParcelCard(BaseModel):
    id: str
    receiver: str
    courier_name: str
    locker_id: int
    status: ParcelStatus
    amount: float
    payment_status: PaymentStatus
    timestamp: str
    photo_url: Optional[str] = None
    next_action: Optional[NextAction] = None


class MonitorDisplay(BaseModel):
    locker_id: int
    mode: DisplayMode
    token: Optional[str] = None
    text: str


class ActorView(BaseModel):
    role: Role
    identity: str
    lockers: List[LockerTile] = []
    alarm_active: bool = False
    revenue: float = 0.0
    pending: List[ParcelCard] = []
    history: List[ParcelCard] = []
    monitor: List[MonitorDisplay] = []
    wallet_balance: Optional[float] = None
    notifications: List[Notification] = []


def parse_lockers(value: Optional[Dict]) -> List[Locker]:
    lockers = []
    for key, doc in sorted((value or {}).items()):
        if not isinstance(doc, dict) or not key.startswith("locker_"):
            continue
        lockers.append(Locker(**doc))
    return sorted(lockers, key=lambda l: l.id)


def parse_parcels(value: Optional[Dict]) -> List[Parcel]:
    parcels = [Parcel.from_document(key, doc) for key, doc in (value or {}).items()]
    return sorted(parcels, key=lambda p: (p.timestamp, p.id))


def project_lockers(lockers: List[Locker], weight_threshold: float) -> List[LockerTile]:
    tiles = []
    for locker in lockers:
        state = sm.render_state(locker)
        tiles.append(
            LockerTile(
                locker_id=locker.id,
                render_state=state,
                label=sm.RENDER_LABELS[state],
                weight_grams=round(locker.weight_status),
                led_on=locker.led_state,
                alarm=state == sm.RenderState.BREACH or locker.buzzer_alarm,
                parcel_sensed=sm.parcel_sensed(locker, weight_threshold),
                delivery_status=locker.ui_session.delivery_status.value,
            )
        )
    return tiles


def recipient_next_action(parcel: Parcel) -> NextAction:
    if parcel.status == ParcelStatus.AWAITING_VERIFICATION:
        return "VERIFY"
    if parcel.status == ParcelStatus.VERIFIED:
        return "PAY" if parcel.payment_status == PaymentStatus.PENDING else "SCAN"
    if parcel.status == ParcelStatus.READY:
        return "SCANNING"
    return "WAIT"


def project_parcels(role: Role, identity: str, parcels: List[Parcel],
                    blobs: Optional[BlobStore] = None) -> Dict[str, List[ParcelCard]]:
    pending, history = [], []
    for p in parcels:
        if role == Role.RECIPIENT and p.receiver != identity:
            continue
        card = ParcelCard(
            id=p.id,
            receiver=p.receiver,
            courier_name=p.courier_name,
            locker_id=p.locker_id,
            status=p.status,
            amount=p.amount,
            payment_status=p.payment_status,
            timestamp=p.timestamp.isoformat(),
            photo_url=blobs.resolve(p.photo_reference) if blobs else None,
        )
        if p.status in HISTORY_STATUSES:
            history.append(card)
            continue
        if role == Role.RECIPIENT:
            card.next_action = recipient_next_action(p)
        pending.append(card)
    return {"pending": pending, "history": history}


def project_monitor(lockers: List[Locker]) -> List[MonitorDisplay]:
    """PROCESSING (ciclo en curso) > TOKEN (ready_to_scan con token) > IDLE."""
    displays = []
    for locker in lockers:
        ui = locker.ui_session
        if locker.state in (LifecycleState.DROPPING_OFF, LifecycleState.PICKING_UP):
            displays.append(MonitorDisplay(
                locker_id=locker.id, mode="PROCESSING", text="...PROCESSING TRANSACTION...",
            ))
        elif ui.ready_to_scan and ui.monitor_token is not None:
            displays.append(MonitorDisplay(
                locker_id=locker.id, mode="TOKEN", token=ui.monitor_token, text="Scan to unlock",
            ))
        else:
            displays.append(MonitorDisplay(
                locker_id=locker.id, mode="IDLE", text=f"[ TERMINAL L-0{locker.id} IDLE ]",
            ))
    return displays


def subscribed_paths(session: SessionContext) -> List[str]:
    paths = [LOCKERS_PATH, REVENUE_PATH]
    if session.role in (Role.COURIER, Role.RECIPIENT):
        paths.append(PARCELS_PATH)
    if session.role == Role.RECIPIENT:
        paths.append(wallet_path(session.identity))
    return paths


class RoleScopedSync:
    def __init__(self, store: StateStore, session: SessionContext,
                 blobs: Optional[BlobStore] = None, weight_threshold: float = 45.0):
        self.store = store
        self.session = session
        self.blobs = blobs
        self.weight_threshold = weight_threshold
        self.cache: Dict[str, Any] = {}
        self._seen_revision: Optional[int] = None  # revision del ultimo snapshot de lockers

    def build_view(self) -> ActorView:
        role = self.session.role
        lockers = parse_lockers(self.cache.get(LOCKERS_PATH))
        if self._seen_revision is not None:
            self.session.reconcile_alarms(lockers, self._seen_revision)
        tiles = project_lockers(lockers, self.weight_threshold)
        view = ActorView(
            role=role,
            identity=self.session.identity,
            lockers=tiles,
            alarm_active=any(t.alarm for t in tiles) or bool(self.session.alarms),
            revenue=float(self.cache.get(REVENUE_PATH) or 0),
            notifications=list(self.session.notifications),
        )
        if role in (Role.COURIER, Role.RECIPIENT):
            projected = project_parcels(role, self.session.identity,
                                        parse_parcels(self.cache.get(PARCELS_PATH)), self.blobs)
            view.pending = projected["pending"]
            view.history = projected["history"]
        if role == Role.RECIPIENT:
            balance = self.cache.get(wallet_path(self.session.identity))
            view.wallet_balance = float(balance) if balance is not None else None
        if role == Role.MONITOR:
            view.monitor = project_monitor(lockers)
        return view

    async def current_view(self) -> ActorView:
        for path in subscribed_paths(self.session):
            self.cache[path] = await self.store.get(path)
        self._seen_revision = self.store.revision
        return self.build_view()

    async def run(self, on_view: Callable[[ActorView], Awaitable[None]]) -> None:
        """Consume todas las suscripciones del rol y emite la vista en cada cambio."""
        subs = [self.store.subscribe(path) for path in subscribed_paths(self.session)]
        for sub in subs:
            self.session.track_subscription(sub)

        async def consume(sub):
            async for snap in sub:
                self.cache[sub.path] = snap.value
                if sub.path == LOCKERS_PATH:
                    self._seen_revision = snap.revision
                await on_view(self.build_view())

        try:
            await asyncio.gather(*(consume(sub) for sub in subs))
        finally:
            for sub in subs:
                sub.cancel()
                self.session.untrack_subscription(sub)
            logger.info("[SYNC] stopped for %s", self.session.identity)

    def start(self, on_view: Callable[[ActorView], Awaitable[None]]) -> asyncio.Task:
        return self.session.track_task(asyncio.create_task(self.run(on_view)))
