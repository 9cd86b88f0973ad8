import logging
from typing import Optional

from smartlocker.application.ports import StateStore
from smartlocker.application.session import SessionContext
from smartlocker.domain import state_machine as sm
from smartlocker.domain.errors import (
    AuthorizationBlocked,
    InsufficientFunds,
    InvalidTransition,
    NotFoundError,
)
from smartlocker.domain.models import (
    Locker,
    Parcel,
    ParcelStatus,
    PaymentStatus,
    REVENUE_PATH,
    Role,
    locker_path,
    parcel_path,
    wallet_path,
)
from smartlocker.domain.tokens import ScanSession

"""
Fases 2 y 3 (recipient): verificacion, pago y retiro con handshake QR.

Secuencia esperada:
    verify(id, True) -> pay(id) [solo PAY_LATER] -> ready_to_scan(id)
    -> submit_scan(texto decodificado) -> locker en PICKING_UP + watchdog

Un token distinto en submit_scan levanta TokenMismatch sin tocar el store y
deja la sesion de escaneo abierta. Si el store rechaza el unlock por
politica, se reporta AuthorizationBlocked ("command blocked"), no un error
de escaneo.
"""

logger = logging.getLogger(__name__)


class RecipientService:
    def __init__(self, store: StateStore, session: SessionContext, default_credit: float = 100.00):
        self.store = store
        self.session = session
        self.default_credit = default_credit

    async def _load_parcel(self, parcel_id: str) -> Parcel:
        doc = await self.store.get(parcel_path(parcel_id))
        if doc is None:
            raise NotFoundError(f"Parcel {parcel_id} not found")
        parcel = Parcel.from_document(parcel_id, doc)
        if parcel.receiver != self.session.identity:
            raise AuthorizationBlocked(f"Parcel {parcel_id} is not addressed to {self.session.identity}")
        return parcel

    async def _load_locker(self, locker_id: int) -> Locker:
        doc = await self.store.get(locker_path(locker_id))
        if doc is None:
            raise NotFoundError(f"Locker 0{locker_id} does not exist")
        return Locker(**doc)

    # --- fase 2: verificacion ---
    async def verify(self, parcel_id: str, is_mine: bool) -> Parcel:
        success = "Ownership Authorized." if is_mine else "Parcel Rejected. Courier Notified."
        with self.session.reporting(success=success):
            self.session.require(Role.RECIPIENT)
            parcel = await self._load_parcel(parcel_id)
            if parcel.status != ParcelStatus.AWAITING_VERIFICATION:
                raise InvalidTransition(f"Parcel {parcel_id} is {parcel.status.value}")

            if is_mine:
                parcel.status = ParcelStatus.VERIFIED
                await self.store.update(parcel_path(parcel_id), {"status": parcel.status.value})
                await self.store.update(locker_path(parcel.locker_id), sm.confirm_ownership())
            else:
                parcel.status = ParcelStatus.REJECTED
                await self.store.update(parcel_path(parcel_id), {"status": parcel.status.value})
                await self.store.update(locker_path(parcel.locker_id), sm.reject_delivery())
        logger.info("[RECIPIENT] %s %s parcel %s", self.session.identity, parcel.status.value, parcel_id)
        return parcel

    # --- fase 2: pago ---
    async def wallet_balance(self) -> float:
        """Saldo del recipient; la primera lectura inicializa el credito por defecto."""
        path = wallet_path(self.session.identity)
        value = await self.store.get(path)
        if value is None:
            if await self.store.compare_and_set(path, None, self.default_credit):
                return self.default_credit
            value = await self.store.get(path)
        return float(value)

    async def pay(self, parcel_id: str) -> Parcel:
        with self.session.reporting():
            self.session.require(Role.RECIPIENT)
            parcel = await self._load_parcel(parcel_id)
            if parcel.status != ParcelStatus.VERIFIED:
                raise InvalidTransition("Verify ownership before paying")
            if parcel.payment_status == PaymentStatus.COMPLETED:
                raise InvalidTransition(f"Parcel {parcel_id} is already paid")

            cost = parcel.amount
            await self.wallet_balance()

            def debit(current):
                balance = float(current if current is not None else self.default_credit)
                if balance < cost:
                    raise InsufficientFunds("Insufficient Funds")
                return round(balance - cost, 2)

            await self.store.transaction(wallet_path(self.session.identity), debit)
            parcel.payment_status = PaymentStatus.COMPLETED
            await self.store.update(parcel_path(parcel_id), {"payment_status": parcel.payment_status.value})
            await self.store.increment(REVENUE_PATH, cost)

        self.session.notify("success", f"Paid {cost:.2f} for Locker 0{parcel.locker_id}", locker_id=parcel.locker_id)
        logger.info("[RECIPIENT] %s settled %.2f for parcel %s", self.session.identity, cost, parcel_id)
        return parcel

    # --- fase 3: handshake ---
    async def ready_to_scan(self, parcel_id: str) -> ScanSession:
        with self.session.reporting(success="Link established. Scan terminal QR."):
            self.session.require(Role.RECIPIENT)
            parcel = await self._load_parcel(parcel_id)
            if parcel.status not in (ParcelStatus.VERIFIED, ParcelStatus.READY):
                raise InvalidTransition("Verify ownership before scanning")
            if parcel.payment_status != PaymentStatus.COMPLETED:
                raise InvalidTransition("Settle payment before scanning")

            locker = await self._load_locker(parcel.locker_id)
            await self.store.update(locker_path(parcel.locker_id), sm.ready_to_scan(locker, True))
            await self.store.update(parcel_path(parcel_id), {"status": ParcelStatus.READY.value})

            scan = ScanSession(
                locker_id=parcel.locker_id,
                parcel_id=parcel_id,
                expected_token=parcel.secure_token,
            )
            self.session.scan = scan
        return scan

    async def submit_scan(self, decoded: Optional[str]) -> Parcel:
        scan = self.session.scan
        with self.session.reporting(success="Solenoid Unlocked. Secure retrieval.", locker_id=scan.locker_id if scan else None):
            self.session.require(Role.RECIPIENT)
            if scan is None:
                raise InvalidTransition("No scan session open")
            scan.check(decoded)

            parcel = await self._load_parcel(scan.parcel_id)
            locker = await self._load_locker(scan.locker_id)
            changes = sm.begin_retrieval(locker)

            self.session.scan = None
            scan.closed = True
            try:
                await self.store.update(locker_path(scan.locker_id), changes)
            except AuthorizationBlocked as e:
                logger.error("[RECIPIENT] unlock of locker %s blocked: %s", scan.locker_id, e)
                raise AuthorizationBlocked("System Blocked Command: Rule Error") from e

            self.session.watchdog.arm(scan.locker_id)
            parcel.status = ParcelStatus.PICKED_UP
            await self.store.update(parcel_path(parcel.id), {"status": parcel.status.value})

        logger.info("[RECIPIENT] %s unlocked locker %s for parcel %s", self.session.identity, scan.locker_id, parcel.id)
        return parcel

    async def cancel_scan(self) -> None:
        scan = self.session.scan
        if scan is None:
            return
        with self.session.reporting(locker_id=scan.locker_id):
            self.session.scan = None
            scan.closed = True
            await self.store.update(locker_path(scan.locker_id), {"ui_session/ready_to_scan": False})
            parcel = await self._load_parcel(scan.parcel_id)
            if parcel.status == ParcelStatus.READY:
                await self.store.update(parcel_path(parcel.id), {"status": ParcelStatus.VERIFIED.value})


