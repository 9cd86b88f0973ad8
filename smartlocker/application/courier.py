import logging
import math
from typing import Optional

from smartlocker.application.ports import BlobStore, StateStore
from smartlocker.application.session import SessionContext
from smartlocker.domain import state_machine as sm
from smartlocker.domain.errors import NotFoundError, ValidationError
from smartlocker.domain.models import (
    DropOffRequest,
    Locker,
    Parcel,
    PARCELS_PATH,
    PaymentStatus,
    PaymentType,
    Role,
    locker_path,
)
from smartlocker.domain.tokens import generate_token

"""
Fase 1 (courier): drop-off.

1) Valida datos y evidencia (ValidationError) y que el locker este libre
   (ConflictError), todo antes de escribir nada.
2) Sube la foto, abre el locker (unlock + LED + ui_session con token) y arma
   el watchdog.
3) Registra el parcel.

Las escrituras 2 y 3 no son atomicas entre si: si el proceso cae en el medio
queda un locker abierto sin parcel (ver admin.find_orphaned_lockers).
"""

logger = logging.getLogger(__name__)


def parse_amount(raw: Optional[str | float]) -> float:
    text = str(raw).strip() if raw is not None else ""
    text = text or "0.00"
    try:
        amount = round(float(text), 2)
    except ValueError:
        raise ValidationError(f"Invalid amount: {raw!r}") from None
    if not math.isfinite(amount) or amount < 0:
        raise ValidationError(f"Invalid amount: {raw!r}")
    return amount


class CourierService:
    def __init__(self, store: StateStore, blobs: BlobStore, session: SessionContext, token_length: int = 8):
        self.store = store
        self.blobs = blobs
        self.session = session
        self.token_length = token_length

    async def _load_locker(self, locker_id: int) -> Locker:
        doc = await self.store.get(locker_path(locker_id))
        if doc is None:
            raise NotFoundError(f"Locker 0{locker_id} does not exist")
        return Locker(**doc)

    async def begin_drop_off(self, req: DropOffRequest, photo: Optional[bytes]) -> Parcel:
        with self.session.reporting(locker_id=req.locker_id):
            self.session.require(Role.COURIER)
            if not (req.receiver or "").strip() or not (req.courier_name or "").strip():
                raise ValidationError("Missing Details")
            if not photo:
                raise ValidationError("Photo Evidence Required")
            amount = parse_amount(req.amount)

            locker = await self._load_locker(req.locker_id)
            token = generate_token(self.token_length)
            changes = sm.begin_drop_off(
                locker,
                token,
                rider_name=req.courier_name,
                rider_contact=req.courier_contact,
                recipient_identity=req.receiver,
            )

            photo_ref = await self.blobs.upload(photo)
            await self.store.update(locker_path(req.locker_id), changes)
            self.session.watchdog.arm(req.locker_id)

            parcel = Parcel(
                receiver=req.receiver.strip(),
                receiver_phone=req.receiver_phone,
                courier_name=req.courier_name.strip(),
                amount=amount,
                payment_type=req.payment_type,
                payment_status=(
                    PaymentStatus.COMPLETED if req.payment_type == PaymentType.PREPAID
                    else PaymentStatus.PENDING
                ),
                locker_id=req.locker_id,
                photo_reference=photo_ref,
                secure_token=token,
            )
            parcel.id = await self.store.push(PARCELS_PATH, parcel.to_document())

        logger.info("[COURIER] drop-off %s into locker %s by %s", parcel.id, req.locker_id, self.session.identity)
        return parcel

    async def confirm_deposit(self, locker_id: int) -> None:
        """Cierre del overlay de apertura: la puerta ya se cerro, se desarma el watchdog."""
        with self.session.reporting(locker_id=locker_id):
            self.session.require(Role.COURIER)
            await self._load_locker(locker_id)
            await self.session.watchdog.disarm(locker_id)

    async def acknowledge_breach(self, locker_id: int) -> None:
        with self.session.reporting(success=f"Locker 0{locker_id} secured.", locker_id=locker_id):
            self.session.require(Role.COURIER, Role.MONITOR)
            await self._load_locker(locker_id)
            self.session.watchdog.cancel(locker_id)
            await self.store.update(locker_path(locker_id), sm.acknowledge_breach())
            self.session.clear_alarm(locker_id)
        logger.info("[COURIER] breach on locker %s acknowledged by %s", locker_id, self.session.identity)
