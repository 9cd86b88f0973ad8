import base64
import binascii
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from pydantic import BaseModel

from smartlocker.adapters.ws import manager
from smartlocker.application import admin
from smartlocker.application.courier import CourierService
from smartlocker.application.recipient import RecipientService
from smartlocker.application.session import SessionContext
from smartlocker.application.sync import ActorView, RoleScopedSync
from smartlocker import config
from smartlocker.deps import Container
from smartlocker.domain.errors import InvalidTransition, NotFoundError, ValidationError
from smartlocker.domain.models import DropOffRequest, Locker, Parcel, Role, SensorEvent, locker_path

"""
Endpoints REST por actor. La sesion viaja en el header X-Session-Token
(se obtiene con POST /v1/sessions).

    - courier:   drop-offs, confirmacion de deposito, ack de breach
    - recipient: verificacion, pago, ready-to-scan, scan
    - monitor:   QR del token, ack de breach, reset y anomalias
    - POST /v1/sensors/events es un webhook opcional por si el controlador
      reporta por HTTP (no MQTT)

El token de seguridad nunca se devuelve al courier ni al recipient: solo el
monitor lo renderiza.
"""

api_router = APIRouter()


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_session(
    container: Container = Depends(get_container),
    x_session_token: Optional[str] = Header(default=None),
) -> SessionContext:
    return container.sessions.get(x_session_token)


class SignIn(BaseModel):
    identity: str
    credential: str


class DropOffPayload(DropOffRequest):
    photo_b64: Optional[str] = None


class Verification(BaseModel):
    is_mine: bool


class ScanPayload(BaseModel):
    decoded: Optional[str] = None


def public_parcel(parcel: Parcel) -> dict:
    return parcel.model_dump(mode="json", exclude={"secure_token"})


def decode_photo(photo_b64: Optional[str]) -> Optional[bytes]:
    if not photo_b64:
        return None
    try:
        return base64.b64decode(photo_b64, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Photo Evidence unreadable") from None


# --- sesiones ---
@api_router.post("/sessions")
async def sign_in(body: SignIn, container: Container = Depends(get_container)):
    session = await container.sessions.sign_in(body.identity, body.credential)
    return {"token": session.token, "identity": session.identity, "role": session.role.value}


@api_router.delete("/sessions/me", status_code=204)
async def sign_out(session: SessionContext = Depends(get_session),
                   container: Container = Depends(get_container)):
    await container.sessions.sign_out(session.token)
    return Response(status_code=204)


@api_router.get("/views", response_model=ActorView)
async def current_view(session: SessionContext = Depends(get_session),
                       container: Container = Depends(get_container)):
    sync = RoleScopedSync(container.store, session, container.blobs, container.hardware.weight_threshold)
    return await sync.current_view()


@api_router.delete("/notifications/{notification_id}")
async def dismiss(notification_id: str, session: SessionContext = Depends(get_session)):
    return {"dismissed": session.dismiss(notification_id)}


# --- courier ---
@api_router.post("/couriers/drop-offs", status_code=201)
async def drop_off(body: DropOffPayload, session: SessionContext = Depends(get_session),
                   container: Container = Depends(get_container)):
    service = CourierService(container.store, container.blobs, session, config.TOKEN_LENGTH)
    req = DropOffRequest(**body.model_dump(exclude={"photo_b64"}))
    parcel = await service.begin_drop_off(req, decode_photo(body.photo_b64))
    return public_parcel(parcel)


@api_router.post("/couriers/drop-offs/{locker_id}/confirm")
async def confirm_deposit(locker_id: int, session: SessionContext = Depends(get_session),
                          container: Container = Depends(get_container)):
    await CourierService(container.store, container.blobs, session).confirm_deposit(locker_id)
    return {"locker_id": locker_id, "lock_command": "LOCKED"}


@api_router.post("/lockers/{locker_id}/acknowledge")
async def acknowledge(locker_id: int, session: SessionContext = Depends(get_session),
                      container: Container = Depends(get_container)):
    await CourierService(container.store, container.blobs, session).acknowledge_breach(locker_id)
    return {"locker_id": locker_id, "security_status": "SECURE"}


# --- recipient ---
def recipient_service(session: SessionContext, container: Container) -> RecipientService:
    return RecipientService(container.store, session, config.DEFAULT_WALLET_CREDIT)


@api_router.get("/wallet")
async def wallet(session: SessionContext = Depends(get_session),
                 container: Container = Depends(get_container)):
    session.require(Role.RECIPIENT)
    balance = await recipient_service(session, container).wallet_balance()
    return {"identity": session.identity, "balance": round(balance, 2)}


@api_router.post("/parcels/{parcel_id}/verification")
async def verify(parcel_id: str, body: Verification, session: SessionContext = Depends(get_session),
                 container: Container = Depends(get_container)):
    parcel = await recipient_service(session, container).verify(parcel_id, body.is_mine)
    return public_parcel(parcel)


@api_router.post("/parcels/{parcel_id}/payment")
async def pay(parcel_id: str, session: SessionContext = Depends(get_session),
              container: Container = Depends(get_container)):
    service = recipient_service(session, container)
    parcel = await service.pay(parcel_id)
    return {"parcel": public_parcel(parcel), "balance": await service.wallet_balance()}


@api_router.post("/parcels/{parcel_id}/ready")
async def ready(parcel_id: str, session: SessionContext = Depends(get_session),
                container: Container = Depends(get_container)):
    scan = await recipient_service(session, container).ready_to_scan(parcel_id)
    return {"parcel_id": scan.parcel_id, "locker_id": scan.locker_id, "scanning": True}


@api_router.post("/parcels/{parcel_id}/scan")
async def scan(parcel_id: str, body: ScanPayload, session: SessionContext = Depends(get_session),
               container: Container = Depends(get_container)):
    if session.scan is None or session.scan.parcel_id != parcel_id:
        raise InvalidTransition(f"No scan session open for parcel {parcel_id}")
    parcel = await recipient_service(session, container).submit_scan(body.decoded)
    return public_parcel(parcel)


@api_router.delete("/parcels/{parcel_id}/scan")
async def cancel_scan(parcel_id: str, session: SessionContext = Depends(get_session),
                      container: Container = Depends(get_container)):
    if session.scan is not None and session.scan.parcel_id == parcel_id:
        await recipient_service(session, container).cancel_scan()
    return {"parcel_id": parcel_id, "scanning": False}


# --- monitor ---
@api_router.get("/monitor/lockers/{locker_id}/qr.png")
async def monitor_qr(locker_id: int, session: SessionContext = Depends(get_session),
                     container: Container = Depends(get_container)):
    session.require(Role.MONITOR)
    doc = await container.store.get(locker_path(locker_id))
    if doc is None:
        raise NotFoundError(f"Locker 0{locker_id} does not exist")
    ui = Locker(**doc).ui_session
    if not ui.ready_to_scan or ui.monitor_token is None:
        raise NotFoundError(f"Terminal L-0{locker_id} is idle")
    return Response(content=container.qr.encode(ui.monitor_token), media_type="image/png")


# --- hardware ---
@api_router.post("/sensors/events")
async def ingest_event(ev: SensorEvent, container: Container = Depends(get_container)):
    changes = await container.hardware.handle_sensor_event(ev)
    return {"accepted": True, "event_id": ev.event_id, "changes": changes}


# --- mantenimiento ---
@api_router.post("/admin/reset")
async def factory_reset(session: SessionContext = Depends(get_session),
                        container: Container = Depends(get_container)):
    session.require(Role.MONITOR)
    await admin.reset_system(container.store, container.locker_count)
    await manager.send_all({"type": "system_reset"})
    return {"status": "reset", "lockers": container.locker_count}


@api_router.get("/admin/anomalies")
async def anomalies(session: SessionContext = Depends(get_session),
                    container: Container = Depends(get_container)):
    session.require(Role.MONITOR)
    return [a.model_dump() for a in await admin.find_orphaned_lockers(container.store)]
