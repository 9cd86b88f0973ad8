import math
from enum import Enum
from typing import Dict

from smartlocker.domain.errors import ConflictError, InvalidTransition, ValidationError
from smartlocker.domain.models import (
    DeliveryStatus,
    DoorState,
    LifecycleState,
    Locker,
    LockCommand,
    SecurityStatus,
    SensorEvent,
)

"""
Maquina de estados por locker.

El estado no se guarda como tal: se deriva de los campos del documento, que
escriben tres actores independientes (courier, recipient, controlador). Las
funciones de transicion validan contra el documento leido y devuelven el
dict de campos a mergear en el store (claves relativas tipo "ui_session/x");
no escriben nada.
"""


class ObservedState(str, Enum):
    AVAILABLE = "AVAILABLE"
    DROPPING_OFF = "DROPPING_OFF"
    SECURED = "SECURED"
    PICKING_UP = "PICKING_UP"


class RenderState(str, Enum):
    BREACH = "BREACH"
    DROPPING_OFF = "DROPPING_OFF"
    PICKING_UP = "PICKING_UP"
    SECURED = "SECURED"
    AVAILABLE = "AVAILABLE"


RENDER_LABELS = {
    RenderState.BREACH: "SECURITY BREACH",
    RenderState.DROPPING_OFF: "DEPOSITING...",
    RenderState.PICKING_UP: "RETRIEVING...",
    RenderState.SECURED: "SECURED",
    RenderState.AVAILABLE: "READY",
}


def observed_state(locker: Locker) -> ObservedState:
    if locker.state == LifecycleState.DROPPING_OFF:
        return ObservedState.DROPPING_OFF
    if locker.state == LifecycleState.PICKING_UP:
        return ObservedState.PICKING_UP
    if locker.is_occupied:
        return ObservedState.SECURED
    return ObservedState.AVAILABLE


def render_state(locker: Locker) -> RenderState:
    """Precedencia estricta: BREACH > DROPPING_OFF > PICKING_UP > ocupado > libre."""
    if locker.security_status == SecurityStatus.BREACH:
        return RenderState.BREACH
    if locker.state == LifecycleState.DROPPING_OFF:
        return RenderState.DROPPING_OFF
    if locker.state == LifecycleState.PICKING_UP:
        return RenderState.PICKING_UP
    if locker.is_occupied:
        return RenderState.SECURED
    return RenderState.AVAILABLE


def is_breached(locker: Locker) -> bool:
    return locker.security_status == SecurityStatus.BREACH


def parcel_sensed(locker: Locker, threshold_grams: float) -> bool:
    # solo UI: el cierre de puerta (hardware) es el que completa el ciclo
    return locker.state == LifecycleState.DROPPING_OFF and locker.weight_status > threshold_grams


def needs_breach(locker: Locker) -> bool:
    return locker.lock_command == LockCommand.UNLOCKED or locker.door_state == DoorState.OPEN


def begin_drop_off(
    locker: Locker,
    token: str,
    rider_name: str,
    rider_contact: str | None,
    recipient_identity: str,
) -> Dict:
    if locker.is_occupied:
        raise ConflictError(f"Locker 0{locker.id} is occupied")
    if is_breached(locker):
        raise ConflictError(f"Locker 0{locker.id} is in breach; acknowledge it first")
    if locker.state != LifecycleState.AVAILABLE:
        raise InvalidTransition(f"Locker 0{locker.id} is busy ({locker.state.value})")

    return {
        "lock_command": LockCommand.UNLOCKED.value,
        "state": LifecycleState.DROPPING_OFF.value,
        "buzzer_alarm": False,
        "security_status": SecurityStatus.SECURE.value,
        "led_state": True,
        "ui_session/delivery_status": DeliveryStatus.AWAITING_CONFIRMATION.value,
        "ui_session/rider_name": rider_name,
        "ui_session/rider_contact": rider_contact,
        "ui_session/recipient_identity": recipient_identity,
        "ui_session/is_confirmed": False,
        "ui_session/ready_to_scan": False,
        "ui_session/monitor_token": token,
    }


def begin_retrieval(locker: Locker) -> Dict:
    if is_breached(locker):
        raise InvalidTransition(f"Locker 0{locker.id} is in breach")
    if observed_state(locker) != ObservedState.SECURED:
        raise InvalidTransition(
            f"Locker 0{locker.id} is not secured ({observed_state(locker).value})"
        )
    if not locker.ui_session.is_confirmed:
        raise InvalidTransition(f"Locker 0{locker.id}: ownership not confirmed")

    return {
        "state": LifecycleState.PICKING_UP.value,
        "lock_command": LockCommand.UNLOCKED.value,
        "led_state": True,
        "ui_session/delivery_status": DeliveryStatus.COMPLETED.value,
        "ui_session/rider_name": None,
        "ui_session/rider_contact": None,
        "ui_session/recipient_identity": None,
        "ui_session/is_confirmed": False,
        "ui_session/ready_to_scan": False,
        "ui_session/monitor_token": None,
    }


def confirm_ownership() -> Dict:
    return {"ui_session/is_confirmed": True}


def reject_delivery() -> Dict:
    return {"ui_session/delivery_status": DeliveryStatus.REJECTED.value}


def ready_to_scan(locker: Locker, flag: bool = True) -> Dict:
    if flag and locker.ui_session.monitor_token is None:
        raise InvalidTransition(f"Locker 0{locker.id} has no outstanding token")
    return {"ui_session/ready_to_scan": flag}


def breach() -> Dict:
    return {
        "security_status": SecurityStatus.BREACH.value,
        "buzzer_alarm": True,
    }


def disarm() -> Dict:
    return {
        "lock_command": LockCommand.LOCKED.value,
        "buzzer_alarm": False,
        "led_state": False,
    }


def acknowledge_breach() -> Dict:
    return {"security_status": SecurityStatus.SECURE.value, **disarm()}


def hardware_report(locker: Locker, ev: SensorEvent, threshold_grams: float) -> Dict:
    """Campos que escribe el controlador embebido al reportar un sensor.

    DOOR CLOSED cierra el ciclo en curso: re-bloquea, apaga el LED y vuelve
    el lifecycle a AVAILABLE; la ocupacion queda segun la ultima lectura de
    peso (en DROPPING_OFF siempre queda ocupado).
    """
    if ev.type == "WEIGHT":
        try:
            grams = float(ev.payload.get("grams", 0))
        except (TypeError, ValueError):
            raise ValidationError(f"Malformed WEIGHT report: {ev.payload!r}") from None
        if not math.isfinite(grams):
            raise ValidationError(f"Malformed WEIGHT report: {ev.payload!r}")
        return {"weight_status": grams}

    if ev.type == "OCCUPANCY":
        return {"is_occupied": bool(ev.payload.get("occupied"))}

    if ev.type == "DOOR":
        try:
            door = DoorState(ev.payload.get("state", DoorState.CLOSED.value))
        except ValueError:
            raise ValidationError(f"Malformed DOOR report: {ev.payload!r}") from None
        changes: Dict = {"door_state": door.value}
        if door == DoorState.CLOSED and locker.state != LifecycleState.AVAILABLE:
            if locker.state == LifecycleState.DROPPING_OFF:
                occupied = True
            else:
                occupied = locker.weight_status > threshold_grams
            changes.update(
                {
                    "state": LifecycleState.AVAILABLE.value,
                    "is_occupied": occupied,
                    "lock_command": LockCommand.LOCKED.value,
                    "led_state": False,
                }
            )
        return changes

    return {}
