from pydantic import BaseModel, Field
from typing import Literal, Optional, Dict
from datetime import datetime, timezone
from enum import Enum
import uuid

"""
Contratos del dominio (Pydantic): documentos del store (Locker, Parcel),
eventos de sensores que reporta el controlador embebido, comandos hacia los
actuadores y notificaciones por sesion.

Los documentos se guardan en el store como dicts (model_dump(mode="json"));
el sentinel "EMPTY" de los campos opcionales se representa con None.
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockCommand(str, Enum):
    LOCKED = "LOCKED"
    UNLOCKED = "UNLOCKED"


class DoorState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"


class SecurityStatus(str, Enum):
    SECURE = "SECURE"
    BREACH = "BREACH"


class LifecycleState(str, Enum):
    AVAILABLE = "AVAILABLE"
    DROPPING_OFF = "DROPPING_OFF"
    PICKING_UP = "PICKING_UP"


class DeliveryStatus(str, Enum):
    STANDBY = "STANDBY"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


class PaymentType(str, Enum):
    PREPAID = "PREPAID"
    PAY_LATER = "PAY_LATER"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class ParcelStatus(str, Enum):
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    COMPLETED = "COMPLETED"


HISTORY_STATUSES = {ParcelStatus.PICKED_UP, ParcelStatus.COMPLETED, ParcelStatus.REJECTED}


class Role(str, Enum):
    COURIER = "COURIER"
    RECIPIENT = "RECIPIENT"
    MONITOR = "MONITOR"


class UiSession(BaseModel):
    delivery_status: DeliveryStatus = DeliveryStatus.STANDBY
    rider_name: Optional[str] = None
    rider_contact: Optional[str] = None
    recipient_identity: Optional[str] = None
    is_confirmed: bool = False
    ready_to_scan: bool = False
    monitor_token: Optional[str] = None


class Locker(BaseModel):
    id: int
    lock_command: LockCommand = LockCommand.LOCKED
    door_state: DoorState = DoorState.CLOSED
    is_occupied: bool = False
    weight_status: float = 0.0
    security_status: SecurityStatus = SecurityStatus.SECURE
    led_state: bool = False
    buzzer_alarm: bool = False
    state: LifecycleState = LifecycleState.AVAILABLE
    ui_session: UiSession = Field(default_factory=UiSession)

    @classmethod
    def safe_state(cls, locker_id: int) -> "Locker":
        return cls(id=locker_id)


class Parcel(BaseModel):
    id: Optional[str] = None  # clave generada por el store, no se persiste
    receiver: str
    receiver_phone: Optional[str] = None
    courier_name: str
    amount: float
    payment_type: PaymentType
    payment_status: PaymentStatus
    locker_id: int
    photo_reference: str
    secure_token: str
    status: ParcelStatus = ParcelStatus.AWAITING_VERIFICATION
    timestamp: datetime = Field(default_factory=utcnow)

    def to_document(self) -> Dict:
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_document(cls, parcel_id: str, doc: Dict) -> "Parcel":
        return cls(id=parcel_id, **doc)


class DropOffRequest(BaseModel):
    locker_id: int
    receiver: Optional[str] = None
    receiver_phone: Optional[str] = None
    courier_name: Optional[str] = None
    courier_contact: Optional[str] = None
    amount: Optional[str | float] = None
    payment_type: PaymentType = PaymentType.PREPAID


SensorType = Literal["DOOR", "WEIGHT", "OCCUPANCY", "HEALTH"]


class SensorEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    type: SensorType
    payload: Dict


class Command(BaseModel):
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str
    lock_command: LockCommand
    led_state: bool
    buzzer_alarm: bool
    issued_at: datetime = Field(default_factory=utcnow)


NotificationLevel = Literal["info", "success", "error", "alarm"]


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    level: NotificationLevel
    message: str
    locker_id: Optional[int] = None
    persistent: bool = False
    created_at: datetime = Field(default_factory=utcnow)


def locker_path(locker_id: int) -> str:
    return f"system_control/locker_{locker_id}"


def device_id_for(locker_id: int) -> str:
    return f"locker_{locker_id}"


def locker_id_from_device(device_id: str) -> int:
    if not device_id.startswith("locker_"):
        raise ValueError(f"unknown device {device_id!r}")
    return int(device_id[len("locker_"):])


PARCELS_PATH = "parcels"
LOCKERS_PATH = "system_control"
REVENUE_PATH = "system_stats/total_revenue"


def wallet_path(identity: str) -> str:
    return f"user_wallets/{identity}"


def parcel_path(parcel_id: str) -> str:
    return f"{PARCELS_PATH}/{parcel_id}"
