from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from smartlocker import config
from smartlocker.adapters.blobs import LocalBlobStore
from smartlocker.adapters.identity import StaticIdentityProvider
from smartlocker.adapters.qr import QrCodeEncoder
from smartlocker.adapters.store import BaseStateStore, InMemoryStateStore
from smartlocker.adapters.store_sql import SqlStateStore
from smartlocker.adapters.mqtt_client import InMemoryEventRepo
from smartlocker.application.ports import QrEncoder
from smartlocker.application.hardware import HardwareService
from smartlocker.application.session import SessionRegistry

"""
Construccion de dependencias: store (memoria o SQL), identidad, blobs, QR,
registro de sesiones y servicio de hardware. Todo queda en un Container que
main.py cuelga de app.state.
"""


def make_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # sin pool: aiosqlite serializa por conexion
        return create_async_engine(url)
    return create_async_engine(url, pool_size=5, max_overflow=10, pool_timeout=30, pool_pre_ping=True)


@dataclass
class Container:
    store: BaseStateStore
    identity: StaticIdentityProvider
    blobs: LocalBlobStore
    qr: QrEncoder
    sessions: SessionRegistry
    hardware: HardwareService
    locker_count: int = config.LOCKER_COUNT
    engine: Optional[AsyncEngine] = field(default=None, repr=False)


def build_container(
    store: Optional[BaseStateStore] = None,
    identity: Optional[StaticIdentityProvider] = None,
    blobs: Optional[LocalBlobStore] = None,
    watchdog_seconds: float = config.WATCHDOG_SECONDS,
    locker_count: int = config.LOCKER_COUNT,
) -> Container:
    engine = None
    if store is None:
        if config.STORE_BACKEND == "sql":
            engine = make_engine(config.DATABASE_URL)
            SessionLocal: async_sessionmaker[AsyncSession] = async_sessionmaker(engine, expire_on_commit=False)
            store = SqlStateStore(SessionLocal)
        else:
            store = InMemoryStateStore()
    identity = identity or StaticIdentityProvider(config.CREDENTIALS, config.ROLE_TABLE)
    blobs = blobs or LocalBlobStore(config.BLOB_DIR, config.BLOB_BASE_URL)
    return Container(
        store=store,
        identity=identity,
        blobs=blobs,
        qr=QrCodeEncoder(),
        sessions=SessionRegistry(store, identity, watchdog_seconds),
        hardware=HardwareService(store, InMemoryEventRepo(), config.WEIGHT_SENSE_GRAMS),
        locker_count=locker_count,
        engine=engine,
    )
