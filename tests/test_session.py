import asyncio

import pytest

from smartlocker.adapters.identity import StaticIdentityProvider
from smartlocker.adapters.qr import QrCodeEncoder
from smartlocker.application.session import SessionRegistry
from smartlocker.domain.errors import AuthorizationBlocked, ConflictError, ValidationError
from smartlocker.domain.models import Role, locker_path


@pytest.fixture
def identity():
    return StaticIdentityProvider(
        credentials={"courier-01": "pw", "Jane": "pw", "ghost": "pw"},
        roles={"courier-01": "COURIER", "Jane": "RECIPIENT"},
    )


async def test_authenticate_and_resolve_role(identity):
    assert await identity.authenticate("Jane", "pw") == "Jane"
    assert identity.current_identity() == "Jane"
    assert identity.role_of("Jane") == Role.RECIPIENT
    identity.sign_out()
    assert identity.current_identity() is None


@pytest.mark.parametrize("who, secret, error", [
    ("", "pw", ValidationError),
    ("Jane", "", ValidationError),
    ("Jane", "wrong", AuthorizationBlocked),
    ("nobody", "pw", AuthorizationBlocked),
    ("ghost", "pw", AuthorizationBlocked),
])
async def test_authentication_failures(identity, who, secret, error):
    with pytest.raises(error):
        await identity.authenticate(who, secret)


async def test_registry_resolves_role_once(store, identity):
    registry = SessionRegistry(store, identity, watchdog_seconds=5)
    session = await registry.sign_in("courier-01", "pw")

    identity.roles["courier-01"] = Role.MONITOR
    assert registry.get(session.token).role == Role.COURIER

    await registry.close_all()


async def test_sign_out_cancels_session_resources(store, identity):
    registry = SessionRegistry(store, identity, watchdog_seconds=0.05)
    session = await registry.sign_in("courier-01", "pw")
    await store.update(locker_path(1), {"lock_command": "UNLOCKED"})
    session.watchdog.arm(1)
    sub = store.subscribe(locker_path(1))
    await sub.start()
    session.track_subscription(sub)

    await registry.sign_out(session.token)
    await asyncio.sleep(0.1)

    assert session.closed
    assert not sub.active
    assert (await store.get(locker_path(1)))["security_status"] == "SECURE"
    with pytest.raises(AuthorizationBlocked):
        registry.get(session.token)


async def test_registry_sign_out_forgets_provider_identity(store, identity):
    registry = SessionRegistry(store, identity, watchdog_seconds=5)
    session = await registry.sign_in("Jane", "pw")
    assert identity.current_identity() == "Jane"

    await registry.sign_out(session.token)
    assert identity.current_identity() is None


async def test_sign_out_keeps_a_newer_identity(store, identity):
    registry = SessionRegistry(store, identity, watchdog_seconds=5)
    jane = await registry.sign_in("Jane", "pw")
    await registry.sign_in("courier-01", "pw")

    await registry.sign_out(jane.token)
    assert identity.current_identity() == "courier-01"
    await registry.close_all()


async def test_unknown_session_token_is_blocked(store, identity):
    registry = SessionRegistry(store, identity, watchdog_seconds=5)
    with pytest.raises(AuthorizationBlocked):
        registry.get(None)
    with pytest.raises(AuthorizationBlocked):
        registry.get("made-up")


async def test_notifications_are_dismissible_alarms_are_not(jane):
    note = jane.notify("error", "Missing Details")
    assert jane.dismiss(note.id) is True
    assert jane.dismiss(note.id) is False

    jane.alarms.add(1)
    alarm = jane.notify("alarm", "CRITICAL ALERT: Locker 01 door left open!", locker_id=1, persistent=True)
    assert jane.dismiss(alarm.id) is False
    jane.clear_alarm(1)
    assert jane.notifications == []
    assert jane.alarms == set()


async def test_reporting_notifies_and_reraises(courier):
    with pytest.raises(ConflictError):
        with courier.reporting(success="never", locker_id=2):
            raise ConflictError("Locker 02 is occupied")
    assert [(n.level, n.message) for n in courier.notifications] == [("error", "Locker 02 is occupied")]

    with courier.reporting(success="Locker 02 secured.", locker_id=2):
        pass
    assert courier.notifications[-1].level == "success"


async def test_require_checks_role(monitor):
    monitor.require(Role.MONITOR, Role.COURIER)
    with pytest.raises(AuthorizationBlocked):
        monitor.require(Role.RECIPIENT)


def test_qr_encoder_renders_png():
    png = QrCodeEncoder().encode("AB12CD34")
    assert png.startswith(b"\x89PNG\r\n\x1a\n")
