import asyncio

from smartlocker.application.watchdog import Watchdog
from smartlocker.domain import state_machine as sm
from smartlocker.domain.models import Locker, locker_path

from tests.conftest import sensor


async def unlock(store, locker_id=1):
    await store.update(locker_path(locker_id), {"lock_command": "UNLOCKED", "door_state": "OPEN"})


async def read(store, locker_id=1):
    return await store.get(locker_path(locker_id))


async def test_breach_raised_when_door_left_open(store):
    alerts = []

    async def on_alert(locker_id, message):
        alerts.append((locker_id, message))

    dog = Watchdog(store, 0.05, on_alert=on_alert)
    await unlock(store)
    dog.arm(1)
    await asyncio.sleep(0.15)

    doc = await read(store)
    assert doc["security_status"] == "BREACH"
    assert doc["buzzer_alarm"] is True
    assert alerts == [(1, "CRITICAL ALERT: Locker 01 door left open!")]
    assert not dog.pending(1)


async def test_no_breach_when_door_closes_before_expiry(store, hardware):
    dog = Watchdog(store, 0.1)
    await store.update(locker_path(1), sm.begin_drop_off(Locker(id=1), "AB12CD34", "Ravi", None, "Jane"))
    dog.arm(1)

    await hardware.handle_sensor_event(sensor(1, "DOOR", state="OPEN"))
    await hardware.handle_sensor_event(sensor(1, "DOOR", state="CLOSED"))
    await asyncio.sleep(0.2)

    doc = await read(store)
    assert doc["security_status"] == "SECURE"
    assert doc["buzzer_alarm"] is False


async def test_rearming_replaces_the_pending_check(store):
    fired = []

    async def on_alert(locker_id, message):
        fired.append(asyncio.get_running_loop().time())

    dog = Watchdog(store, 0.2, on_alert=on_alert)
    await unlock(store)
    loop = asyncio.get_running_loop()

    dog.arm(1)
    await asyncio.sleep(0.1)
    second_armed_at = loop.time()
    dog.arm(1)

    # el primer chequeo hubiera disparado en t=0.2
    await asyncio.sleep(0.15)
    assert fired == []

    await asyncio.sleep(0.2)
    assert len(fired) == 1
    assert fired[0] >= second_armed_at + 0.2


async def test_fires_once_per_arming(store):
    fired = []

    async def on_alert(locker_id, message):
        fired.append(locker_id)

    dog = Watchdog(store, 0.03, on_alert=on_alert)
    await unlock(store)
    dog.arm(1)
    await asyncio.sleep(0.15)
    assert fired == [1]


async def test_disarm_cancels_and_relocks(store):
    dog = Watchdog(store, 0.05)
    await store.update(locker_path(1), {"lock_command": "UNLOCKED", "led_state": True, "buzzer_alarm": True})
    dog.arm(1)

    await dog.disarm(1)
    await dog.disarm(1)
    await asyncio.sleep(0.1)

    doc = await read(store)
    assert doc["lock_command"] == "LOCKED"
    assert doc["led_state"] is False
    assert doc["buzzer_alarm"] is False
    assert doc["security_status"] == "SECURE"


async def test_cancel_only_touches_own_timers(store):
    mine = Watchdog(store, 0.05)
    theirs = Watchdog(store, 0.05)
    await unlock(store, 1)
    await unlock(store, 2)
    mine.arm(1)
    theirs.arm(2)

    mine.cancel_all()
    await asyncio.sleep(0.12)

    assert (await read(store, 1))["security_status"] == "SECURE"
    assert (await read(store, 2))["security_status"] == "BREACH"


async def test_check_failure_is_reported_not_raised(store):
    errors = []

    async def on_error(locker_id, message):
        errors.append(message)

    dog = Watchdog(store, 0.02, on_error=on_error)
    await unlock(store)
    dog.arm(1)
    store.offline = True
    await asyncio.sleep(0.08)
    store.offline = False

    assert len(errors) == 1
    assert "Locker 01" in errors[0]
