import json
import asyncio
import logging
from typing import Optional

from asyncio_mqtt import Client, MqttError
from pydantic import ValidationError as PydanticValidationError

from smartlocker import config
from smartlocker.application.hardware import CommandRelay, HardwareService
from smartlocker.application.ports import StateStore
from smartlocker.domain.errors import LockerError
from smartlocker.domain.models import Command, SensorEvent

"""
Adaptador MQTT con el controlador embebido de los lockers.

    sensors/locker_N/events       el controlador publica lecturas (puerta, peso)
    actuators/locker_N/commands   publicamos lock_command / led / buzzer

Un solo client MQTT: consume eventos y, en otra tarea, re-publica los
cambios de system_control como comandos.
"""

logger = logging.getLogger(__name__)


# --- Actuator que reutiliza el MISMO client MQTT ---
class MqttActuator:
    def __init__(self, client: Optional[Client] = None):
        self.client: Optional[Client] = client

    def set_client(self, client: Optional[Client]):
        self.client = client

    async def publish_command(self, cmd: Command) -> None:
        if not self.client:
            raise RuntimeError("MQTT client not started")
        topic = config.TOPIC_CMDS.format(device_id=cmd.device_id)
        payload = cmd.model_dump(mode="json")
        logger.info("[MQTT] publish -> %s %s", topic, payload)
        await self.client.publish(topic, json.dumps(payload), qos=1)


# --- Repositorio minimo en memoria (dedupe de entregas repetidas) ---
class InMemoryEventRepo:
    def __init__(self):
        self._seen = set()
    async def save_event(self, ev: SensorEvent) -> None:
        self._seen.add(ev.event_id)
    async def seen_event(self, event_id: str) -> bool:
        return event_id in self._seen


async def handle_message(hardware: HardwareService, raw: bytes) -> None:
    try:
        ev = SensorEvent(**json.loads(raw.decode()))
    except (ValueError, TypeError, PydanticValidationError) as e:
        logger.warning("[MQTT] dropping malformed sensor event: %s", e)
        return
    try:
        await hardware.handle_sensor_event(ev)
    except (LockerError, ValueError) as e:
        logger.error("[MQTT] sensor event %s rejected: %s", ev.event_id, e)


mqtt_actuator = MqttActuator()          # sin client, se inyecta en start_mqtt
_consume_task: Optional[asyncio.Task] = None


async def start_mqtt(store: StateStore, hardware: HardwareService, host: str = config.BROKER_HOST):
    """Conecta al broker, se suscribe y procesa eventos de sensores."""
    global _consume_task

    async def _consume():
        async with Client(host) as client:
            mqtt_actuator.set_client(client)
            relay_task = asyncio.create_task(CommandRelay(store, mqtt_actuator).run())
            try:
                async with client.messages() as messages:
                    await client.subscribe(config.TOPIC_EVENTS)
                    logger.info("[MQTT] subscribed to %s", config.TOPIC_EVENTS)
                    async for msg in messages:
                        await handle_message(hardware, msg.payload)
            finally:
                relay_task.cancel()
                mqtt_actuator.set_client(None)

    async def _supervise():
        while True:
            try:
                await _consume()
            except MqttError as e:
                logger.error("[MQTT] connection lost (%s); reconnecting in 5s", e)
                await asyncio.sleep(5)

    _consume_task = asyncio.create_task(_supervise())


async def stop_mqtt():
    global _consume_task
    if _consume_task:
        _consume_task.cancel()
        _consume_task = None
