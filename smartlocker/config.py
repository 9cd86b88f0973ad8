import json
import logging
import os

"""
Configuracion del coordinador, leida de variables de entorno con defaults.

ROLE_TABLE y CREDENTIALS son JSON:
    ROLE_TABLE='{"courier-01": "COURIER", "terminal-01": "MONITOR"}'
    CREDENTIALS='{"courier-01": "secret", "jane": "pw"}'
Las identidades que no figuran en ROLE_TABLE se rechazan al autenticar.
"""

# Store
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")  # memory | sql
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./smartlocker.db")

# MQTT (controlador embebido)
BROKER_HOST = os.getenv("BROKER_HOST", "mosquitto")
MQTT_ENABLED = os.getenv("MQTT_ENABLED", "false").lower() == "true"
TOPIC_EVENTS = "sensors/+/events"
TOPIC_CMDS = "actuators/{device_id}/commands"

# Lockers
LOCKER_COUNT = int(os.getenv("LOCKER_COUNT", "2"))
WATCHDOG_SECONDS = float(os.getenv("WATCHDOG_SECONDS", "10"))
WEIGHT_SENSE_GRAMS = float(os.getenv("WEIGHT_SENSE_GRAMS", "45"))
TOKEN_LENGTH = 8

# Wallets
DEFAULT_WALLET_CREDIT = float(os.getenv("DEFAULT_WALLET_CREDIT", "100.00"))

# Evidencia fotografica
BLOB_DIR = os.getenv("BLOB_DIR", "./blobs")
BLOB_BASE_URL = os.getenv("BLOB_BASE_URL", "/blobs")

# Identidad
ROLE_TABLE = json.loads(os.getenv("ROLE_TABLE", "{}"))
CREDENTIALS = json.loads(os.getenv("CREDENTIALS", "{}"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def setup_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
