"""
Recorrido HTTP de los tres actores contra la app FastAPI:

1. Sesiones y roles
2. Drop-off, reporte de hardware y confirmacion
3. Verificacion, pago, handshake QR y retiro
4. Mantenimiento (reset, anomalias)
"""

import base64

import pytest
from fastapi.testclient import TestClient

from smartlocker.adapters.blobs import LocalBlobStore
from smartlocker.adapters.identity import StaticIdentityProvider
from smartlocker.adapters.store import InMemoryStateStore
from smartlocker.deps import build_container
from smartlocker.main import create_app, status_for
from smartlocker.domain.errors import ConflictError, LockerError, TokenMismatch

PHOTO_B64 = base64.b64encode(b"\xff\xd8\xff\xe0fake-jpeg").decode()


# -------------------------------------------------------------------
# Test Setup
# -------------------------------------------------------------------

@pytest.fixture
def client(tmp_path):
    """App con store en memoria y tabla de roles propia de cada test."""
    identity = StaticIdentityProvider(
        credentials={"courier-01": "pw", "Jane": "pw", "terminal-01": "pw"},
        roles={"courier-01": "COURIER", "Jane": "RECIPIENT", "terminal-01": "MONITOR"},
    )
    container = build_container(
        store=InMemoryStateStore(),
        identity=identity,
        blobs=LocalBlobStore(str(tmp_path / "blobs")),
        watchdog_seconds=30,
        locker_count=2,
    )
    app = create_app(container, mqtt_enabled=False)
    with TestClient(app) as c:
        yield c


def sign_in(client, identity):
    r = client.post("/v1/sessions", json={"identity": identity, "credential": "pw"})
    assert r.status_code == 200, r.text
    return {"X-Session-Token": r.json()["token"]}


def drop_off(client, headers, **overrides):
    body = {
        "locker_id": 1,
        "receiver": "Jane",
        "courier_name": "Ravi",
        "courier_contact": "555-0101",
        "amount": 50,
        "payment_type": "PAY_LATER",
        "photo_b64": PHOTO_B64,
    }
    body.update(overrides)
    return client.post("/v1/couriers/drop-offs", json=body, headers=headers)


def door(client, locker_id, state):
    r = client.post("/v1/sensors/events", json={
        "device_id": f"locker_{locker_id}", "type": "DOOR", "payload": {"state": state},
    })
    assert r.status_code == 200, r.text
    return r.json()


def deposit(client, courier):
    r = drop_off(client, courier)
    assert r.status_code == 201, r.text
    door(client, 1, "OPEN")
    door(client, 1, "CLOSED")
    assert client.post("/v1/couriers/drop-offs/1/confirm", headers=courier).status_code == 200
    return r.json()


def monitor_token(client, monitor, locker_id=1):
    view = client.get("/v1/views", headers=monitor).json()
    display = next(d for d in view["monitor"] if d["locker_id"] == locker_id)
    return display["token"]


# -------------------------------------------------------------------
# Errores
# -------------------------------------------------------------------

def test_error_status_mapping():
    assert status_for(ConflictError("x")) == 409
    assert status_for(TokenMismatch("x")) == 422
    assert status_for(LockerError("x")) == 500


# -------------------------------------------------------------------
# Sesiones
# -------------------------------------------------------------------

def test_sign_in_returns_role(client):
    r = client.post("/v1/sessions", json={"identity": "Jane", "credential": "pw"})
    assert r.status_code == 200
    assert r.json()["role"] == "RECIPIENT"


def test_sign_in_failures(client):
    r = client.post("/v1/sessions", json={"identity": "Jane", "credential": "nope"})
    assert r.status_code == 403
    assert r.json()["detail"] == "Access Denied: Invalid Account"

    r = client.post("/v1/sessions", json={"identity": "", "credential": ""})
    assert r.status_code == 400
    assert r.json()["detail"] == "Enter Credentials"


def test_requests_without_session_are_blocked(client):
    assert client.get("/v1/views").status_code == 403
    assert client.get("/v1/views", headers={"X-Session-Token": "made-up"}).status_code == 403


def test_sign_out_ends_session(client):
    headers = sign_in(client, "courier-01")
    assert client.delete("/v1/sessions/me", headers=headers).status_code == 204
    assert client.get("/v1/views", headers=headers).status_code == 403


# -------------------------------------------------------------------
# Courier
# -------------------------------------------------------------------

def test_drop_off_hides_token_from_courier(client):
    courier = sign_in(client, "courier-01")
    r = drop_off(client, courier)

    assert r.status_code == 201
    body = r.json()
    assert "secure_token" not in body
    assert body["status"] == "AWAITING_VERIFICATION"
    assert body["payment_status"] == "PENDING"

    view = client.get("/v1/views", headers=courier).json()
    assert view["lockers"][0]["render_state"] == "DROPPING_OFF"
    assert view["pending"][0]["id"] == body["id"]


def test_photo_evidence_is_served(client):
    courier = sign_in(client, "courier-01")
    assert drop_off(client, courier).status_code == 201

    photo_url = client.get("/v1/views", headers=courier).json()["pending"][0]["photo_url"]
    r = client.get(photo_url)
    assert r.status_code == 200
    assert r.content == base64.b64decode(PHOTO_B64)


def test_drop_off_errors(client):
    courier = sign_in(client, "courier-01")
    assert drop_off(client, courier, photo_b64=None).status_code == 400
    assert drop_off(client, courier, photo_b64="%%%").status_code == 400
    assert drop_off(client, courier, amount="fifty").status_code == 400
    assert drop_off(client, courier, locker_id=9).status_code == 404

    assert drop_off(client, courier).status_code == 201
    assert drop_off(client, courier).status_code == 409

    jane = sign_in(client, "Jane")
    assert drop_off(client, jane, locker_id=2).status_code == 403


def test_failed_action_leaves_dismissible_notification(client):
    courier = sign_in(client, "courier-01")
    drop_off(client, courier, photo_b64=None)

    notes = client.get("/v1/views", headers=courier).json()["notifications"]
    assert notes[-1]["message"] == "Photo Evidence Required"
    r = client.delete(f"/v1/notifications/{notes[-1]['id']}", headers=courier)
    assert r.json() == {"dismissed": True}
    assert client.get("/v1/views", headers=courier).json()["notifications"] == []


def test_door_close_secures_locker(client):
    courier = sign_in(client, "courier-01")
    deposit(client, courier)

    tile = client.get("/v1/views", headers=courier).json()["lockers"][0]
    assert tile["render_state"] == "SECURED"
    assert tile["led_on"] is False


def test_malformed_sensor_report_is_400(client):
    r = client.post("/v1/sensors/events", json={
        "device_id": "locker_1", "type": "DOOR", "payload": {"state": "AJAR"},
    })
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


def test_duplicate_sensor_event_is_ignored(client):
    event = {"event_id": "ev-1", "device_id": "locker_2", "type": "WEIGHT", "payload": {"grams": 80}}
    assert client.post("/v1/sensors/events", json=event).json()["changes"] == {"weight_status": 80.0}
    assert client.post("/v1/sensors/events", json=event).json()["changes"] == {}


# -------------------------------------------------------------------
# Recipient + monitor
# -------------------------------------------------------------------

def test_full_retrieval_over_http(client):
    courier = sign_in(client, "courier-01")
    jane = sign_in(client, "Jane")
    monitor = sign_in(client, "terminal-01")
    parcel = deposit(client, courier)
    pid = parcel["id"]

    view = client.get("/v1/views", headers=jane).json()
    assert view["pending"][0]["next_action"] == "VERIFY"

    assert client.post(f"/v1/parcels/{pid}/verification", json={"is_mine": True}, headers=jane).json()["status"] == "VERIFIED"
    assert client.get("/v1/wallet", headers=jane).json()["balance"] == 100.0

    r = client.post(f"/v1/parcels/{pid}/payment", headers=jane)
    assert r.status_code == 200
    assert r.json()["balance"] == 50.0
    assert r.json()["parcel"]["payment_status"] == "COMPLETED"

    # el monitor no muestra token hasta que el recipient pide escanear
    assert monitor_token(client, monitor) is None
    assert client.get("/v1/monitor/lockers/1/qr.png", headers=monitor).status_code == 404

    assert client.post(f"/v1/parcels/{pid}/ready", headers=jane).json()["scanning"] is True
    token = monitor_token(client, monitor)
    assert len(token) == 8

    png = client.get("/v1/monitor/lockers/1/qr.png", headers=monitor)
    assert png.status_code == 200
    assert png.headers["content-type"] == "image/png"
    assert client.get("/v1/monitor/lockers/1/qr.png", headers=jane).status_code == 403

    r = client.post(f"/v1/parcels/{pid}/scan", json={"decoded": "WRONG123"}, headers=jane)
    assert r.status_code == 422
    assert r.json()["detail"] == "Invalid Token Signature"
    tile = client.get("/v1/views", headers=monitor).json()["lockers"][0]
    assert tile["render_state"] == "SECURED"

    r = client.post(f"/v1/parcels/{pid}/scan", json={"decoded": token}, headers=jane)
    assert r.status_code == 200
    assert r.json()["status"] == "PICKED_UP"

    view = client.get("/v1/views", headers=monitor).json()
    assert view["lockers"][0]["render_state"] == "PICKING_UP"
    assert view["monitor"][0]["mode"] == "PROCESSING"
    assert view["revenue"] == 50.0

    door(client, 1, "OPEN")
    door(client, 1, "CLOSED")
    view = client.get("/v1/views", headers=jane).json()
    assert view["lockers"][0]["render_state"] == "AVAILABLE"
    assert view["history"][0]["id"] == pid


def test_scan_without_open_session_is_invalid(client):
    jane = sign_in(client, "Jane")
    r = client.post("/v1/parcels/whatever/scan", json={"decoded": "AB12CD34"}, headers=jane)
    assert r.status_code == 409


def test_insufficient_funds_is_402(client):
    courier = sign_in(client, "courier-01")
    jane = sign_in(client, "Jane")
    r = drop_off(client, courier, amount="150.00")
    pid = r.json()["id"]
    client.post(f"/v1/parcels/{pid}/verification", json={"is_mine": True}, headers=jane)

    r = client.post(f"/v1/parcels/{pid}/payment", headers=jane)
    assert r.status_code == 402
    assert client.get("/v1/wallet", headers=jane).json()["balance"] == 100.0


def test_cancel_scan(client):
    courier = sign_in(client, "courier-01")
    jane = sign_in(client, "Jane")
    monitor = sign_in(client, "terminal-01")
    pid = deposit(client, courier)["id"]
    client.post(f"/v1/parcels/{pid}/verification", json={"is_mine": True}, headers=jane)
    client.post(f"/v1/parcels/{pid}/payment", headers=jane)
    client.post(f"/v1/parcels/{pid}/ready", headers=jane)

    r = client.delete(f"/v1/parcels/{pid}/scan", headers=jane)
    assert r.json() == {"parcel_id": pid, "scanning": False}
    assert monitor_token(client, monitor) is None
    card = client.get("/v1/views", headers=jane).json()["pending"][0]
    assert card["status"] == "VERIFIED"
    assert card["next_action"] == "SCAN"


# -------------------------------------------------------------------
# Mantenimiento
# -------------------------------------------------------------------

def test_reset_and_anomalies_are_monitor_only(client):
    courier = sign_in(client, "courier-01")
    monitor = sign_in(client, "terminal-01")
    drop_off(client, courier)

    assert client.post("/v1/admin/reset", headers=courier).status_code == 403
    assert client.get("/v1/admin/anomalies", headers=monitor).json() == []

    r = client.post("/v1/admin/reset", headers=monitor)
    assert r.json() == {"status": "reset", "lockers": 2}
    view = client.get("/v1/views", headers=courier).json()
    assert [t["render_state"] for t in view["lockers"]] == ["AVAILABLE", "AVAILABLE"]
    assert view["pending"] == []
    assert view["revenue"] == 0


def test_acknowledge_breach(client):
    courier = sign_in(client, "courier-01")
    jane = sign_in(client, "Jane")
    assert client.post("/v1/lockers/1/acknowledge", headers=jane).status_code == 403
    r = client.post("/v1/lockers/1/acknowledge", headers=courier)
    assert r.json() == {"locker_id": 1, "security_status": "SECURE"}


# -------------------------------------------------------------------
# WebSocket
# -------------------------------------------------------------------

def test_websocket_pushes_role_view(client):
    headers = sign_in(client, "terminal-01")
    token = headers["X-Session-Token"]
    with client.websocket_connect(f"/ws?session={token}") as ws:
        msg = ws.receive_json()
        assert msg["type"] == "view"
        assert msg["payload"]["role"] == "MONITOR"
        assert len(msg["payload"]["lockers"]) == 2
