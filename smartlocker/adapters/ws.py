# adapters/ws.py
import json
import logging
from collections import defaultdict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from smartlocker.application.sync import ActorView, RoleScopedSync
from smartlocker.domain.errors import AuthorizationBlocked

"""
Feed en vivo por WebSocket: cada sesion se une a su room ("session:<token>").
La vista proyectada se re-envia entera en cada snapshot del store.
"""

logger = logging.getLogger(__name__)

router = APIRouter()


class WSManager:
    def __init__(self):
        self.active = set()
        self.rooms = defaultdict(set)

    async def connect(self, ws: WebSocket, rooms=None):
        self.active.add(ws)
        for r in rooms or []:
            self.rooms[r].add(ws)
        logger.info("[WS] connected. active=%s rooms=%s", len(self.active), {k: len(v) for k, v in self.rooms.items()})

    def disconnect(self, ws: WebSocket):
        self.active.discard(ws)
        for r in list(self.rooms):
            self.rooms[r].discard(ws)
            if not self.rooms[r]:
                del self.rooms[r]
        logger.info("[WS] disconnected. active=%s", len(self.active))

    async def send_all(self, message: dict):
        data = json.dumps(jsonable_encoder(message))
        for ws in list(self.active):
            try:
                await ws.send_text(data)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("[WS] send_all failed: %s", e)
                self.disconnect(ws)

    async def send_room(self, room: str, message: dict):
        data = json.dumps(jsonable_encoder(message))
        targets = list(self.rooms.get(room, []))
        logger.debug("[WS] send_room -> %s (subs=%s)", room, len(targets))
        for ws in targets:
            try:
                await ws.send_text(data)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("[WS] send_room %s failed: %s", room, e)
                self.disconnect(ws)


manager = WSManager()


@router.websocket("/ws")
async def ws_endpoint(ws: WebSocket):
    container = ws.app.state.container
    try:
        session = container.sessions.get(ws.query_params.get("session"))
    except AuthorizationBlocked:
        await ws.close(code=4401)
        return

    await ws.accept()
    room = f"session:{session.token}"
    await manager.connect(ws, rooms=[room])

    async def push(view: ActorView):
        await manager.send_room(room, {"type": "view", "payload": view.model_dump(mode="json")})

    sync = RoleScopedSync(container.store, session, container.blobs, container.hardware.weight_threshold)
    task = sync.start(push)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(ws)
    finally:
        task.cancel()
