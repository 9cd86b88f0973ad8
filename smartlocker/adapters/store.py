import asyncio
import copy
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from smartlocker.domain.errors import AuthorizationBlocked, TransportError

"""
Store de documentos jerarquico (contrato tipo realtime database).

- Claves tipo path: "system_control/locker_1/ui_session/ready_to_scan".
- update() es un merge por campo, last-writer-wins: los backends aplican
  cada lote de escrituras con merge_fields. Escritores concurrentes sobre
  campos disjuntos no chocan; sobre el mismo campo gana el ultimo.
- Escribir None borra la clave.
- La unica primitiva atomica es compare_and_set; increment() reintenta sobre
  ella.
- subscribe() devuelve un stream cancelable de snapshots completos (no deltas).

BaseStateStore implementa todo lo anterior sobre tres primitivas (_read,
_write, _cas) que definen los backends.
"""

logger = logging.getLogger(__name__)

WriteRule = Callable[[str, Any], bool]


def split_path(path: str) -> List[str]:
    return [p for p in path.strip("/").split("/") if p]


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def get_in(tree: Any, parts: List[str]) -> Any:
    node = tree
    for p in parts:
        if not isinstance(node, dict) or p not in node:
            return None
        node = node[p]
    return node


def set_in(tree: Dict, parts: List[str], value: Any) -> Dict:
    """Escribe value en tree[parts]; None borra y poda dicts vacios."""
    if not parts:
        return value if isinstance(value, dict) else {}
    node = tree
    trail = []
    for p in parts[:-1]:
        child = node.get(p)
        if not isinstance(child, dict):
            if value is None:
                return tree
            child = {}
            node[p] = child
        trail.append((node, p))
        node = child
    if value is None:
        node.pop(parts[-1], None)
        for parent, key in reversed(trail):
            if parent[key]:
                break
            del parent[key]
    else:
        node[parts[-1]] = copy.deepcopy(value)
    return tree


def merge_fields(doc: Optional[Dict], changes: Dict[str, Any]) -> Dict:
    """Merge last-writer-wins por campo.

    Las claves de changes son paths relativos al documento; se aplican en
    orden, asi que dentro de un mismo update la ultima escritura de un campo
    gana. Campos no mencionados se preservan.
    """
    merged = copy.deepcopy(doc) if isinstance(doc, dict) else {}
    for key, value in changes.items():
        merged = set_in(merged, split_path(key), value)
    return merged


def overlaps(a: str, b: str) -> bool:
    pa, pb = split_path(a), split_path(b)
    n = min(len(pa), len(pb))
    return pa[:n] == pb[:n]


def generate_push_id() -> str:
    # prefijo temporal para que el orden lexicografico siga al de insercion
    return f"{time.time_ns() // 1_000_000:013d}{secrets.token_hex(4)}"


@dataclass(frozen=True)
class Snapshot:
    path: str
    value: Any
    revision: int

    def exists(self) -> bool:
        return self.value is not None


_CLOSED = object()


class Subscription:
    """Stream perezoso y reiniciable de snapshots completos de un path.

    Se registra en el store recien al empezar a iterar, y el primer elemento
    es siempre el estado actual. cancel() corta la iteracion; volver a
    iterar re-registra y re-sincroniza.
    """

    def __init__(self, store: "BaseStateStore", path: str):
        self.store = store
        self.path = join_path(path)
        self._queue: Optional[asyncio.Queue] = None
        self.active = False

    async def start(self) -> None:
        if self.active:
            return
        self._queue = asyncio.Queue()
        self.active = True
        self.store._listeners.add(self)
        await self.resync()

    async def resync(self) -> None:
        if not self.active:
            return
        value = await self.store.get(self.path)
        self._queue.put_nowait(Snapshot(self.path, value, self.store.revision))

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.store._listeners.discard(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        await self.start()
        queue = self._queue
        while True:
            item = await queue.get()
            if item is _CLOSED:
                return
            yield item


class BaseStateStore:
    def __init__(self, rules: Optional[List[WriteRule]] = None):
        self.rules: List[WriteRule] = list(rules or [])
        self.revision = 0
        self._listeners: Set[Subscription] = set()

    # --- primitivas del backend ---
    async def _read(self, path: str) -> Any:
        raise NotImplementedError

    async def _write(self, writes: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _cas(self, path: str, expected: Any, new: Any) -> bool:
        raise NotImplementedError

    # --- contrato publico ---
    async def get(self, path: str) -> Any:
        return await self._read(join_path(path))

    async def set(self, path: str, value: Any) -> None:
        await self._commit({join_path(path): value})

    async def update(self, path: str, changes: Dict[str, Any]) -> None:
        writes = {join_path(path, key): value for key, value in changes.items()}
        await self._commit(writes)

    async def push(self, path: str, value: Any) -> str:
        key = generate_push_id()
        await self._commit({join_path(path, key): value})
        return key

    async def compare_and_set(self, path: str, expected: Any, new: Any) -> bool:
        path = join_path(path)
        self._check_rules({path: new})
        ok = await self._cas(path, expected, new)
        if ok:
            await self._after_write([path])
        return ok

    async def transaction(self, path: str, fn: Callable[[Any], Any], max_retries: int = 25) -> Any:
        for _ in range(max_retries):
            current = await self.get(path)
            new = fn(current)
            if await self.compare_and_set(path, current, new):
                return new
            logger.debug("[STORE] transaction conflict on %s, retrying", path)
        raise TransportError(f"transaction on {path} aborted after {max_retries} retries")

    async def increment(self, path: str, delta: float) -> float:
        return await self.transaction(path, lambda current: round((current or 0) + delta, 2))

    def subscribe(self, path: str) -> Subscription:
        return Subscription(self, path)

    # --- internos ---
    def _check_rules(self, writes: Dict[str, Any]) -> None:
        for path, value in writes.items():
            for rule in self.rules:
                if not rule(path, value):
                    logger.warning("[STORE] write to %s blocked by rule", path)
                    raise AuthorizationBlocked(f"write to {path} denied")

    async def _commit(self, writes: Dict[str, Any]) -> None:
        self._check_rules(writes)
        await self._write(writes)
        await self._after_write(list(writes))

    async def _after_write(self, paths: List[str]) -> None:
        self.revision += 1
        affected = [
            sub for sub in list(self._listeners)
            if any(overlaps(sub.path, p) for p in paths)
        ]
        for sub in affected:
            await sub.resync()


class InMemoryStateStore(BaseStateStore):
    """Store en proceso. offline=True simula la caida del transporte."""

    def __init__(self, rules: Optional[List[WriteRule]] = None):
        super().__init__(rules)
        self._root: Dict = {}
        self._lock = asyncio.Lock()
        self.offline = False

    def _ensure_online(self) -> None:
        if self.offline:
            raise TransportError("store unavailable")

    async def _read(self, path: str) -> Any:
        self._ensure_online()
        return copy.deepcopy(get_in(self._root, split_path(path)))

    async def _write(self, writes: Dict[str, Any]) -> None:
        self._ensure_online()
        async with self._lock:
            self._root = merge_fields(self._root, writes)

    async def _cas(self, path: str, expected: Any, new: Any) -> bool:
        self._ensure_online()
        async with self._lock:
            parts = split_path(path)
            if get_in(self._root, parts) != expected:
                return False
            self._root = set_in(self._root, parts, new)
            return True
