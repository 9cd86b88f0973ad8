from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from smartlocker.domain.models import Command, Role

"""
Puertos de la aplicacion. Los servicios dependen solo de estos contratos;
las implementaciones viven en adapters/.
"""


class Subscription(Protocol):
    path: str

    def __aiter__(self): ...
    async def resync(self) -> None: ...
    def cancel(self) -> None: ...


class StateStore(Protocol):
    revision: int

    async def get(self, path: str) -> Any: ...
    async def set(self, path: str, value: Any) -> None: ...
    async def update(self, path: str, changes: Dict[str, Any]) -> None: ...
    async def push(self, path: str, value: Any) -> str: ...
    async def increment(self, path: str, delta: float) -> float: ...
    async def compare_and_set(self, path: str, expected: Any, new: Any) -> bool: ...
    async def transaction(self, path: str, fn: Callable[[Any], Any], max_retries: int = 25) -> Any: ...
    def subscribe(self, path: str) -> Subscription: ...


class BlobStore(Protocol):
    async def upload(self, data: bytes) -> str: ...
    def resolve(self, reference: str) -> str: ...


class IdentityProvider(Protocol):
    async def authenticate(self, identity: str, credential: str) -> str: ...
    def current_identity(self) -> Optional[str]: ...
    def sign_out(self, identity: Optional[str] = None) -> None: ...
    def role_of(self, identity: str) -> Role: ...


class QrEncoder(Protocol):
    def encode(self, text: str) -> bytes: ...


class ActuatorOut(Protocol):
    async def publish_command(self, cmd: Command) -> None: ...


AlertCallback = Callable[[int, str], Awaitable[None]]
