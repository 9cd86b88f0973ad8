import hmac
import secrets
import string
from dataclasses import dataclass, field
from typing import Optional

from smartlocker.domain.errors import InvalidTransition, TokenMismatch

TOKEN_ALPHABET = string.ascii_uppercase + string.digits


def generate_token(length: int = 8) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


@dataclass
class ScanSession:
    """Sesion de escaneo abierta en el dispositivo del recipient.

    El token esperado se captura al abrir la sesion; los cambios posteriores
    del documento no lo alteran. Un mismatch no cierra la sesion; una vez
    cerrada (scan aceptado o cancelado) no acepta mas intentos.
    """

    locker_id: int
    parcel_id: str
    expected_token: str
    attempts: int = 0
    closed: bool = field(default=False)

    def check(self, decoded: Optional[str]) -> None:
        if self.closed:
            raise InvalidTransition("Scan session already closed")
        self.attempts += 1
        if decoded is None or not hmac.compare_digest(
            decoded.encode("utf-8"), self.expected_token.encode("utf-8")
        ):
            raise TokenMismatch("Invalid Token Signature")
