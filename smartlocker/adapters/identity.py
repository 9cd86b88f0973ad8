import hmac
import logging
from typing import Dict, Optional

from smartlocker.domain.errors import AuthorizationBlocked, ValidationError
from smartlocker.domain.models import Role

"""
Proveedor de identidad configurado explicitamente: tabla identidad -> secreto
y tabla identidad -> rol (ver config.ROLE_TABLE / config.CREDENTIALS).
No hay heuristica por email ni por password: una identidad sin rol
configurado no puede iniciar sesion.
"""

logger = logging.getLogger(__name__)


class StaticIdentityProvider:
    def __init__(self, credentials: Dict[str, str], roles: Dict[str, str]):
        self.credentials = dict(credentials)
        self.roles = {identity: Role(role) for identity, role in roles.items()}
        self._current: Optional[str] = None

    async def authenticate(self, identity: str, credential: str) -> str:
        if not identity or not credential:
            raise ValidationError("Enter Credentials")
        expected = self.credentials.get(identity)
        if expected is None or not hmac.compare_digest(expected.encode(), credential.encode()):
            logger.info("[AUTH] rejected credential for %s", identity)
            raise AuthorizationBlocked("Access Denied: Invalid Account")
        self.role_of(identity)
        self._current = identity
        return identity

    def current_identity(self) -> Optional[str]:
        return self._current

    def sign_out(self, identity: Optional[str] = None) -> None:
        """Olvida la identidad actual; con `identity`, solo si es esa."""
        if identity is None or identity == self._current:
            self._current = None

    def role_of(self, identity: str) -> Role:
        try:
            return self.roles[identity]
        except KeyError:
            raise AuthorizationBlocked(f"no role configured for {identity}") from None
