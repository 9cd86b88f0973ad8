class LockerError(Exception):
    pass


class ValidationError(LockerError):
    pass


class ConflictError(LockerError):
    pass


class InvalidTransition(LockerError):
    pass


class NotFoundError(LockerError):
    pass


class TokenMismatch(LockerError):
    pass


class InsufficientFunds(LockerError):
    pass


class AuthorizationBlocked(LockerError):
    """El store rechazo una escritura por politica. No se reintenta."""


class TransportError(LockerError):
    """Store o red no disponibles; la operacion se abandona."""
