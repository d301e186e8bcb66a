from __future__ import annotations
from typing import Optional


class AuthStateError(Exception):
    pass


class ConfigError(AuthStateError):
    pass


class ConnectionLost(AuthStateError):
    """Transient loss of the database handle; retried locally."""
    pass


class StoreUnavailable(AuthStateError):
    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class SerializationError(AuthStateError):
    """A stored value could not be decoded into its category's shape."""
    pass


class ConstraintViolation(AuthStateError):
    pass


class MigrationError(AuthStateError):
    def __init__(self, message: str, session: Optional[str] = None):
        super().__init__(message)
        self.session = session
