"""
authstate
=========
Persistent authentication state for a multi-device messaging client.

Provides:
- Typed key store over six key categories with a per-session credential
- Normalized (device + per-category tables) and legacy single-table layouts on SQLite
- Retrying connection registry, TTL read cache and a lossless value codec
- One-time migration from the legacy layout
"""

from .config import StoreConfig
from .exceptions import (
    AuthStateError, ConfigError, ConnectionLost, ConstraintViolation,
    MigrationError, SerializationError, StoreUnavailable,
)
from .migration import MigrationEngine, check_migration_needed, migrate
from .storage import AuthState, KeyCategory, load_auth_state, open_key_store

__version__ = "0.1.0"
