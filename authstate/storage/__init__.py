# authstate/storage/__init__.py

from typing import Optional

from ..config import StoreConfig
from ..constants import STRATEGY_LEGACY
from .cache import NullCache, TTLCache, make_cache
from .classify import classify, split_identifier
from .connection import ConnectionRegistry, Database
from .models import AuthenticationCreds, DeviceRecord, KeyCategory, KeyPair, SignedKeyPair
from .provider import BaseKeyStore, KeyStoreProvider
from .providers.legacy_provider import LegacyKeyStore
from .providers.memory_provider import InMemoryKeyStore
from .providers.sqlite_provider import SQLiteKeyStore
from .schema import SchemaManager
from .state import AuthState


def open_key_store(config: Optional[StoreConfig] = None, registry: Optional[ConnectionRegistry] = None,
                   cache=None) -> BaseKeyStore:
    """
    Factory resolver for the key store backing one session.

    - normalized (default): device table + one table per key category
    - legacy: single (session, id, value) table
    """
    config = config or StoreConfig.from_env()
    registry = registry if registry is not None else ConnectionRegistry()
    if cache is None:
        cache = make_cache(config.cache_ttl, config.cache_maxsize)

    if config.strategy == STRATEGY_LEGACY:
        return LegacyKeyStore(config, registry=registry, cache=cache)
    return SQLiteKeyStore(config, registry=registry, cache=cache)


async def load_auth_state(config: Optional[StoreConfig] = None, registry: Optional[ConnectionRegistry] = None,
                          cache=None, signer=None) -> AuthState:
    """Open the store and load the session's credential, generating a new one on first boot."""
    from ..crypto import init_auth_creds

    store = open_key_store(config, registry, cache)
    creds = await store.read_creds()
    if creds is None:
        store.log.info(f"no stored credentials for session={store.session}; generating new ones")
        creds = init_auth_creds(signer)
    return AuthState(creds=creds, keys=store)


__all__ = [
    "AuthState",
    "AuthenticationCreds",
    "BaseKeyStore",
    "ConnectionRegistry",
    "Database",
    "DeviceRecord",
    "InMemoryKeyStore",
    "KeyCategory",
    "KeyPair",
    "KeyStoreProvider",
    "LegacyKeyStore",
    "NullCache",
    "SQLiteKeyStore",
    "SchemaManager",
    "SignedKeyPair",
    "TTLCache",
    "classify",
    "load_auth_state",
    "make_cache",
    "open_key_store",
    "split_identifier",
]
