"""
authstate.config
----------------
Operator-facing configuration for the credential store.

Values can come from keyword arguments, from a mapping (snake_case or the
camelCase names used by older deployments) or from AUTHSTATE_* environment
variables.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, Optional, Tuple
import os

from . import constants as C
from .exceptions import ConfigError
from .utils import is_identifier

# camelCase spellings accepted by from_dict()
_ALIASES = {
    "tableName": "table_prefix",
    "tablePrefix": "table_prefix",
    "legacyTable": "legacy_table",
    "sourceTableName": "legacy_table",
    "maxtRetries": "retries",
    "maxRetries": "retries",
    "retryRequestDelayMs": "retry_delay_ms",
    "retryMaxDelayMs": "retry_max_delay_ms",
    "cacheTtl": "cache_ttl",
    "cacheMaxSize": "cache_maxsize",
    "batchReads": "batch_reads",
    "legacyFallback": "legacy_fallback",
}

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StoreConfig:
    host: str = C.DEFAULT_HOST
    port: int = C.DEFAULT_PORT
    user: str = C.DEFAULT_USER
    password: Optional[str] = None
    database: str = C.DEFAULT_DATABASE
    table_prefix: str = C.DEFAULT_TABLE_PREFIX
    legacy_table: str = C.DEFAULT_LEGACY_TABLE
    session: str = C.DEFAULT_SESSION
    retries: int = C.DEFAULT_RETRIES
    retry_delay_ms: int = C.DEFAULT_RETRY_DELAY_MS
    retry_max_delay_ms: int = C.DEFAULT_RETRY_MAX_DELAY_MS
    strategy: str = C.STRATEGY_NORMALIZED
    cache_ttl: float = C.DEFAULT_CACHE_TTL
    cache_maxsize: int = C.DEFAULT_CACHE_MAXSIZE
    batch_reads: bool = True
    legacy_fallback: bool = False

    def __post_init__(self):
        if self.strategy not in C.STRATEGIES:
            raise ConfigError(f"unknown strategy {self.strategy!r}, expected one of {C.STRATEGIES}")
        if self.retries < 1:
            raise ConfigError("retries must be >= 1")
        if self.retry_delay_ms < 0 or self.retry_max_delay_ms < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.cache_ttl < 0 or self.cache_maxsize < 0:
            raise ConfigError("cache_ttl and cache_maxsize must be >= 0")
        for name in ("table_prefix", "legacy_table"):
            if not is_identifier(getattr(self, name)):
                raise ConfigError(f"{name} must be a plain SQL identifier, got {getattr(self, name)!r}")
        if not self.session:
            raise ConfigError("session must not be empty")
        if self.session == C.ALL_SESSIONS:
            raise ConfigError(f"{C.ALL_SESSIONS!r} is reserved for migrations")

    @property
    def registry_key(self) -> Tuple[str, int, str, str]:
        return (self.host, self.port, self.database, self.session)

    def table(self, suffix: str) -> str:
        return f"{self.table_prefix}_{suffix}"

    def with_session(self, session: str) -> "StoreConfig":
        return replace(self, session=session)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        if redact and d.get("password"):
            d["password"] = "***"
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreConfig":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _ALIASES.get(key, key)
            if name in known and value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "StoreConfig":
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(C.ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            kwargs[f.name] = _coerce(f.name, raw)
        return cls(**kwargs)


def _coerce(name: str, raw: str) -> Any:
    if name in ("port", "retries", "retry_delay_ms", "retry_max_delay_ms", "cache_maxsize"):
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if name == "cache_ttl":
        try:
            return float(raw)
        except ValueError:
            raise ConfigError(f"cache_ttl must be a number, got {raw!r}") from None
    if name in ("batch_reads", "legacy_fallback"):
        return raw.strip().lower() in _TRUE
    return raw
