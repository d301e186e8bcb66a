"""
authstate.storage.connection
----------------------------
Database handles and the retrying query primitive.

ConnectionRegistry keeps one lazily opened aiosqlite handle per
(host, port, database, session) key and reopens it when it has been closed
or a refresh is forced. A registry is an ordinary object, so independent
registries can live side by side in one process.

Database wraps a registry slot and runs every statement through a bounded
exponential-backoff retry. The last attempt always runs on a freshly opened
handle; when that fails too the caller gets StoreUnavailable.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
import asyncio, os, sqlite3

import aiosqlite
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import StoreConfig
from ..exceptions import ConnectionLost, ConstraintViolation, StoreUnavailable
from ..logger import child_logger
from .schema import SchemaManager

log = child_logger("storage.connection")

Connector = Callable[[StoreConfig], Awaitable[aiosqlite.Connection]]
RegistryKey = Tuple[str, int, str, str]
SchemaKey = Tuple[RegistryKey, str, str, str]

_TRANSIENT_MARKERS = ("locked", "busy", "unable to open", "disk i/o", "closed")


async def sqlite_connector(config: StoreConfig) -> aiosqlite.Connection:
    in_memory = config.database == ":memory:" or config.database.startswith("file::memory:")
    if not in_memory:
        # If no directory, default to current working directory
        dir_path = os.path.dirname(config.database) or "."
        os.makedirs(dir_path, exist_ok=True)
    conn = await aiosqlite.connect(config.database, timeout=5)
    await conn.execute("PRAGMA foreign_keys = ON")
    if not in_memory:
        await conn.execute("PRAGMA journal_mode = WAL")
    return conn


def is_closed(conn: Any) -> bool:
    # aiosqlite drops its sqlite3 connection on close()
    closed = getattr(conn, "closed", None)
    if isinstance(closed, bool):
        return closed
    return getattr(conn, "_connection", None) is None


@contextmanager
def driver_errors():
    """Translate sqlite3/aiosqlite failures into the store's error taxonomy."""
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise ConstraintViolation(str(exc)) from exc
    except sqlite3.OperationalError as exc:
        if any(m in str(exc).lower() for m in _TRANSIENT_MARKERS):
            raise ConnectionLost(str(exc)) from exc
        raise
    except sqlite3.ProgrammingError as exc:
        if "closed" in str(exc).lower():
            raise ConnectionLost(str(exc)) from exc
        raise
    except ValueError as exc:
        if "no active connection" in str(exc).lower():
            raise ConnectionLost(str(exc)) from exc
        raise
    except OSError as exc:
        raise ConnectionLost(str(exc)) from exc


class ConnectionRegistry:
    def __init__(self, connector: Optional[Connector] = None, schema: Optional[SchemaManager] = None):
        self.connector: Connector = connector or sqlite_connector
        self.schema = schema or SchemaManager()
        self._slots: Dict[RegistryKey, aiosqlite.Connection] = {}
        self._locks: Dict[RegistryKey, asyncio.Lock] = {}
        # schema setup runs once per (key, layout), on the first successful open
        self._ensured: Set[SchemaKey] = set()
        self.opened = 0

    def _lock(self, key: RegistryKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def acquire(self, config: StoreConfig, force: bool = False) -> aiosqlite.Connection:
        key = config.registry_key
        schema_key = (key, config.strategy, config.table_prefix, config.legacy_table)
        async with self._lock(key):
            conn = self._slots.get(key)
            if conn is None or force or is_closed(conn):
                if conn is not None:
                    await self._discard(conn)
                    self._slots.pop(key, None)
                with driver_errors():
                    conn = await self.connector(config)
                self.opened += 1
                if config.database == ":memory:":
                    # an in-memory database is empty again after every reopen
                    self._ensured = {s for s in self._ensured if s[0] != key}
                log.info(f"opened database handle database={config.database} session={config.session} force={force}")

            if schema_key not in self._ensured:
                try:
                    # a failure here is fatal for the handle; it is never handed out
                    with driver_errors():
                        await self.schema.ensure(conn, config)
                except BaseException:
                    await self._discard(conn)
                    self._slots.pop(key, None)
                    raise
                self._ensured.add(schema_key)
            self._slots[key] = conn
            return conn

    def peek(self, config: StoreConfig) -> Optional[aiosqlite.Connection]:
        return self._slots.get(config.registry_key)

    async def release(self, config: StoreConfig) -> None:
        key = config.registry_key
        async with self._lock(key):
            conn = self._slots.pop(key, None)
            if conn is not None:
                await self._discard(conn)

    async def close_all(self) -> None:
        for key in list(self._slots):
            conn = self._slots.pop(key)
            await self._discard(conn)

    @staticmethod
    async def _discard(conn: aiosqlite.Connection) -> None:
        if is_closed(conn):
            return
        try:
            await conn.close()
        except (sqlite3.Error, ValueError, OSError) as exc:
            log.debug(f"ignoring error while closing dead handle: {exc}")

    def __len__(self) -> int:
        return len(self._slots)


class Database:
    """Retrying query surface over one registry slot."""

    def __init__(self, config: StoreConfig, registry: Optional[ConnectionRegistry] = None):
        self.config = config
        self.registry = registry if registry is not None else ConnectionRegistry()

    def _retryer(self) -> AsyncRetrying:
        cfg = self.config
        return AsyncRetrying(
            stop=stop_after_attempt(cfg.retries),
            wait=wait_exponential(multiplier=cfg.retry_delay_ms / 1000.0, max=cfg.retry_max_delay_ms / 1000.0),
            retry=retry_if_exception_type(ConnectionLost),
            reraise=True,
            before_sleep=self._log_retry,
        )

    @staticmethod
    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(f"query attempt {retry_state.attempt_number} failed: {exc}")

    async def run(self, op: Callable[[aiosqlite.Connection], Awaitable[Any]]) -> Any:
        retries = self.config.retries
        try:
            async for attempt in self._retryer():
                with attempt:
                    number = attempt.retry_state.attempt_number
                    force = retries > 1 and number == retries
                    if force:
                        log.info(f"final attempt {number}/{retries}: refreshing database handle")
                    with driver_errors():
                        conn = await self.registry.acquire(self.config, force=force)
                        return await op(conn)
        except ConnectionLost as exc:
            raise StoreUnavailable(
                f"store unavailable after {retries} attempts: {exc}", attempts=retries
            ) from exc

    # --------- query helpers ----------
    async def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple]:
        async def op(conn):
            async with conn.execute(sql, tuple(params)) as cur:
                return list(await cur.fetchall())
        return await self.run(op)

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Tuple]:
        rows = await self.fetchall(sql, params)
        return rows[0] if rows else None

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async def op(conn):
            async with conn.execute(sql, tuple(params)) as cur:
                count = cur.rowcount
            await conn.commit()
            return count
        return await self.run(op)

    async def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> int:
        rows = [tuple(r) for r in rows]
        if not rows:
            return 0

        async def op(conn):
            async with conn.executemany(sql, rows) as cur:
                count = cur.rowcount
            await conn.commit()
            return count
        return await self.run(op)

    async def table_exists(self, name: str) -> bool:
        row = await self.fetchone("SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,))
        return row is not None

    async def close(self) -> None:
        await self.registry.release(self.config)
