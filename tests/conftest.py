import sqlite3
import pytest

from authstate.config import StoreConfig
from authstate.crypto import init_auth_creds
from authstate.storage.connection import ConnectionRegistry, sqlite_connector

_DML = ("SELECT", "INSERT", "UPDATE", "DELETE")


class FlakyConnection:
    """Wraps an aiosqlite handle and fails data statements while the shared budget lasts."""

    def __init__(self, conn, budget):
        self._conn = conn
        self._budget = budget

    def execute(self, sql, parameters=None):
        verb = sql.lstrip().split(None, 1)[0].upper()
        if verb in _DML and self._budget["failures"] > 0:
            self._budget["failures"] -= 1
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, parameters)

    def __getattr__(self, name):
        return getattr(self._conn, name)


@pytest.fixture
def config(tmp_path):
    return StoreConfig(database=str(tmp_path / "auth.db"), retry_delay_ms=0, cache_ttl=0)


@pytest.fixture
def creds():
    return init_auth_creds()


@pytest.fixture
def flaky_registry():
    """Registry whose handles fail the next budget["failures"] data statements."""
    budget = {"failures": 0}

    async def connect(cfg):
        return FlakyConnection(await sqlite_connector(cfg), budget)

    return ConnectionRegistry(connector=connect), budget
