# authstate/storage/schema.py
from __future__ import annotations
from typing import List, Optional

import aiosqlite

from ..config import StoreConfig
from ..constants import DEVICES_SUFFIX, STRATEGY_LEGACY, STRATEGY_NORMALIZED, TABLE_SUFFIXES
from ..logger import child_logger
from .models import KeyCategory

log = child_logger("storage.schema")


def key_table(config: StoreConfig, category: KeyCategory | str) -> str:
    return config.table(TABLE_SUFFIXES[KeyCategory.parse(category).value])


def devices_table(config: StoreConfig) -> str:
    return config.table(DEVICES_SUFFIX)


def legacy_ddl(table: str) -> List[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
          session TEXT NOT NULL,
          id TEXT NOT NULL,
          value TEXT,
          UNIQUE (session, id)
        )
        """,
        f"CREATE INDEX IF NOT EXISTS idx_{table}_session ON {table} (session)",
    ]


def normalized_ddl(config: StoreConfig) -> List[str]:
    devices = devices_table(config)
    stmts = [
        f"""
        CREATE TABLE IF NOT EXISTS {devices} (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          session TEXT NOT NULL UNIQUE,
          device_id TEXT,
          registration_id INTEGER,
          noise_key TEXT,
          pairing_ephemeral_key_pair TEXT,
          signed_identity_key TEXT,
          signed_pre_key TEXT,
          adv_secret_key TEXT,
          account_data TEXT,
          created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
          updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    ]
    for category in KeyCategory:
        table = key_table(config, category)
        stmts.append(
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
              device_id INTEGER NOT NULL,
              key_id TEXT NOT NULL,
              value TEXT NOT NULL,
              created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
              updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (device_id, key_id),
              FOREIGN KEY (device_id) REFERENCES {devices}(id) ON DELETE CASCADE
            )
            """
        )
        stmts.append(f"CREATE INDEX IF NOT EXISTS idx_{table}_device ON {table} (device_id)")
    return stmts


class SchemaManager:
    """
    Creates the tables a storage strategy needs. Every statement is
    create-if-absent; nothing here drops, truncates or alters existing data.
    """

    def statements(self, config: StoreConfig, strategy: Optional[str] = None) -> List[str]:
        strategy = strategy or config.strategy
        if strategy == STRATEGY_LEGACY:
            return legacy_ddl(config.legacy_table)
        if strategy == STRATEGY_NORMALIZED:
            return normalized_ddl(config)
        raise ValueError(f"unknown strategy: {strategy}")

    async def ensure(self, conn: aiosqlite.Connection, config: StoreConfig, strategy: Optional[str] = None) -> None:
        strategy = strategy or config.strategy
        for stmt in self.statements(config, strategy):
            await conn.execute(stmt)
        await conn.commit()
        log.debug(f"schema ready strategy={strategy} prefix={config.table_prefix}")


async def table_exists(conn: aiosqlite.Connection, name: str) -> bool:
    async with conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,)
    ) as cur:
        return await cur.fetchone() is not None
