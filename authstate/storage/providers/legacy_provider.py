from __future__ import annotations
from typing import Any, Dict, List, Optional

from ...config import StoreConfig
from ...constants import CREDS_ID, MAX_IN_CLAUSE
from ...exceptions import SerializationError
from ...utils import chunked
from ..classify import classify, legacy_identifier, more_specific_prefixes
from ..codec import decode_creds, encode_creds
from ..connection import ConnectionRegistry, Database
from ..models import AuthenticationCreds, KeyCategory
from ..provider import BaseKeyStore


def prefix_filter(category: KeyCategory, column: str = "id"):
    """
    SQL condition selecting identifiers of `category` and none of the more
    specific sibling categories. Returns (sql, params).

    substr() is used instead of LIKE: LIKE is case-insensitive in SQLite and
    treats "_" as a wildcard.
    """
    prefix = category.prefix
    clauses = [f"substr({column}, 1, ?) = ?", f"length({column}) > ?"]
    params: List[Any] = [len(prefix), prefix, len(prefix)]
    for narrower in more_specific_prefixes(category):
        clauses.append(f"substr({column}, 1, ?) <> ?")
        params += [len(narrower), narrower]
    return " AND ".join(clauses), params


class LegacyKeyStore(BaseKeyStore):
    """
    Single-table layout: rows of (session, id, value) where id is
    "<category>-<key id>" for key material and "creds" for the credential.
    """

    def __init__(self, config: StoreConfig, registry: Optional[ConnectionRegistry] = None,
                 cache=None, db: Optional[Database] = None, logger=None):
        super().__init__(config.session, cache=cache, logger=logger)
        self.config = config
        self.db = db if db is not None else Database(config, registry)
        self.table = config.legacy_table

    async def _fetch(self, category: KeyCategory, ids: List[str]) -> Dict[str, Any]:
        full = {legacy_identifier(category, k): k for k in ids}
        rows: Dict[str, Any] = {}
        if self.config.batch_reads:
            for chunk in chunked(full, MAX_IN_CLAUSE):
                marks = ",".join("?" * len(chunk))
                found = await self.db.fetchall(
                    f"SELECT id, value FROM {self.table} WHERE session = ? AND id IN ({marks})",
                    (self.session, *chunk),
                )
                for legacy_id, value in found:
                    rows[full[legacy_id]] = value
        else:
            for legacy_id, key_id in full.items():
                row = await self.db.fetchone(
                    f"SELECT value FROM {self.table} WHERE session = ? AND id = ?", (self.session, legacy_id)
                )
                if row is not None:
                    rows[key_id] = row[0]
        return rows

    async def _upsert(self, category: KeyCategory, key_id: str, stored: str) -> None:
        await self.db.execute(
            f"INSERT INTO {self.table} (session, id, value) VALUES (?, ?, ?) "
            "ON CONFLICT(session, id) DO UPDATE SET value = excluded.value",
            (self.session, legacy_identifier(category, key_id), stored),
        )

    async def _delete(self, category: KeyCategory, ids: List[str]) -> int:
        count = 0
        for chunk in chunked([legacy_identifier(category, k) for k in ids], MAX_IN_CLAUSE):
            marks = ",".join("?" * len(chunk))
            count += await self.db.execute(
                f"DELETE FROM {self.table} WHERE session = ? AND id IN ({marks})", (self.session, *chunk)
            )
        return count

    async def _purge(self, category: KeyCategory) -> int:
        cond, params = prefix_filter(category)
        return await self.db.execute(
            f"DELETE FROM {self.table} WHERE session = ? AND {cond}", (self.session, *params)
        )

    async def _clear(self) -> None:
        await self.db.execute(f"DELETE FROM {self.table} WHERE session = ? AND id <> ?", (self.session, CREDS_ID))

    async def _remove_all(self) -> None:
        await self.db.execute(f"DELETE FROM {self.table} WHERE session = ?", (self.session,))

    async def _load_creds(self) -> Optional[AuthenticationCreds]:
        row = await self.db.fetchone(
            f"SELECT value FROM {self.table} WHERE session = ? AND id = ?", (self.session, CREDS_ID)
        )
        if row is None or row[0] is None:
            return None
        try:
            return decode_creds(row[0])
        except SerializationError as exc:
            self.log.error(f"stored credentials for session={self.session} are unreadable: {exc}")
            return None

    async def _store_creds(self, creds: AuthenticationCreds) -> None:
        await self.db.execute(
            f"INSERT INTO {self.table} (session, id, value) VALUES (?, ?, ?) "
            "ON CONFLICT(session, id) DO UPDATE SET value = excluded.value",
            (self.session, CREDS_ID, encode_creds(creds)),
        )

    async def _counts(self) -> Dict[str, int]:
        rows = await self.db.fetchall(f"SELECT id FROM {self.table} WHERE session = ?", (self.session,))
        counts = {"devices": 0}
        counts.update({c.value: 0 for c in KeyCategory})
        for (legacy_id,) in rows:
            if legacy_id == CREDS_ID:
                counts["devices"] = 1
                continue
            category = classify(legacy_id)
            if category is not None:
                counts[category.value] += 1
        return counts

    async def close(self) -> None:
        await self.db.close()
