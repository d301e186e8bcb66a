from __future__ import annotations
from typing import Any, Dict, List, Optional
import asyncio

from ...config import StoreConfig
from ...constants import CREDS_ID, MAX_IN_CLAUSE
from ...exceptions import SerializationError
from ...utils import chunked
from ..classify import legacy_identifier
from ..codec import creds_from_data, decode, encode
from ..connection import ConnectionRegistry, Database
from ..models import AuthenticationCreds, DeviceRecord, KeyCategory
from ..provider import BaseKeyStore
from ..schema import devices_table, key_table
from .legacy_provider import prefix_filter

# credential fields that get their own column in the devices table
_CREDS_COLUMNS = (
    ("noise_key", "noiseKey"),
    ("pairing_ephemeral_key_pair", "pairingEphemeralKeyPair"),
    ("signed_identity_key", "signedIdentityKey"),
    ("signed_pre_key", "signedPreKey"),
)


class SQLiteKeyStore(BaseKeyStore):
    """
    Normalized layout: one device row per session plus one table per key
    category. Every key row references the device row and is removed with it.
    """

    def __init__(self, config: StoreConfig, registry: Optional[ConnectionRegistry] = None,
                 cache=None, db: Optional[Database] = None, logger=None):
        super().__init__(config.session, cache=cache, logger=logger)
        self.config = config
        self.db = db if db is not None else Database(config, registry)
        self.devices = devices_table(config)
        self._device_pk: Optional[int] = None
        self._legacy_present: Optional[bool] = None

    # --------- device row ----------
    async def device_pk(self, create: bool = False) -> Optional[int]:
        if self._device_pk is not None:
            return self._device_pk
        row = await self.db.fetchone(f"SELECT id FROM {self.devices} WHERE session = ?", (self.session,))
        if row is None and create:
            await self.db.execute(
                f"INSERT INTO {self.devices} (session) VALUES (?) ON CONFLICT(session) DO NOTHING",
                (self.session,),
            )
            row = await self.db.fetchone(f"SELECT id FROM {self.devices} WHERE session = ?", (self.session,))
        if row is not None:
            self._device_pk = int(row[0])
        return self._device_pk

    async def device_record(self) -> Optional[DeviceRecord]:
        row = await self.db.fetchone(
            f"SELECT id, session, created_at, updated_at FROM {self.devices} WHERE session = ?", (self.session,)
        )
        if row is None:
            return None
        return DeviceRecord(id=int(row[0]), session=row[1], creds=await self._load_creds(),
                            created_at=row[2], updated_at=row[3])

    # --------- row primitives ----------
    async def _fetch(self, category: KeyCategory, ids: List[str]) -> Dict[str, Any]:
        rows: Dict[str, Any] = {}
        pk = await self.device_pk()
        if pk is not None:
            table = key_table(self.config, category)
            if self.config.batch_reads:
                for chunk in chunked(ids, MAX_IN_CLAUSE):
                    marks = ",".join("?" * len(chunk))
                    found = await self.db.fetchall(
                        f"SELECT key_id, value FROM {table} WHERE device_id = ? AND key_id IN ({marks})",
                        (pk, *chunk),
                    )
                    rows.update({k: v for k, v in found})
            else:
                async def one(key_id):
                    return key_id, await self.db.fetchone(
                        f"SELECT value FROM {table} WHERE device_id = ? AND key_id = ?", (pk, key_id)
                    )
                for key_id, row in await asyncio.gather(*(one(k) for k in ids)):
                    if row is not None:
                        rows[key_id] = row[0]

        if self.config.legacy_fallback:
            missing = [k for k in ids if k not in rows]
            if missing:
                rows.update(await self._fetch_legacy(category, missing))
        return rows

    async def _legacy_readable(self) -> bool:
        # the legacy table only counts when fallback is on and it still exists
        if not self.config.legacy_fallback:
            return False
        if self._legacy_present is None:
            self._legacy_present = await self.db.table_exists(self.config.legacy_table)
        return self._legacy_present

    async def _fetch_legacy(self, category: KeyCategory, ids: List[str]) -> Dict[str, Any]:
        if not await self._legacy_readable():
            return {}
        full = {legacy_identifier(category, k): k for k in ids}
        rows: Dict[str, Any] = {}
        for chunk in chunked(full, MAX_IN_CLAUSE):
            marks = ",".join("?" * len(chunk))
            found = await self.db.fetchall(
                f"SELECT id, value FROM {self.config.legacy_table} WHERE session = ? AND id IN ({marks})",
                (self.session, *chunk),
            )
            for legacy_id, value in found:
                if value is not None:
                    rows[full[legacy_id]] = value
        if rows:
            self.log.info(f"served {len(rows)} {category.value} entries from legacy table {self.config.legacy_table}")
        return rows

    async def _upsert(self, category: KeyCategory, key_id: str, stored: str) -> None:
        pk = await self.device_pk(create=True)
        await self.db.execute(
            f"INSERT INTO {key_table(self.config, category)} (device_id, key_id, value) VALUES (?, ?, ?) "
            "ON CONFLICT(device_id, key_id) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP",
            (pk, key_id, stored),
        )

    async def _delete(self, category: KeyCategory, ids: List[str]) -> int:
        count = 0
        pk = await self.device_pk()
        if pk is not None:
            table = key_table(self.config, category)
            for chunk in chunked(ids, MAX_IN_CLAUSE):
                marks = ",".join("?" * len(chunk))
                count += await self.db.execute(
                    f"DELETE FROM {table} WHERE device_id = ? AND key_id IN ({marks})", (pk, *chunk)
                )
        if await self._legacy_readable():
            for chunk in chunked([legacy_identifier(category, k) for k in ids], MAX_IN_CLAUSE):
                marks = ",".join("?" * len(chunk))
                count += await self.db.execute(
                    f"DELETE FROM {self.config.legacy_table} WHERE session = ? AND id IN ({marks})",
                    (self.session, *chunk),
                )
        return count

    async def _purge(self, category: KeyCategory) -> int:
        count = 0
        pk = await self.device_pk()
        if pk is not None:
            count += await self.db.execute(f"DELETE FROM {key_table(self.config, category)} WHERE device_id = ?", (pk,))
        if await self._legacy_readable():
            cond, params = prefix_filter(category)
            count += await self.db.execute(
                f"DELETE FROM {self.config.legacy_table} WHERE session = ? AND {cond}", (self.session, *params)
            )
        return count

    async def _clear(self) -> None:
        pk = await self.device_pk()
        if pk is not None:
            await asyncio.gather(*(
                self.db.execute(f"DELETE FROM {key_table(self.config, c)} WHERE device_id = ?", (pk,))
                for c in KeyCategory
            ))
        if await self._legacy_readable():
            await self.db.execute(
                f"DELETE FROM {self.config.legacy_table} WHERE session = ? AND id <> ?", (self.session, CREDS_ID)
            )

    async def _remove_all(self) -> None:
        # key rows go with the device row (ON DELETE CASCADE)
        await self.db.execute(f"DELETE FROM {self.devices} WHERE session = ?", (self.session,))
        self._device_pk = None
        if await self._legacy_readable():
            await self.db.execute(f"DELETE FROM {self.config.legacy_table} WHERE session = ?", (self.session,))

    # --------- credentials ----------
    async def _load_creds(self) -> Optional[AuthenticationCreds]:
        row = await self.db.fetchone(
            f"SELECT registration_id, noise_key, pairing_ephemeral_key_pair, signed_identity_key, "
            f"signed_pre_key, adv_secret_key, account_data, id FROM {self.devices} WHERE session = ?",
            (self.session,),
        )
        if row is None:
            return None
        registration_id, noise, pairing, identity, signed_pre, adv_secret, account_data, pk = row
        self._device_pk = int(pk)
        if noise is None:
            # placeholder row created by a key write before the first save_creds()
            return None
        try:
            data: Dict[str, Any] = decode(account_data) if account_data else {}
            if not isinstance(data, dict):
                raise SerializationError("account_data is not an object")
            for (_, wire), raw in zip(_CREDS_COLUMNS, (noise, pairing, identity, signed_pre)):
                data[wire] = decode(raw)
            data["registrationId"] = registration_id
            data["advSecretKey"] = adv_secret
            return creds_from_data(data)
        except SerializationError as exc:
            self.log.error(f"stored credentials for session={self.session} are unreadable: {exc}")
            return None

    async def _store_creds(self, creds: AuthenticationCreds) -> None:
        data = creds.to_dict()
        columns = [encode(data.pop(wire)) for _, wire in _CREDS_COLUMNS]
        registration_id = data.pop("registrationId")
        adv_secret = data.pop("advSecretKey")
        await self.db.execute(
            f"INSERT INTO {self.devices} (session, device_id, registration_id, noise_key, "
            "pairing_ephemeral_key_pair, signed_identity_key, signed_pre_key, adv_secret_key, account_data) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(session) DO UPDATE SET device_id = excluded.device_id, "
            "registration_id = excluded.registration_id, noise_key = excluded.noise_key, "
            "pairing_ephemeral_key_pair = excluded.pairing_ephemeral_key_pair, "
            "signed_identity_key = excluded.signed_identity_key, signed_pre_key = excluded.signed_pre_key, "
            "adv_secret_key = excluded.adv_secret_key, account_data = excluded.account_data, "
            "updated_at = CURRENT_TIMESTAMP",
            (self.session, creds.device_id or "default", registration_id, *columns, adv_secret, encode(data)),
        )

    async def _counts(self) -> Dict[str, int]:
        pk = await self.device_pk()
        counts = {"devices": 0 if pk is None else 1}
        for category in KeyCategory:
            if pk is None:
                counts[category.value] = 0
                continue
            row = await self.db.fetchone(
                f"SELECT COUNT(*) FROM {key_table(self.config, category)} WHERE device_id = ?", (pk,)
            )
            counts[category.value] = int(row[0]) if row else 0
        return counts

    async def close(self) -> None:
        await self.db.close()
