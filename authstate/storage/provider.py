# authstate/storage/provider.py
from __future__ import annotations
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import asyncio, logging

from ..logger import child_logger
from .cache import NullCache
from .codec import decode_entry, encode_entry
from .models import AuthenticationCreds, KeyCategory

CREDS_CACHE_CATEGORY = "creds"
_MISS = object()

KeyData = Mapping["KeyCategory | str", Mapping[str, Any]]


def is_absent(value: Any) -> bool:
    """Empty values are deletions, never stored rows."""
    if value is None:
        return True
    if isinstance(value, (bytes, bytearray, memoryview, str, dict, list, tuple)):
        return len(value) == 0
    return False


def detached(value: Any) -> Any:
    """Shallow copy of container values, so a caller's edits never reach the cache."""
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        return list(value)
    return value


class KeyStoreProvider:
    # Interface
    async def get(self, category: KeyCategory | str, ids: Iterable[str]) -> Dict[str, Any]: ...
    async def set(self, data: KeyData) -> None: ...
    async def remove(self, category: KeyCategory | str, key_id: str) -> None: ...
    async def clear_session(self) -> None: ...
    async def remove_session(self) -> None: ...
    async def purge_category(self, category: KeyCategory | str) -> int: ...
    async def read_creds(self) -> Optional[AuthenticationCreds]: ...
    async def write_creds(self, creds: AuthenticationCreds) -> None: ...
    async def stats(self) -> Dict[str, int]: ...
    async def close(self) -> None: ...


class BaseKeyStore(KeyStoreProvider):
    """
    Category-aware read/write surface shared by every backend.

    Subclasses supply row-level primitives (_fetch, _upsert, _delete, ...)
    working on encoded text. This class owns decoding, the cache, and the
    rule that corrupt rows read back as absent and are purged.
    """

    def __init__(self, session: str, cache=None, logger: Optional[logging.Logger] = None):
        self.session = session
        self.cache = cache if cache is not None else NullCache()
        self.log = logger or child_logger("storage")

    # --------- row primitives (backend specific) ----------
    async def _fetch(self, category: KeyCategory, ids: List[str]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _upsert(self, category: KeyCategory, key_id: str, stored: str) -> None:
        raise NotImplementedError

    async def _delete(self, category: KeyCategory, ids: List[str]) -> int:
        raise NotImplementedError

    async def _purge(self, category: KeyCategory) -> int:
        raise NotImplementedError

    async def _clear(self) -> None:
        raise NotImplementedError

    async def _remove_all(self) -> None:
        raise NotImplementedError

    async def _load_creds(self) -> Optional[AuthenticationCreds]:
        raise NotImplementedError

    async def _store_creds(self, creds: AuthenticationCreds) -> None:
        raise NotImplementedError

    async def _counts(self) -> Dict[str, int]:
        raise NotImplementedError

    # --------- cache keys ----------
    def _ck(self, category: KeyCategory, key_id: str) -> Tuple[str, str, str]:
        return (self.session, category.value, key_id)

    def _creds_ck(self) -> Tuple[str, str, str]:
        return (self.session, CREDS_CACHE_CATEGORY, "")

    # --------- public surface ----------
    async def get(self, category: KeyCategory | str, ids: Iterable[str]) -> Dict[str, Any]:
        category = KeyCategory.parse(category)
        wanted = list(dict.fromkeys(str(i) for i in ids))
        found: Dict[str, Any] = {}
        missing: List[str] = []
        for key_id in wanted:
            hit = self.cache.get(self._ck(category, key_id), _MISS)
            if hit is _MISS:
                missing.append(key_id)
            else:
                found[key_id] = detached(hit)
        if not missing:
            return found

        rows = await self._fetch(category, missing)
        corrupt: List[str] = []
        for key_id, stored in rows.items():
            result = decode_entry(category, stored)
            if result.ok:
                found[key_id] = detached(result.value)
                self.cache.set(self._ck(category, key_id), result.value)
            else:
                corrupt.append(key_id)
                self.log.warning(f"purging undecodable {category.value} entry id={key_id}: {result.error}")
        if corrupt:
            await self._delete(category, corrupt)
        return found

    async def set(self, data: KeyData) -> None:
        writes: List[Tuple[KeyCategory, str, str]] = []
        deletes: Dict[KeyCategory, List[str]] = {}
        # encode everything up front so a bad value fails before any I/O
        for raw_category, entries in data.items():
            category = KeyCategory.parse(raw_category)
            for key_id, value in entries.items():
                key_id = str(key_id)
                if is_absent(value):
                    deletes.setdefault(category, []).append(key_id)
                else:
                    writes.append((category, key_id, encode_entry(category, value)))

        for category, key_id, _ in writes:
            self.cache.invalidate(self._ck(category, key_id))
        for category, ids in deletes.items():
            for key_id in ids:
                self.cache.invalidate(self._ck(category, key_id))

        ops = [self._upsert(c, k, s) for c, k, s in writes]
        ops += [self._delete(c, [k]) for c, ids in deletes.items() for k in ids]
        await asyncio.gather(*ops)

        # a concurrent get() may have cached the pre-write value meanwhile
        for category, key_id, _ in writes:
            self.cache.invalidate(self._ck(category, key_id))

    async def remove(self, category: KeyCategory | str, key_id: str) -> None:
        category = KeyCategory.parse(category)
        self.cache.invalidate(self._ck(category, str(key_id)))
        await self._delete(category, [str(key_id)])

    async def purge_category(self, category: KeyCategory | str) -> int:
        category = KeyCategory.parse(category)
        self.cache.invalidate_where(lambda k: k[0] == self.session and k[1] == category.value)
        count = await self._purge(category)
        self.log.info(f"purged {count} {category.value} entries session={self.session}")
        return count

    async def clear_session(self) -> None:
        self.cache.invalidate_where(lambda k: k[0] == self.session and k[1] != CREDS_CACHE_CATEGORY)
        await self._clear()

    async def remove_session(self) -> None:
        self.cache.invalidate_where(lambda k: k[0] == self.session)
        await self._remove_all()

    async def read_creds(self) -> Optional[AuthenticationCreds]:
        cached = self.cache.get(self._creds_ck(), _MISS)
        if cached is not _MISS:
            return cached
        creds = await self._load_creds()
        if creds is not None:
            self.cache.set(self._creds_ck(), creds)
        return creds

    async def write_creds(self, creds: AuthenticationCreds) -> None:
        self.cache.invalidate(self._creds_ck())
        await self._store_creds(creds)
        self.cache.set(self._creds_ck(), creds)

    async def stats(self) -> Dict[str, int]:
        return await self._counts()

    async def close(self) -> None:
        return
