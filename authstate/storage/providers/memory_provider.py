from __future__ import annotations
from typing import Any, Dict, List, Optional

from ..models import AuthenticationCreds, KeyCategory
from ..provider import BaseKeyStore


class InMemoryKeyStore(BaseKeyStore):
    """
    Process-local backend with the same contract as the SQL stores.
    Values are held in their encoded form so decoding behaves identically.
    """

    def __init__(self, session: str = "default", cache=None, logger=None):
        super().__init__(session, cache=cache, logger=logger)
        self.rows: Dict[KeyCategory, Dict[str, str]] = {c: {} for c in KeyCategory}
        self.creds: Optional[AuthenticationCreds] = None

    async def _fetch(self, category: KeyCategory, ids: List[str]) -> Dict[str, Any]:
        table = self.rows[category]
        return {k: table[k] for k in ids if k in table}

    async def _upsert(self, category: KeyCategory, key_id: str, stored: str) -> None:
        self.rows[category][key_id] = stored

    async def _delete(self, category: KeyCategory, ids: List[str]) -> int:
        table = self.rows[category]
        return sum(1 for k in ids if table.pop(k, None) is not None)

    async def _purge(self, category: KeyCategory) -> int:
        count = len(self.rows[category])
        self.rows[category].clear()
        return count

    async def _clear(self) -> None:
        for table in self.rows.values():
            table.clear()

    async def _remove_all(self) -> None:
        await self._clear()
        self.creds = None

    async def _load_creds(self) -> Optional[AuthenticationCreds]:
        return self.creds

    async def _store_creds(self, creds: AuthenticationCreds) -> None:
        self.creds = creds

    async def _counts(self) -> Dict[str, int]:
        counts = {"devices": 0 if self.creds is None else 1}
        counts.update({c.value: len(t) for c, t in self.rows.items()})
        return counts
