# authstate/storage/state.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict

from .models import AuthenticationCreds, KeyCategory
from .provider import KeyStoreProvider


@dataclass
class AuthState:
    """
    What a chat client holds for one session: the credential it mutates in
    place and the key store behind its get/set calls.
    """
    creds: AuthenticationCreds
    keys: KeyStoreProvider

    async def save_creds(self) -> None:
        await self.keys.write_creds(self.creds)

    async def clear(self) -> None:
        await self.keys.clear_session()

    async def remove_creds(self) -> None:
        await self.keys.remove_session()

    async def clear_sender_key_memory(self) -> int:
        return await self.keys.purge_category(KeyCategory.SENDER_KEY_MEMORY)

    async def get_stats(self) -> Dict[str, int]:
        return await self.keys.stats()

    async def close(self) -> None:
        await self.keys.close()
