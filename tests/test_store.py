import asyncio
import logging
from dataclasses import replace

import pytest

from authstate.exceptions import SerializationError
from authstate.storage import AuthState, load_auth_state, open_key_store
from authstate.storage.cache import TTLCache
from authstate.storage.connection import ConnectionRegistry
from authstate.storage.models import AppStateSyncKeyData, Fingerprint, KeyCategory
from authstate.storage.providers.legacy_provider import LegacyKeyStore
from authstate.storage.providers.sqlite_provider import SQLiteKeyStore


def run_with_store(config, scenario, **kwargs):
    async def main():
        registry = ConnectionRegistry()
        store = SQLiteKeyStore(config, registry=registry, **kwargs)
        try:
            await scenario(store)
        finally:
            await registry.close_all()
    asyncio.run(main())


def test_pre_key_absent_ids_are_omitted(config):
    async def scenario(store):
        await store.set({"pre-key": {"3": bytes([1, 2, 3, 4, 5])}})
        assert await store.get("pre-key", ["3", "4"]) == {"3": bytes([1, 2, 3, 4, 5])}

    run_with_store(config, scenario)


def test_roundtrip_every_category(config):
    values = {
        KeyCategory.PRE_KEY: {"1": {"public": b"p" * 32, "private": b"s" * 32}},
        KeyCategory.SESSION: {"123@s.whatsapp.net.0": b"\x00ratchet\xff"},
        KeyCategory.SENDER_KEY: {"group@g.us--123--0": b"sender-state"},
        KeyCategory.SENDER_KEY_MEMORY: {"group@g.us": {"123@s.whatsapp.net": True}},
        KeyCategory.APP_STATE_SYNC_KEY: {
            "AAAAAQ==": AppStateSyncKeyData(b"key", Fingerprint(1, 0, [0, 2]), 1700000000),
        },
        KeyCategory.APP_STATE_SYNC_VERSION: {"regular_high": {"version": 4, "hash": b"\x01" * 128}},
    }

    async def scenario(store):
        await store.set(values)
        for category, entries in values.items():
            assert await store.get(category, list(entries)) == entries

    run_with_store(config, scenario)


def test_empty_values_delete(config):
    async def scenario(store):
        await store.set({"session": {"a": b"1", "b": b"2", "c": b"3"}})
        await store.set({"session": {"a": None, "b": b""}})
        assert await store.get("session", ["a", "b", "c"]) == {"c": b"3"}
        await store.remove(KeyCategory.SESSION, "c")
        assert await store.get("session", ["c"]) == {}

    run_with_store(config, scenario)


def test_upsert_is_idempotent_and_overwrites(config):
    async def scenario(store):
        await store.set({"sender-key": {"g": b"v1"}})
        await store.set({"sender-key": {"g": b"v1"}})
        assert (await store.stats())["sender-key"] == 1
        await store.set({"sender-key": {"g": b"v2"}})
        assert await store.get("sender-key", ["g"]) == {"g": b"v2"}
        assert (await store.stats())["sender-key"] == 1

    run_with_store(config, scenario)


def test_bad_value_fails_before_any_write(config):
    async def scenario(store):
        with pytest.raises(SerializationError):
            await store.set({"pre-key": {"1": b"ok"}, "session": {"a": {"not": "bytes"}}})
        assert await store.get("pre-key", ["1"]) == {}
        with pytest.raises(ValueError):
            await store.set({"identity-key": {"1": b"x"}})

    run_with_store(config, scenario)


def test_purge_sender_key_memory(config):
    async def scenario(store):
        ids = [f"group{i}@g.us" for i in range(10)]
        await store.set({
            "sender-key-memory": {i: {"peer": True} for i in ids},
            "sender-key": {"group0@g.us": b"keep"},
        })
        assert await store.purge_category(KeyCategory.SENDER_KEY_MEMORY) == 10
        assert await store.get("sender-key-memory", ids) == {}
        assert await store.get("sender-key", ["group0@g.us"]) == {"group0@g.us": b"keep"}
        assert await store.purge_category("sender-key-memory") == 0

    run_with_store(config, scenario)


def test_clear_session_keeps_creds(config, creds):
    async def scenario(store):
        await store.write_creds(creds)
        await store.set({"session": {"a": b"1"}, "pre-key": {"1": b"k"}})
        await store.clear_session()
        assert await store.read_creds() == creds
        assert await store.get("session", ["a"]) == {}
        assert await store.get("pre-key", ["1"]) == {}

    run_with_store(config, scenario)


def test_remove_session_drops_everything(config, creds):
    async def scenario(store):
        await store.write_creds(creds)
        await store.set({"session": {"a": b"1"}})
        await store.remove_session()
        assert await store.read_creds() is None
        assert await store.get("session", ["a"]) == {}
        assert (await store.stats())["devices"] == 0

    run_with_store(config, scenario)


def test_sessions_are_isolated(config):
    async def main():
        registry = ConnectionRegistry()
        one = SQLiteKeyStore(config.with_session("one"), registry=registry)
        two = SQLiteKeyStore(config.with_session("two"), registry=registry)
        try:
            await one.set({"session": {"a": b"from-one"}})
            assert await two.get("session", ["a"]) == {}
            await two.remove_session()
            assert await one.get("session", ["a"]) == {"a": b"from-one"}
        finally:
            await registry.close_all()

    asyncio.run(main())


def test_creds_roundtrip_across_stores(config, creds):
    async def main():
        registry = ConnectionRegistry()
        try:
            writer = SQLiteKeyStore(config, registry=registry)
            assert await writer.read_creds() is None
            await writer.write_creds(creds)
            reader = SQLiteKeyStore(config, registry=registry)
            assert await reader.read_creds() == creds
            record = await reader.device_record()
            assert record.session == "default"
            assert record.creds == creds
        finally:
            await registry.close_all()

    asyncio.run(main())


def test_keys_before_creds_use_placeholder_device(config, creds):
    async def scenario(store):
        await store.set({"pre-key": {"1": b"k"}})
        assert await store.read_creds() is None
        await store.write_creds(creds)
        assert await store.read_creds() == creds
        assert await store.get("pre-key", ["1"]) == {"1": b"k"}

    run_with_store(config, scenario)


def test_corrupt_row_reads_absent_and_is_purged(config, caplog):
    async def scenario(store):
        await store.set({"session": {"good": b"ok"}})
        pk = await store.device_pk()
        await store.db.execute(
            "INSERT INTO auth_sessions (device_id, key_id, value) VALUES (?, ?, ?)", (pk, "bad", "5")
        )
        with caplog.at_level(logging.WARNING):
            assert await store.get("session", ["good", "bad"]) == {"good": b"ok"}
        assert "purging undecodable session entry id=bad" in caplog.text
        row = await store.db.fetchone("SELECT COUNT(*) FROM auth_sessions WHERE key_id = ?", ("bad",))
        assert row == (0,)

    run_with_store(config, scenario)


def test_cache_serves_repeat_reads_and_is_invalidated_by_writes(config):
    cache = TTLCache(ttl=60, maxsize=100)

    async def scenario(store):
        await store.set({"session": {"a": b"v1"}})
        assert await store.get("session", ["a"]) == {"a": b"v1"}
        assert await store.get("session", ["a"]) == {"a": b"v1"}
        assert cache.hits == 1
        await store.set({"session": {"a": b"v2"}})
        assert await store.get("session", ["a"]) == {"a": b"v2"}
        await store.set({"session": {"a": None}})
        assert await store.get("session", ["a"]) == {}

    run_with_store(config, scenario, cache=cache)


def test_cache_keys_are_scoped_by_session(config):
    cache = TTLCache(ttl=60, maxsize=100)

    async def main():
        registry = ConnectionRegistry()
        one = SQLiteKeyStore(config.with_session("one"), registry=registry, cache=cache)
        two = SQLiteKeyStore(config.with_session("two"), registry=registry, cache=cache)
        try:
            await one.set({"session": {"a": b"one"}})
            await two.set({"session": {"a": b"two"}})
            assert await one.get("session", ["a"]) == {"a": b"one"}
            assert await two.get("session", ["a"]) == {"a": b"two"}
            await one.clear_session()
            assert await two.get("session", ["a"]) == {"a": b"two"}
        finally:
            await registry.close_all()

    asyncio.run(main())


def test_reads_cross_the_in_clause_limit(config):
    ids = [str(i) for i in range(520)]

    async def scenario(store):
        pk = await store.device_pk(create=True)
        await store.db.executemany(
            "INSERT INTO auth_pre_keys (device_id, key_id, value) VALUES (?, ?, ?)",
            [(pk, i, '{"type":"Buffer","data":"AQ=="}') for i in ids],
        )
        found = await store.get("pre-key", ids)
        assert len(found) == 520
        assert found["519"] == b"\x01"

    run_with_store(config, scenario)


def test_per_id_reads_match_batched_reads(config):
    async def scenario(store):
        await store.set({"session": {"a": b"1", "b": b"2"}})
        assert await store.get("session", ["a", "b", "missing"]) == {"a": b"1", "b": b"2"}

    run_with_store(replace(config, batch_reads=False), scenario)


def test_legacy_fallback_is_opt_in(config):
    legacy_cfg = replace(config, strategy="legacy")

    async def main():
        legacy_registry = ConnectionRegistry()
        legacy = LegacyKeyStore(legacy_cfg, registry=legacy_registry)
        try:
            await legacy.set({"session": {"abc": b"old"}})
        finally:
            await legacy_registry.close_all()

        registry = ConnectionRegistry()
        try:
            plain = SQLiteKeyStore(config, registry=registry)
            assert await plain.get("session", ["abc"]) == {}
            fallback = SQLiteKeyStore(replace(config, legacy_fallback=True), registry=registry)
            assert await fallback.get("session", ["abc"]) == {"abc": b"old"}
            await fallback.set({"session": {"abc": b"new"}})
            assert await fallback.get("session", ["abc"]) == {"abc": b"new"}
        finally:
            await registry.close_all()

    asyncio.run(main())


async def seed_legacy_rows(config, keys, creds=None):
    registry = ConnectionRegistry()
    legacy = LegacyKeyStore(replace(config, strategy="legacy"), registry=registry)
    try:
        if creds is not None:
            await legacy.write_creds(creds)
        await legacy.set(keys)
    finally:
        await registry.close_all()


async def legacy_rows(config):
    registry = ConnectionRegistry()
    legacy = LegacyKeyStore(replace(config, strategy="legacy"), registry=registry)
    try:
        rows = await legacy.db.fetchall("SELECT id FROM auth WHERE session = ? ORDER BY id", (config.session,))
        return [r[0] for r in rows]
    finally:
        await registry.close_all()


def test_fallback_deletes_reach_legacy_rows(config):
    async def main():
        await seed_legacy_rows(config, {"session": {"abc": b"1", "def": b"2"}})
        registry = ConnectionRegistry()
        try:
            store = SQLiteKeyStore(replace(config, legacy_fallback=True), registry=registry)
            await store.set({"session": {"abc": None}})
            assert await store.get("session", ["abc", "def"]) == {"def": b"2"}
            await store.remove("session", "def")
            assert await store.get("session", ["abc", "def"]) == {}
        finally:
            await registry.close_all()
        assert await legacy_rows(config) == []

    asyncio.run(main())


def test_fallback_purge_reaches_legacy_rows(config):
    async def main():
        await seed_legacy_rows(config, {
            "sender-key-memory": {"g1": {"p": True}, "g2": {"p": True}, "g3": {"p": True}},
            "sender-key": {"g1": b"state"},
        })
        registry = ConnectionRegistry()
        try:
            store = SQLiteKeyStore(replace(config, legacy_fallback=True), registry=registry)
            assert await store.purge_category("sender-key-memory") == 3
            assert await store.get("sender-key-memory", ["g1", "g2", "g3"]) == {}
            assert await store.get("sender-key", ["g1"]) == {"g1": b"state"}
        finally:
            await registry.close_all()
        assert await legacy_rows(config) == ["sender-key-g1"]

    asyncio.run(main())


def test_fallback_clear_and_remove_reach_legacy_rows(config, creds):
    async def main():
        await seed_legacy_rows(config, {"pre-key": {"1": b"k"}, "session": {"a": b"1"}}, creds=creds)
        registry = ConnectionRegistry()
        try:
            store = SQLiteKeyStore(replace(config, legacy_fallback=True), registry=registry)
            await store.set({"session": {"b": b"2"}})
            await store.clear_session()
            assert await store.get("session", ["a", "b"]) == {}
            assert await store.get("pre-key", ["1"]) == {}
            assert await legacy_rows(config) == ["creds"]
            await store.remove_session()
        finally:
            await registry.close_all()
        assert await legacy_rows(config) == []

    asyncio.run(main())


def test_fallback_without_legacy_table_deletes_normally(config):
    async def scenario(store):
        await store.set({"session": {"a": b"1"}})
        await store.remove("session", "a")
        assert await store.get("session", ["a"]) == {}
        assert await store.purge_category("session") == 0

    run_with_store(replace(config, legacy_fallback=True), scenario)


def test_open_key_store_picks_strategy(config):
    assert isinstance(open_key_store(config), SQLiteKeyStore)
    assert isinstance(open_key_store(replace(config, strategy="legacy")), LegacyKeyStore)


def test_load_auth_state_generates_then_persists(config):
    async def main():
        registry = ConnectionRegistry()
        try:
            state = await load_auth_state(config, registry=registry)
            assert isinstance(state, AuthState)
            assert state.creds.registered is False
            state.creds.next_pre_key_id = 31
            await state.save_creds()
            await state.keys.set({"sender-key-memory": {"g1": {"p": True}, "g2": {"p": True}}})

            again = await load_auth_state(config, registry=registry)
            assert again.creds == state.creds
            assert again.creds.next_pre_key_id == 31
            stats = await again.get_stats()
            assert stats["devices"] == 1
            assert stats["sender-key-memory"] == 2
            assert await again.clear_sender_key_memory() == 2

            await again.clear()
            assert (await load_auth_state(config, registry=registry)).creds == state.creds
            await again.remove_creds()
            assert await again.keys.read_creds() is None
        finally:
            await registry.close_all()

    asyncio.run(main())
