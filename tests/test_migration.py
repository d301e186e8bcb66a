import asyncio
from dataclasses import replace

import pytest

from authstate.exceptions import MigrationError, StoreUnavailable
from authstate.migration import (
    ALREADY_MIGRATED, DRY_RUN, FAILED, MIGRATED, MigrationEngine, check_migration_needed, migrate,
)
from authstate.storage.connection import ConnectionRegistry, Database
from authstate.storage.providers.legacy_provider import LegacyKeyStore
from authstate.storage.providers.sqlite_provider import SQLiteKeyStore


async def seed_legacy(config, session, creds, keys, raw_rows=()):
    cfg = replace(config, strategy="legacy", session=session)
    registry = ConnectionRegistry()
    store = LegacyKeyStore(cfg, registry=registry)
    try:
        if creds is not None:
            await store.write_creds(creds)
        await store.set(keys)
        for legacy_id, value in raw_rows:
            await store.db.execute(
                "INSERT INTO auth (session, id, value) VALUES (?, ?, ?)", (session, legacy_id, value)
            )
    finally:
        await registry.close_all()


async def count(config, table):
    db = Database(config, ConnectionRegistry())
    try:
        return (await db.fetchone(f"SELECT COUNT(*) FROM {table}"))[0]
    finally:
        await db.close()


def test_overlapping_prefixes_migrate_without_cross_classification(config, creds):
    async def main():
        await seed_legacy(config, "s1", creds, {
            "session": {"abc": b"ratchet"},
            "sender-key-memory": {"abc": {"peer": True}},
            "sender-key": {"abc": b"group-state"},
        })
        report = await migrate(config)
        assert report.ok
        result = report.sessions["s1"]
        assert result.status == MIGRATED
        assert result.counts["session"] == 1
        assert result.counts["sender-key"] == 1
        assert result.counts["sender-key-memory"] == 1
        assert result.unclassified == []

        assert await count(config, "auth_sessions") == 1
        assert await count(config, "auth_sender_keys") == 1
        assert await count(config, "auth_sender_key_memory") == 1

        registry = ConnectionRegistry()
        store = SQLiteKeyStore(config.with_session("s1"), registry=registry)
        try:
            assert await store.read_creds() == creds
            assert await store.get("session", ["abc"]) == {"abc": b"ratchet"}
            assert await store.get("sender-key", ["abc"]) == {"abc": b"group-state"}
            assert await store.get("sender-key-memory", ["abc"]) == {"abc": {"peer": True}}
        finally:
            await registry.close_all()

    asyncio.run(main())


def test_dry_run_writes_nothing(config, creds):
    async def main():
        await seed_legacy(config, "s1", creds, {"pre-key": {"1": b"k", "2": b"k"}})
        report = await migrate(config, dry_run=True)
        assert report.dry_run
        assert report.sessions["s1"].status == DRY_RUN
        assert report.totals()["pre-key"] == 2
        assert await count(config, "auth_devices") == 0
        assert await count(config, "auth_pre_keys") == 0
        assert await count(config, "auth") == 3

    asyncio.run(main())


def test_rerun_is_skipped_unless_forced(config, creds):
    async def main():
        await seed_legacy(config, "s1", creds, {"session": {"a": b"1", "b": b"2"}})
        assert (await migrate(config)).sessions["s1"].status == MIGRATED
        assert (await migrate(config)).sessions["s1"].status == ALREADY_MIGRATED

        forced = await migrate(config, force=True)
        assert forced.sessions["s1"].status == MIGRATED
        assert forced.sessions["s1"].counts["session"] == 2
        assert await count(config, "auth_sessions") == 2
        assert await count(config, "auth_devices") == 1

    asyncio.run(main())


def test_interrupted_migration_resumes_without_force(config, creds, monkeypatch):
    async def main():
        await seed_legacy(config, "s1", creds, {"session": {"a": b"1", "b": b"2"}})
        copy_rows = Database.executemany

        async def unavailable(self, sql, rows):
            raise StoreUnavailable("store unavailable after 1 attempts", attempts=1)

        monkeypatch.setattr(Database, "executemany", unavailable)
        first = await migrate(config)
        assert first.sessions["s1"].status == FAILED
        assert await count(config, "auth_sessions") == 0

        registry = ConnectionRegistry()
        try:
            store = SQLiteKeyStore(config.with_session("s1"), registry=registry)
            assert await store.read_creds() is None
        finally:
            await registry.close_all()

        monkeypatch.setattr(Database, "executemany", copy_rows)
        second = await migrate(config)
        assert second.sessions["s1"].status == MIGRATED
        assert await count(config, "auth_sessions") == 2
        assert await count(config, "auth_devices") == 1

        registry = ConnectionRegistry()
        try:
            store = SQLiteKeyStore(config.with_session("s1"), registry=registry)
            assert await store.read_creds() == creds
            assert await store.get("session", ["a", "b"]) == {"a": b"1", "b": b"2"}
        finally:
            await registry.close_all()

    asyncio.run(main())


def test_engine_keeps_the_registry_it_is_given(config):
    registry = ConnectionRegistry()
    engine = MigrationEngine(config, registry)
    assert engine.registry is registry
    assert engine.db.registry is registry


def test_bad_rows_are_skipped_and_unknown_rows_reported(config, creds):
    async def main():
        await seed_legacy(
            config, "s1", creds, {"session": {"good": b"ok"}},
            raw_rows=[("session-bad", "5"), ("mystery-1", '"x"'), ("pre-key-", '"y"')],
        )
        report = await migrate(config)
        result = report.sessions["s1"]
        assert result.status == MIGRATED
        assert result.counts["session"] == 1
        assert len(result.skipped) == 1
        assert result.skipped[0].startswith("session-bad:")
        assert result.unclassified == ["mystery-1", "pre-key-"]
        assert await count(config, "auth") == 5

    asyncio.run(main())


def test_session_without_creds_fails_alone(config, creds):
    async def main():
        await seed_legacy(config, "broken", None, {"session": {"a": b"1"}})
        await seed_legacy(config, "fine", creds, {"session": {"a": b"1"}})
        report = await migrate(config)
        assert not report.ok
        assert report.sessions["broken"].status == FAILED
        assert "no credential row" in report.sessions["broken"].error
        assert report.sessions["fine"].status == MIGRATED
        assert report.to_dict()["sessions"]["broken"]["status"] == FAILED

    asyncio.run(main())


def test_single_session_migration(config, creds):
    async def main():
        await seed_legacy(config, "one", creds, {"session": {"a": b"1"}})
        await seed_legacy(config, "two", creds, {"session": {"a": b"2"}})
        report = await migrate(config, session="two")
        assert list(report.sessions) == ["two"]
        assert await count(config, "auth_devices") == 1

    asyncio.run(main())


def test_archive_after_full_run(config, creds):
    async def main():
        await seed_legacy(config, "s1", creds, {"pre-key": {"1": b"k"}})
        report = await migrate(config, archive_legacy=True)
        assert report.archived_as.startswith("auth_migrated_")
        db = Database(config, ConnectionRegistry())
        try:
            assert not await db.table_exists("auth")
            assert await db.table_exists(report.archived_as)
        finally:
            await db.close()

    asyncio.run(main())


def test_archive_skipped_when_a_session_fails(config, creds):
    async def main():
        await seed_legacy(config, "broken", None, {"session": {"a": b"1"}})
        await seed_legacy(config, "fine", creds, {"session": {"a": b"1"}})
        report = await migrate(config, archive_legacy=True)
        assert report.archived_as is None
        assert await count(config, "auth") == 3

    asyncio.run(main())


def test_missing_legacy_table(config):
    async def main():
        engine = MigrationEngine(config)
        try:
            with pytest.raises(MigrationError):
                await engine.migrate()
        finally:
            await engine.close()

    asyncio.run(main())


def test_check_migration_needed(config, creds):
    async def main():
        empty = await check_migration_needed(config)
        assert empty.current_structure == "unknown"
        assert not empty.migration_needed

        await seed_legacy(config, "default", creds, {"pre-key": {"1": b"k"}})
        before = await check_migration_needed(config)
        assert before.current_structure == "single-table"
        assert before.migration_needed
        assert before.record_count == 2

        await migrate(config)
        after = await check_migration_needed(config)
        assert after.current_structure == "multi-table"
        assert not after.migration_needed

    asyncio.run(main())
