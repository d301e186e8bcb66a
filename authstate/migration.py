"""
authstate.migration
-------------------
One-time move of sessions from the legacy single table into the normalized
layout.

Per session the keys are copied under a placeholder device row and the
credential is written only once the copy verifies. Categories are scanned
most specific prefix first and a category's scan excludes identifiers
claimed by a narrower sibling, so "sender-key-memory-*" rows never land among
the plain sender keys. Values are decoded and re-encoded on the way;
undecodable rows are skipped and reported.

The legacy table is only read. With archive_legacy=True it is renamed aside
after a full, verified run over every session.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from .config import StoreConfig
from .constants import ALL_SESSIONS, CREDS_ID, STRATEGY_NORMALIZED
from .exceptions import AuthStateError, MigrationError, SerializationError
from .logger import child_logger
from .storage.cache import NullCache
from .storage.classify import RULES, classify
from .storage.codec import decode_creds, decode_entry, encode_entry
from .storage.connection import ConnectionRegistry, Database, driver_errors
from .storage.models import KeyCategory
from .storage.providers.legacy_provider import prefix_filter
from .storage.providers.sqlite_provider import SQLiteKeyStore
from .storage.schema import devices_table, key_table, table_exists
from .utils import compact_ts

log = child_logger("migration")

MIGRATED = "migrated"
DRY_RUN = "dry-run"
ALREADY_MIGRATED = "already-migrated"
FAILED = "failed"


@dataclass
class SessionReport:
    session: str
    status: str = ""
    device_pk: Optional[int] = None
    counts: Dict[str, int] = field(default_factory=lambda: {c.value: 0 for c in KeyCategory})
    skipped: List[str] = field(default_factory=list)
    unclassified: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (MIGRATED, DRY_RUN, ALREADY_MIGRATED)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


@dataclass
class MigrationReport:
    dry_run: bool
    sessions: Dict[str, SessionReport] = field(default_factory=dict)
    archived_as: Optional[str] = None

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.sessions.values())

    def totals(self) -> Dict[str, int]:
        totals = {c.value: 0 for c in KeyCategory}
        for report in self.sessions.values():
            for name, n in report.counts.items():
                totals[name] += n
        return totals

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "ok": self.ok,
            "archived_as": self.archived_as,
            "totals": self.totals(),
            "sessions": {
                s: {
                    "status": r.status,
                    "counts": dict(r.counts),
                    "skipped": list(r.skipped),
                    "unclassified": list(r.unclassified),
                    "error": r.error,
                }
                for s, r in self.sessions.items()
            },
        }


@dataclass
class MigrationStatus:
    migration_needed: bool
    current_structure: str  # single-table | multi-table | unknown
    record_count: int


# most specific prefix first, matching classify()
SCAN_ORDER: List[KeyCategory] = [category for _, category in RULES]


class MigrationEngine:
    def __init__(self, config: StoreConfig, registry: Optional[ConnectionRegistry] = None):
        # handles are opened with the normalized schema; the legacy table is never created here
        self.config = replace(config, strategy=STRATEGY_NORMALIZED)
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.db = Database(self.config, self.registry)
        self.legacy = config.legacy_table

    async def sessions(self) -> List[str]:
        rows = await self.db.fetchall(f"SELECT DISTINCT session FROM {self.legacy} ORDER BY session")
        return [r[0] for r in rows]

    async def migrate(self, session: str = ALL_SESSIONS, dry_run: bool = False, force: bool = False,
                      archive_legacy: bool = False) -> MigrationReport:
        if not await self.db.table_exists(self.legacy):
            raise MigrationError(f"legacy table {self.legacy!r} does not exist")

        targets = await self.sessions() if session == ALL_SESSIONS else [session]
        report = MigrationReport(dry_run=dry_run)
        log.info(f"migration start sessions={len(targets)} dry_run={dry_run} source={self.legacy} "
                 f"target_prefix={self.config.table_prefix}")

        for name in targets:
            result = SessionReport(session=name)
            report.sessions[name] = result
            try:
                await self._migrate_session(result, dry_run=dry_run, force=force)
            except AuthStateError as exc:
                # one broken session must not stop the others
                result.status = FAILED
                result.error = str(exc)
                log.error(f"migration failed session={name}: {exc}")
            else:
                log.info(f"session={name} status={result.status} rows={result.total} skipped={len(result.skipped)}")

        if archive_legacy and not dry_run and session == ALL_SESSIONS and report.ok and report.sessions:
            report.archived_as = await self._archive_legacy()
        return report

    async def _migrate_session(self, result: SessionReport, dry_run: bool, force: bool) -> None:
        name = result.session
        store = SQLiteKeyStore(self.config.with_session(name), cache=NullCache(), db=self.db, logger=log)

        existing = await store.device_record()
        if existing is not None and existing.creds is not None and not force:
            result.status = ALREADY_MIGRATED
            result.device_pk = existing.id
            return

        row = await self.db.fetchone(
            f"SELECT value FROM {self.legacy} WHERE session = ? AND id = ?", (name, CREDS_ID)
        )
        if row is None or row[0] is None:
            raise MigrationError(f"no credential row for session {name!r}", session=name)
        try:
            creds = decode_creds(row[0])
        except SerializationError as exc:
            raise MigrationError(f"credential row for session {name!r} is unreadable: {exc}", session=name) from exc

        if not dry_run:
            # keys go under a placeholder device row; creds land only after verification
            result.device_pk = await store.device_pk(create=True)

        for category in SCAN_ORDER:
            cond, params = prefix_filter(category)
            rows = await self.db.fetchall(
                f"SELECT id, value FROM {self.legacy} WHERE session = ? AND {cond} ORDER BY id",
                (name, *params),
            )
            batch = []
            for legacy_id, value in rows:
                bare = legacy_id[len(category.prefix):]
                decoded = decode_entry(category, value)
                if not decoded.ok:
                    result.skipped.append(f"{legacy_id}: {decoded.error}")
                    continue
                batch.append((result.device_pk, bare, encode_entry(category, decoded.value)))
            result.counts[category.value] = len(batch)
            if batch and not dry_run:
                await self.db.executemany(
                    f"INSERT INTO {key_table(self.config, category)} (device_id, key_id, value) VALUES (?, ?, ?) "
                    "ON CONFLICT(device_id, key_id) DO UPDATE SET value = excluded.value, "
                    "updated_at = CURRENT_TIMESTAMP",
                    batch,
                )

        all_ids = await self.db.fetchall(f"SELECT id FROM {self.legacy} WHERE session = ?", (name,))
        result.unclassified = sorted(i for (i,) in all_ids if i != CREDS_ID and classify(i) is None)

        if dry_run:
            result.status = DRY_RUN
            return
        await self._verify(result)
        await store.write_creds(creds)
        result.status = MIGRATED

    async def _verify(self, result: SessionReport) -> None:
        for category in KeyCategory:
            row = await self.db.fetchone(
                f"SELECT COUNT(*) FROM {key_table(self.config, category)} WHERE device_id = ?", (result.device_pk,)
            )
            stored = int(row[0]) if row else 0
            if stored < result.counts[category.value]:
                raise MigrationError(
                    f"verification failed for {category.value}: expected {result.counts[category.value]}, found {stored}",
                    session=result.session,
                )

    async def _archive_legacy(self) -> str:
        target = f"{self.legacy}_migrated_{compact_ts()}"
        await self.db.execute(f"ALTER TABLE {self.legacy} RENAME TO {target}")
        log.info(f"legacy table {self.legacy} archived as {target}")
        return target

    async def close(self) -> None:
        await self.db.close()


async def migrate(config: StoreConfig, session: str = ALL_SESSIONS, dry_run: bool = False,
                  force: bool = False, archive_legacy: bool = False,
                  registry: Optional[ConnectionRegistry] = None) -> MigrationReport:
    engine = MigrationEngine(config, registry)
    try:
        return await engine.migrate(session=session, dry_run=dry_run, force=force, archive_legacy=archive_legacy)
    finally:
        await engine.close()


async def check_migration_needed(config: StoreConfig, registry: Optional[ConnectionRegistry] = None) -> MigrationStatus:
    """Inspect the database without creating anything and report which layout it holds."""
    registry = registry if registry is not None else ConnectionRegistry()
    with driver_errors():
        conn = await registry.connector(config)
    try:
        has_normalized = await table_exists(conn, devices_table(config))
        has_legacy = await table_exists(conn, config.legacy_table)
        count = 0
        if has_legacy:
            async with conn.execute(
                f"SELECT COUNT(*) FROM {config.legacy_table} WHERE session = ?", (config.session,)
            ) as cur:
                row = await cur.fetchone()
                count = int(row[0]) if row else 0
    finally:
        await conn.close()

    if has_normalized:
        structure = "multi-table"
    elif has_legacy:
        structure = "single-table"
    else:
        structure = "unknown"
    return MigrationStatus(
        migration_needed=has_legacy and count > 0 and not has_normalized,
        current_structure=structure,
        record_count=count,
    )
