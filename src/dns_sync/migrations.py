"""Schema migrations and runtime schema capability detection.

Migrations are versioned, recorded by name in ``schema_migrations`` and applied
one per transaction. Every migration is idempotent on its own (``IF NOT
EXISTS`` tables, column additions guarded by a column check), so databases
created by older releases that predate the migrations table upgrade cleanly.

A failed migration is rolled back and recorded as ``failed``; the runner stops
there and the process keeps running on the last good schema.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Set

from dns_sync.db import Session, Transaction, TransactionManager
from dns_sync.errors import LockTimeout, MigrationFailure, PersistenceError
from dns_sync.locks import FileLock
from dns_sync.models import MigrationRecord, from_db_timestamp, to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "schema_migrations"
PROVIDER_CACHE_TABLE = "dns_records"
TRACKED_RECORDS_TABLE = "dns_tracked_records"
AUDIT_LOG_TABLE = "audit_log"
PROVIDER_REFRESH_TABLE = "provider_refresh"

_MIGRATIONS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    version INTEGER NOT NULL,
    name TEXT NOT NULL UNIQUE,
    applied_at TEXT,
    status TEXT NOT NULL DEFAULT 'completed',
    execution_ms INTEGER,
    error_message TEXT
)
"""


def table_exists(session: Session, table: str) -> bool:
    row = session.query_one(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    )
    return row is not None


def table_columns(session: Session, table: str) -> Set[str]:
    return {row["name"] for row in session.query(f"PRAGMA table_info({table})")}


def _add_column(tx: Transaction, table: str, column: str, definition: str) -> None:
    if column in table_columns(tx, table):
        logger.debug(f"Column {table}.{column} already present")
        return
    tx.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    logger.info(f"Added column {table}.{column}")


# =============================================================================
# Migrations
# =============================================================================


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    upgrade: Callable[[Transaction], None]


def _create_provider_cache(tx: Transaction) -> None:
    tx.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {PROVIDER_CACHE_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider TEXT NOT NULL,
            record_id TEXT NOT NULL,
            type TEXT NOT NULL,
            name TEXT NOT NULL,
            content TEXT,
            ttl INTEGER,
            proxied INTEGER DEFAULT 0,
            UNIQUE(provider, record_id)
        )
        """
    )
    tx.execute(
        f"CREATE INDEX IF NOT EXISTS idx_dns_provider ON {PROVIDER_CACHE_TABLE}(provider)"
    )
    tx.execute(
        f"CREATE INDEX IF NOT EXISTS idx_dns_lookup ON {PROVIDER_CACHE_TABLE}(provider, type, name)"
    )


def _create_tracked_records(tx: Transaction) -> None:
    tx.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {TRACKED_RECORDS_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider TEXT NOT NULL,
            record_id TEXT NOT NULL,
            type TEXT NOT NULL,
            name TEXT NOT NULL,
            content TEXT,
            ttl INTEGER,
            proxied INTEGER DEFAULT 0,
            is_orphaned INTEGER NOT NULL DEFAULT 0,
            orphaned_at TEXT,
            tracked_at TEXT NOT NULL,
            app_managed INTEGER NOT NULL DEFAULT 1,
            UNIQUE(provider, record_id)
        )
        """
    )
    tx.execute(
        f"CREATE INDEX IF NOT EXISTS idx_tracked_orphaned "
        f"ON {TRACKED_RECORDS_TABLE}(provider, is_orphaned)"
    )
    tx.execute(
        f"CREATE INDEX IF NOT EXISTS idx_tracked_lookup "
        f"ON {TRACKED_RECORDS_TABLE}(provider, type, name)"
    )


def _add_cache_refresh_columns(tx: Transaction) -> None:
    _add_column(tx, PROVIDER_CACHE_TABLE, "fingerprint", "TEXT")
    _add_column(tx, PROVIDER_CACHE_TABLE, "last_refreshed", "TEXT")
    tx.execute(
        f"CREATE INDEX IF NOT EXISTS idx_dns_lastrefresh "
        f"ON {PROVIDER_CACHE_TABLE}(provider, last_refreshed)"
    )


def _add_tracked_metadata_columns(tx: Transaction) -> None:
    _add_column(tx, TRACKED_RECORDS_TABLE, "updated_at", "TEXT")
    _add_column(tx, TRACKED_RECORDS_TABLE, "metadata", "TEXT")


def _create_audit_log(tx: Transaction) -> None:
    tx.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {AUDIT_LOG_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            action TEXT NOT NULL,
            provider TEXT NOT NULL,
            record_type TEXT,
            name TEXT,
            before_json TEXT,
            after_json TEXT,
            error TEXT,
            created_at TEXT NOT NULL
        )
        """
    )
    tx.execute(
        f"CREATE INDEX IF NOT EXISTS idx_audit_created ON {AUDIT_LOG_TABLE}(created_at)"
    )


def _create_provider_refresh(tx: Transaction) -> None:
    tx.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {PROVIDER_REFRESH_TABLE} (
            provider TEXT PRIMARY KEY,
            refreshed_at TEXT NOT NULL,
            record_count INTEGER NOT NULL DEFAULT 0
        )
        """
    )


MIGRATIONS: Sequence[Migration] = (
    Migration(1, "0001_create_provider_cache", _create_provider_cache),
    Migration(2, "0002_create_tracked_records", _create_tracked_records),
    Migration(3, "0003_add_cache_refresh_columns", _add_cache_refresh_columns),
    Migration(4, "0004_add_tracked_metadata_columns", _add_tracked_metadata_columns),
    Migration(5, "0005_create_audit_log", _create_audit_log),
    Migration(6, "0006_create_provider_refresh", _create_provider_refresh),
)


def validate_migration_chain(migrations: Sequence[Migration]) -> None:
    """Versions must strictly increase and names must be unique."""
    previous = 0
    names: Set[str] = set()
    for migration in migrations:
        if migration.version <= previous:
            raise MigrationFailure(
                f"Migration {migration.name} has version {migration.version}, "
                f"expected greater than {previous}",
                migration.name,
            )
        if migration.name in names:
            raise MigrationFailure(f"Duplicate migration name {migration.name}", migration.name)
        previous = migration.version
        names.add(migration.name)


# =============================================================================
# Runner
# =============================================================================


@dataclass
class MigrationResult:
    applied: List[str] = field(default_factory=list)
    failed: Optional[str] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.failed is None


class MigrationRunner:
    """Applies pending migrations under a cross-process coordination lock."""

    def __init__(
        self,
        transactions: TransactionManager,
        *,
        lock: Optional[FileLock] = None,
        migrations: Sequence[Migration] = MIGRATIONS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transactions = transactions
        self.lock = lock
        self.migrations = list(migrations)
        self._clock = clock

    def ensure_table(self) -> None:
        self.transactions.run(lambda tx: tx.execute(_MIGRATIONS_TABLE_SQL), label="migrations_table")

    def applied(self) -> List[MigrationRecord]:
        with self.transactions.reader() as session:
            if not table_exists(session, MIGRATIONS_TABLE):
                return []
            rows = session.query(
                f"SELECT version, name, applied_at, status FROM {MIGRATIONS_TABLE} "
                f"WHERE status = 'completed' ORDER BY version ASC"
            )
        return [
            MigrationRecord(
                version=row["version"],
                name=row["name"],
                applied_at=from_db_timestamp(row["applied_at"]),
                status=row["status"],
            )
            for row in rows
        ]

    def pending(self) -> List[Migration]:
        done = {record.name for record in self.applied()}
        return [m for m in self.migrations if m.name not in done]

    def run(self) -> MigrationResult:
        validate_migration_chain(self.migrations)
        result = MigrationResult()

        try:
            if self.lock is not None:
                self.lock.acquire()
        except LockTimeout as e:
            logger.critical(f"Migrations skipped, coordination lock unavailable: {e}")
            result.failed = "lock"
            result.error = str(e)
            return result

        try:
            self.ensure_table()
            pending = self.pending()
            if not pending:
                logger.info("No pending migrations to run")
                return result

            logger.info(f"Found {len(pending)} pending migration(s)")
            for migration in pending:
                try:
                    if self._apply(migration):
                        result.applied.append(migration.name)
                except MigrationFailure as e:
                    logger.critical(
                        f"Migration {migration.name} failed and was rolled back; "
                        f"continuing on the previous schema: {e}"
                    )
                    self._record_failure(migration, str(e))
                    result.failed = migration.name
                    result.error = str(e)
                    break
        except PersistenceError as e:
            logger.critical(f"Migration runner error: {e}")
            result.failed = result.failed or "runner"
            result.error = str(e)
        finally:
            if self.lock is not None:
                self.lock.release()

        if result.applied:
            logger.info(f"Applied migrations: {', '.join(result.applied)}")
        return result

    def _apply(self, migration: Migration) -> bool:
        started = time.monotonic()

        def work(tx: Transaction) -> bool:
            # Another process may have applied it between our read and the write lock.
            row = tx.query_one(
                f"SELECT status FROM {MIGRATIONS_TABLE} WHERE name = ?", (migration.name,)
            )
            if row is not None and row["status"] == "completed":
                logger.debug(f"Migration {migration.name} already applied")
                return False
            migration.upgrade(tx)
            tx.execute(
                f"""
                INSERT INTO {MIGRATIONS_TABLE}
                    (version, name, applied_at, status, execution_ms, error_message)
                VALUES (?, ?, ?, 'completed', ?, NULL)
                ON CONFLICT(name) DO UPDATE SET
                    version = excluded.version,
                    applied_at = excluded.applied_at,
                    status = 'completed',
                    execution_ms = excluded.execution_ms,
                    error_message = NULL
                """,
                (
                    migration.version,
                    migration.name,
                    to_db_timestamp(self._clock()),
                    int((time.monotonic() - started) * 1000),
                ),
            )
            return True

        logger.info(f"Running migration: {migration.name}")
        try:
            return self.transactions.run(work, label=f"migration_{migration.version}")
        except MigrationFailure:
            raise
        except Exception as e:
            raise MigrationFailure(f"{migration.name}: {e}", migration.name) from e

    def _record_failure(self, migration: Migration, error: str) -> None:
        try:
            self.transactions.run(
                lambda tx: tx.execute(
                    f"""
                    INSERT INTO {MIGRATIONS_TABLE} (version, name, applied_at, status, error_message)
                    VALUES (?, ?, ?, 'failed', ?)
                    ON CONFLICT(name) DO UPDATE SET
                        status = 'failed',
                        applied_at = excluded.applied_at,
                        error_message = excluded.error_message
                    """,
                    (migration.version, migration.name, to_db_timestamp(self._clock()), error),
                ),
                label="migration_failure",
            )
        except PersistenceError as e:
            logger.error(f"Could not record failure of migration {migration.name}: {e}")


# =============================================================================
# Schema Capabilities
# =============================================================================


@dataclass(frozen=True)
class SchemaCapabilities:
    """What the on-disk schema supports, detected once at startup."""

    schema_version: int = 0
    provider_cache: bool = False
    tracked_records: bool = False
    cache_fingerprint: bool = False
    cache_last_refreshed: bool = False
    tracked_updated_at: bool = False
    tracked_metadata: bool = False
    audit_log: bool = False
    provider_refresh: bool = False

    @classmethod
    def detect(cls, transactions: TransactionManager) -> SchemaCapabilities:
        with transactions.reader() as session:
            version = 0
            if table_exists(session, MIGRATIONS_TABLE):
                row = session.query_one(
                    f"SELECT MAX(version) AS version FROM {MIGRATIONS_TABLE} "
                    f"WHERE status = 'completed'"
                )
                version = int(row["version"] or 0) if row else 0

            cache_columns: Set[str] = set()
            if table_exists(session, PROVIDER_CACHE_TABLE):
                cache_columns = table_columns(session, PROVIDER_CACHE_TABLE)
            tracked_columns: Set[str] = set()
            if table_exists(session, TRACKED_RECORDS_TABLE):
                tracked_columns = table_columns(session, TRACKED_RECORDS_TABLE)
            audit = table_exists(session, AUDIT_LOG_TABLE)
            refresh = table_exists(session, PROVIDER_REFRESH_TABLE)

        capabilities = cls(
            schema_version=version,
            provider_cache=bool(cache_columns),
            tracked_records=bool(tracked_columns),
            cache_fingerprint="fingerprint" in cache_columns,
            cache_last_refreshed="last_refreshed" in cache_columns,
            tracked_updated_at="updated_at" in tracked_columns,
            tracked_metadata="metadata" in tracked_columns,
            audit_log=audit,
            provider_refresh=refresh,
        )
        logger.debug(f"Schema capabilities: {capabilities}")
        return capabilities

    def require(self, *names: str) -> None:
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise PersistenceError(
                f"Database schema (version {self.schema_version}) lacks: {', '.join(missing)}"
            )
