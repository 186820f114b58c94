"""Unit tests for schema migrations and capability detection."""

from pathlib import Path

import pytest

from dns_sync.db import Transaction, TransactionManager
from dns_sync.errors import MigrationFailure
from dns_sync.locks import FileLock
from dns_sync.migrations import (
    MIGRATIONS,
    MIGRATIONS_TABLE,
    Migration,
    MigrationRunner,
    SchemaCapabilities,
    table_columns,
    table_exists,
    validate_migration_chain,
)
from dns_sync.models import DesiredRecord, ProviderRecord, TrackedRecord
from dns_sync.repositories import ManagedRecordRepository, ProviderCacheRepository

from fakes import FakeDNSProvider


def migration_rows(transactions: TransactionManager):
    with transactions.reader() as session:
        return {
            row["name"]: row["status"]
            for row in session.query(f"SELECT name, status FROM {MIGRATIONS_TABLE}")
        }


class TestMigrationRunner:
    def test_applies_all_migrations_in_order(self, transactions: TransactionManager, clock) -> None:
        result = MigrationRunner(transactions, clock=clock).run()

        assert result.ok
        assert result.applied == [m.name for m in MIGRATIONS]
        assert set(migration_rows(transactions).values()) == {"completed"}

        capabilities = SchemaCapabilities.detect(transactions)
        assert capabilities.schema_version == MIGRATIONS[-1].version
        assert capabilities.provider_cache
        assert capabilities.tracked_records
        assert capabilities.cache_fingerprint
        assert capabilities.cache_last_refreshed
        assert capabilities.tracked_updated_at
        assert capabilities.tracked_metadata
        assert capabilities.audit_log
        assert capabilities.provider_refresh

    def test_rerun_is_a_no_op(self, transactions: TransactionManager, clock) -> None:
        runner = MigrationRunner(transactions, clock=clock)
        runner.run()

        second = runner.run()

        assert second.ok
        assert second.applied == []
        assert runner.pending() == []

    def test_upgrades_database_created_before_migrations_table(
        self, transactions: TransactionManager, clock
    ) -> None:
        """An old database already has the cache table but no migration history."""
        transactions.run(
            lambda tx: tx.execute(
                """
                CREATE TABLE dns_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    content TEXT,
                    ttl INTEGER,
                    proxied INTEGER DEFAULT 0,
                    fingerprint TEXT,
                    UNIQUE(provider, record_id)
                )
                """
            )
        )

        result = MigrationRunner(transactions, clock=clock).run()

        assert result.ok
        with transactions.reader() as session:
            columns = table_columns(session, "dns_records")
        assert {"fingerprint", "last_refreshed"} <= columns

    def test_failed_migration_is_rolled_back_and_recorded(
        self, transactions: TransactionManager, clock
    ) -> None:
        def broken(tx: Transaction) -> None:
            tx.execute("CREATE TABLE half_done (x INTEGER)")
            raise RuntimeError("boom")

        never_run = []
        last = MIGRATIONS[-1].version
        migrations = list(MIGRATIONS) + [
            Migration(last + 1, "0100_broken", broken),
            Migration(last + 2, "0101_after_broken", lambda tx: never_run.append(1)),
        ]
        runner = MigrationRunner(transactions, migrations=migrations, clock=clock)

        result = runner.run()

        assert not result.ok
        assert result.failed == "0100_broken"
        assert "boom" in result.error
        assert never_run == []
        assert migration_rows(transactions)["0100_broken"] == "failed"
        with transactions.reader() as session:
            assert not table_exists(session, "half_done")
        assert [m.name for m in runner.pending()] == ["0100_broken", "0101_after_broken"]
        assert SchemaCapabilities.detect(transactions).schema_version == last

    def test_failed_migration_is_retried_on_next_run(
        self, transactions: TransactionManager, clock
    ) -> None:
        attempts = []

        def flaky(tx: Transaction) -> None:
            attempts.append(1)
            if len(attempts) == 1:
                tx.execute("ALTER TABLE does_not_exist ADD COLUMN x TEXT")

        migrations = list(MIGRATIONS) + [Migration(MIGRATIONS[-1].version + 1, "0100_flaky", flaky)]
        runner = MigrationRunner(transactions, migrations=migrations, clock=clock)

        assert runner.run().failed == "0100_flaky"
        second = runner.run()

        assert second.ok
        assert second.applied == ["0100_flaky"]
        assert migration_rows(transactions)["0100_flaky"] == "completed"

    def test_held_lock_skips_migrations(
        self, transactions: TransactionManager, clock, tmp_path: Path
    ) -> None:
        path = str(tmp_path / "migrations.lock")
        other = FileLock(path, holder="other-process", clock=clock)
        other.acquire()

        lock = FileLock(path, timeout=0, holder="this-process", clock=clock)
        result = MigrationRunner(transactions, lock=lock, clock=clock).run()

        assert result.failed == "lock"
        assert "other-process" in result.error
        with transactions.reader() as session:
            assert not table_exists(session, MIGRATIONS_TABLE)
        other.release()

    def test_lock_is_released_after_run(
        self, transactions: TransactionManager, clock, tmp_path: Path
    ) -> None:
        lock = FileLock(str(tmp_path / "migrations.lock"), clock=clock)

        MigrationRunner(transactions, lock=lock, clock=clock).run()

        assert not lock.owned
        assert not (tmp_path / "migrations.lock").exists()


class TestMigrationChain:
    def test_versions_must_increase(self) -> None:
        with pytest.raises(MigrationFailure):
            validate_migration_chain(
                [Migration(2, "0002_b", lambda tx: None), Migration(1, "0001_a", lambda tx: None)]
            )

    def test_names_must_be_unique(self) -> None:
        with pytest.raises(MigrationFailure):
            validate_migration_chain(
                [Migration(1, "same", lambda tx: None), Migration(2, "same", lambda tx: None)]
            )

    def test_shipped_chain_is_valid(self) -> None:
        validate_migration_chain(MIGRATIONS)


class TestLegacySchema:
    """Repositories keep working on a schema that stopped after the first two migrations."""

    @pytest.fixture
    def legacy(self, transactions: TransactionManager, clock) -> SchemaCapabilities:
        result = MigrationRunner(transactions, migrations=MIGRATIONS[:2], clock=clock).run()
        assert result.ok
        return SchemaCapabilities.detect(transactions)

    def test_detects_missing_optional_columns(self, legacy: SchemaCapabilities) -> None:
        assert legacy.schema_version == 2
        assert legacy.provider_cache
        assert legacy.tracked_records
        assert not legacy.cache_fingerprint
        assert not legacy.cache_last_refreshed
        assert not legacy.tracked_updated_at
        assert not legacy.tracked_metadata
        assert not legacy.audit_log
        assert not legacy.provider_refresh

    def test_cache_refresh_and_lookup(
        self, transactions: TransactionManager, legacy: SchemaCapabilities, clock
    ) -> None:
        provider = FakeDNSProvider()
        provider.add("A", "app.example.com", "10.0.0.1")
        cache = ProviderCacheRepository(transactions, legacy, clock=clock)

        assert cache.refresh(provider) == 1

        cached = cache.lookup("fake", "A", "app.example.com")
        assert cached is not None
        assert cached.content == "10.0.0.1"
        assert cached.fingerprint == DesiredRecord("A", "app.example.com", "10.0.0.1", 300).fingerprint
        # Without last_refreshed the cache is always considered stale.
        assert cache.needs_refresh("fake")

    def test_tracked_records_round_trip(
        self, transactions: TransactionManager, legacy: SchemaCapabilities, clock
    ) -> None:
        records = ManagedRecordRepository(transactions, legacy, clock=clock)
        created = TrackedRecord.from_provider(
            "fake",
            ProviderRecord("fake-1", "A", "app.example.com", "10.0.0.1", 300),
            app_managed=True,
            source="test",
            now=clock(),
        )

        stored = transactions.run(lambda tx: records.upsert(tx, created))

        assert stored.updated_at is None
        assert stored.source == ""
        assert stored.app_managed
        assert stored.tracked_at == clock()


class TestSchemaBeforeRefreshTable:
    def test_refresh_time_falls_back_to_cached_rows(self, transactions: TransactionManager, clock) -> None:
        assert MigrationRunner(transactions, migrations=MIGRATIONS[:-1], clock=clock).run().ok
        capabilities = SchemaCapabilities.detect(transactions)
        assert capabilities.cache_last_refreshed
        assert not capabilities.provider_refresh

        provider = FakeDNSProvider()
        provider.add("A", "app.example.com", "10.0.0.1")
        cache = ProviderCacheRepository(transactions, capabilities, clock=clock)
        cache.refresh(provider)

        assert cache.last_refreshed("fake") == clock()
        assert not cache.needs_refresh("fake")

    def test_upgrade_adds_refresh_table(self, transactions: TransactionManager, clock) -> None:
        MigrationRunner(transactions, migrations=MIGRATIONS[:-1], clock=clock).run()

        result = MigrationRunner(transactions, clock=clock).run()

        assert result.applied == [MIGRATIONS[-1].name]
        assert SchemaCapabilities.detect(transactions).provider_refresh
