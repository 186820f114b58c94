"""Unit tests for the provider cache and managed record repositories."""

from datetime import timedelta

import pytest

from dns_sync.db import TransactionManager
from dns_sync.errors import PersistenceIntegrity, ProviderTransient
from dns_sync.migrations import SchemaCapabilities
from dns_sync.models import ProviderRecord, TrackedRecord
from dns_sync.repositories import ManagedRecordRepository, ProviderCacheRepository

from fakes import FakeDNSProvider


@pytest.fixture
def cache(transactions: TransactionManager, capabilities: SchemaCapabilities, clock):
    return ProviderCacheRepository(transactions, capabilities, ttl=timedelta(minutes=10), clock=clock)


@pytest.fixture
def records(transactions: TransactionManager, capabilities: SchemaCapabilities, clock):
    return ManagedRecordRepository(transactions, capabilities, clock=clock)


def tracked(record_id: str, name: str, content: str = "10.0.0.1", **kwargs) -> TrackedRecord:
    fields = dict(
        provider="fake",
        provider_record_id=record_id,
        type="A",
        name=name,
        content=content,
        ttl=300,
    )
    fields.update(kwargs)
    return TrackedRecord(**fields)


class TestProviderCache:
    def test_refresh_replaces_snapshot(self, cache: ProviderCacheRepository) -> None:
        provider = FakeDNSProvider()
        first = provider.add("A", "app.example.com", "10.0.0.1")
        provider.add("CNAME", "www.example.com", "app.example.com")
        cache.refresh(provider)

        del provider.records[first.id]
        provider.add("A", "api.example.com", "10.0.0.2")
        assert cache.refresh(provider) == 2

        names = [r.name for r in cache.list("fake")]
        assert names == ["api.example.com", "www.example.com"]
        assert cache.lookup("fake", "A", "app.example.com") is None

    def test_refresh_failure_keeps_previous_snapshot(self, cache: ProviderCacheRepository) -> None:
        provider = FakeDNSProvider()
        provider.add("A", "app.example.com", "10.0.0.1")
        cache.refresh(provider)

        provider.fail("list", ProviderTransient("timeout", "fake"))
        with pytest.raises(ProviderTransient):
            cache.refresh(provider)

        assert cache.count("fake") == 1

    def test_duplicate_ids_are_collapsed(self, cache: ProviderCacheRepository) -> None:
        provider = FakeDNSProvider(
            records=[ProviderRecord("dup", "A", "app.example.com", "10.0.0.1", 300)]
        )
        provider.list_records = lambda filter=None: [
            ProviderRecord("dup", "A", "app.example.com", "10.0.0.1", 300),
            ProviderRecord("dup", "A", "app.example.com", "10.0.0.9", 300),
        ]

        assert cache.refresh(provider) == 1
        assert cache.lookup("fake", "A", "app.example.com").content == "10.0.0.9"

    def test_snapshots_are_per_provider(self, cache: ProviderCacheRepository) -> None:
        one = FakeDNSProvider("one")
        one.add("A", "app.example.com", "10.0.0.1")
        two = FakeDNSProvider("two")
        two.add("A", "app.example.com", "10.0.0.2")
        cache.refresh(one)
        cache.refresh(two)

        one.records.clear()
        cache.refresh(one)

        assert cache.count("one") == 0
        assert cache.lookup("two", "A", "app.example.com").content == "10.0.0.2"

    def test_lookup_normalizes_names(self, cache: ProviderCacheRepository) -> None:
        provider = FakeDNSProvider()
        provider.add("a", "App.Example.com.", "10.0.0.1")
        cache.refresh(provider)

        record = cache.lookup("fake", "A", "APP.example.COM")

        assert record is not None
        assert record.type == "A"
        assert record.name == "app.example.com"

    def test_ttl_governs_refresh(self, cache: ProviderCacheRepository, clock) -> None:
        provider = FakeDNSProvider()
        provider.add("A", "app.example.com", "10.0.0.1")

        assert cache.needs_refresh("fake")
        assert cache.ensure_fresh(provider)
        assert cache.last_refreshed("fake") == clock()
        assert not cache.ensure_fresh(provider)
        assert cache.ensure_fresh(provider, force=True)

        clock.advance(minutes=10)
        assert cache.needs_refresh("fake")
        assert provider.list_calls == 2
        assert cache.ensure_fresh(provider)
        assert provider.list_calls == 3

    def test_empty_refresh_still_counts_as_fresh(self, cache: ProviderCacheRepository, clock) -> None:
        provider = FakeDNSProvider()

        assert cache.ensure_fresh(provider)
        assert cache.count("fake") == 0
        assert cache.last_refreshed("fake") == clock()
        assert not cache.needs_refresh("fake")

        clock.advance(minutes=5)
        assert not cache.ensure_fresh(provider)
        assert provider.list_calls == 1

        clock.advance(minutes=5)
        assert cache.needs_refresh("fake")

    def test_failed_refresh_keeps_previous_refresh_time(self, cache: ProviderCacheRepository, clock) -> None:
        provider = FakeDNSProvider()
        cache.refresh(provider)
        refreshed_at = clock()

        clock.advance(minutes=10)
        provider.fail("list", ProviderTransient("timeout", "fake"))
        with pytest.raises(ProviderTransient):
            cache.refresh(provider)

        assert cache.last_refreshed("fake") == refreshed_at


class TestManagedRecords:
    def test_upsert_fails_when_row_cannot_be_read_back(
        self, transactions: TransactionManager, records, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(records, "get", lambda *args, **kwargs: None)

        with pytest.raises(PersistenceIntegrity):
            transactions.run(lambda tx: records.upsert(tx, tracked("r1", "app.example.com")))

    def test_upsert_and_get(self, transactions: TransactionManager, records, clock) -> None:
        stored = transactions.run(
            lambda tx: records.upsert(tx, tracked("r1", "App.Example.com", source="file"))
        )

        assert stored.name == "app.example.com"
        assert stored.tracked_at == clock()
        assert stored.updated_at == clock()
        assert stored.source == "file"
        assert records.get("fake", "r1") == stored
        assert records.find("fake", "a", "app.example.com.") == stored

    def test_upsert_keeps_tracked_at_and_ownership(
        self, transactions: TransactionManager, records, clock
    ) -> None:
        transactions.run(lambda tx: records.upsert(tx, tracked("r1", "app.example.com")))
        first_seen = clock()
        clock.advance(minutes=5)

        updated = transactions.run(
            lambda tx: records.upsert(
                tx, tracked("r1", "app.example.com", "10.0.0.2", app_managed=False, tracked_at=clock())
            )
        )

        assert updated.content == "10.0.0.2"
        assert updated.tracked_at == first_seen
        assert updated.app_managed

    def test_orphan_flag_requires_timestamp(self, transactions: TransactionManager, records, clock) -> None:
        with pytest.raises(PersistenceIntegrity):
            transactions.run(lambda tx: records.upsert(tx, tracked("r1", "app.example.com", is_orphaned=True)))
        with pytest.raises(PersistenceIntegrity):
            transactions.run(
                lambda tx: records.upsert(
                    tx, tracked("r2", "api.example.com", orphaned_at=clock())
                )
            )
        assert records.list("fake") == []

    def test_mark_and_clear_orphaned(self, transactions: TransactionManager, records, clock) -> None:
        transactions.run(lambda tx: records.upsert(tx, tracked("r1", "app.example.com")))

        orphaned = transactions.run(
            lambda tx: records.mark_orphaned(tx, "fake", "r1", clock())
        )
        assert orphaned.is_orphaned
        assert orphaned.orphaned_at == clock()

        clock.advance(minutes=1)
        again = transactions.run(lambda tx: records.mark_orphaned(tx, "fake", "r1", clock()))
        assert again.orphaned_at == orphaned.orphaned_at

        active = transactions.run(lambda tx: records.clear_orphaned(tx, "fake", "r1"))
        assert not active.is_orphaned
        assert active.orphaned_at is None
        assert active.updated_at == clock()

    def test_orphaning_untracked_record_fails(self, transactions: TransactionManager, records, clock) -> None:
        with pytest.raises(PersistenceIntegrity):
            transactions.run(lambda tx: records.mark_orphaned(tx, "fake", "missing", clock()))

    def test_list_filters(self, transactions: TransactionManager, records, clock) -> None:
        def seed(tx):
            records.upsert(tx, tracked("r1", "app.example.com"))
            records.upsert(tx, tracked("r2", "api.example.com"))
            records.mark_orphaned(tx, "fake", "r2", clock())
            records.upsert(tx, tracked("r3", "app.example.com", provider="other"))

        transactions.run(seed)

        assert [r.provider_record_id for r in records.list("fake")] == ["r2", "r1"]
        assert [r.provider_record_id for r in records.list("fake", orphaned=True)] == ["r2"]
        assert [r.provider_record_id for r in records.list("fake", orphaned=False)] == ["r1"]

    def test_list_orphaned_older_than(self, transactions: TransactionManager, records, clock) -> None:
        transactions.run(lambda tx: records.upsert(tx, tracked("old", "old.example.com")))
        transactions.run(lambda tx: records.upsert(tx, tracked("new", "new.example.com")))
        transactions.run(lambda tx: records.mark_orphaned(tx, "fake", "old", clock()))
        clock.advance(minutes=10)
        transactions.run(lambda tx: records.mark_orphaned(tx, "fake", "new", clock()))
        clock.advance(minutes=5)

        expired = records.list_orphaned_older_than(timedelta(minutes=15))
        assert [r.provider_record_id for r in expired] == ["old"]
        assert records.list_orphaned_older_than(timedelta(minutes=15), provider="other") == []
        assert len(records.list_orphaned_older_than(timedelta(minutes=5))) == 2

    def test_delete(self, transactions: TransactionManager, records) -> None:
        transactions.run(lambda tx: records.upsert(tx, tracked("r1", "app.example.com")))

        assert transactions.run(lambda tx: records.delete(tx, "fake", "r1"))
        assert not transactions.run(lambda tx: records.delete(tx, "fake", "r1"))
        assert records.get("fake", "r1") is None

    def test_update_record_id(self, transactions: TransactionManager, records, clock) -> None:
        transactions.run(lambda tx: records.upsert(tx, tracked("old-id", "app.example.com")))

        moved = transactions.run(
            lambda tx: records.update_record_id(tx, "old-id", tracked("new-id", "app.example.com"))
        )

        assert moved.provider_record_id == "new-id"
        assert records.get("fake", "old-id") is None
        assert [r.provider_record_id for r in records.list("fake")] == ["new-id"]

    def test_writes_share_the_callers_transaction(self, transactions: TransactionManager, records) -> None:
        def work(tx):
            records.upsert(tx, tracked("r1", "app.example.com"))
            records.upsert(tx, tracked("r2", "api.example.com"))
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            transactions.run(work)

        assert records.list("fake") == []
