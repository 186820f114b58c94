"""Unit tests for the orphan lifecycle manager."""

from datetime import timedelta

import pytest

from dns_sync.db import TransactionManager
from dns_sync.errors import ProviderAuth, PersistenceError
from dns_sync.lifecycle import OrphanLifecycleManager, RecordState
from dns_sync.models import TrackedRecord
from dns_sync.repositories import ManagedRecordRepository

from fakes import FakeDNSProvider


@pytest.fixture
def records(transactions: TransactionManager, capabilities, clock) -> ManagedRecordRepository:
    return ManagedRecordRepository(transactions, capabilities, clock=clock)


@pytest.fixture
def provider() -> FakeDNSProvider:
    return FakeDNSProvider()


def make_manager(records, transactions, clock, **kwargs) -> OrphanLifecycleManager:
    kwargs.setdefault("grace_period", timedelta(minutes=15))
    return OrphanLifecycleManager(records, transactions, clock=clock, **kwargs)


def track(transactions, records, provider: FakeDNSProvider, name: str, *, app_managed: bool = True):
    created = provider.add("A", name, "10.0.0.1")
    return transactions.run(
        lambda tx: records.upsert(
            tx,
            TrackedRecord(
                provider=provider.name,
                provider_record_id=created.id,
                type="A",
                name=name,
                content="10.0.0.1",
                ttl=300,
                app_managed=app_managed,
            ),
        )
    )


class TestTransitions:
    def test_states(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")

        assert manager.state_of(record) is RecordState.ACTIVE
        orphaned = transactions.run(lambda tx: manager.mark_orphaned(tx, record))
        assert manager.state_of(orphaned) is RecordState.ORPHANED
        assert manager.state_of(None) is RecordState.DELETED

    def test_should_orphan_only_app_managed_and_unpreserved(
        self, transactions, records, provider, clock
    ) -> None:
        manager = make_manager(
            records, transactions, clock, is_preserved=lambda name: name.startswith("keep.")
        )
        managed = track(transactions, records, provider, "app.example.com")
        adopted = track(transactions, records, provider, "api.example.com", app_managed=False)
        preserved = track(transactions, records, provider, "keep.example.com")

        assert manager.should_orphan(managed)
        assert not manager.should_orphan(adopted)
        assert not manager.should_orphan(preserved)

        orphaned = transactions.run(lambda tx: manager.mark_orphaned(tx, managed))
        assert not manager.should_orphan(orphaned)

    def test_grace_period_boundary(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")
        orphaned = transactions.run(lambda tx: manager.mark_orphaned(tx, record))

        clock.advance(minutes=14, seconds=59)
        assert not manager.is_expired(orphaned)
        assert manager.expired("fake") == []

        clock.advance(seconds=1)
        assert manager.is_expired(orphaned)
        assert [r.name for r in manager.expired("fake")] == ["app.example.com"]

    def test_reactivation_restarts_the_clock(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")
        orphaned = transactions.run(lambda tx: manager.mark_orphaned(tx, record))

        clock.advance(minutes=10)
        active = transactions.run(lambda tx: manager.reactivate(tx, orphaned))
        assert manager.state_of(active) is RecordState.ACTIVE

        clock.advance(minutes=10)
        again = transactions.run(lambda tx: manager.mark_orphaned(tx, active))
        clock.advance(minutes=10)
        assert not manager.is_expired(again)
        assert manager.expired("fake") == []

    def test_cleanup_disabled_never_expires(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock, cleanup_enabled=False)
        record = track(transactions, records, provider, "app.example.com")
        transactions.run(lambda tx: manager.mark_orphaned(tx, record))

        clock.advance(days=30)
        assert manager.expired("fake") == []

    def test_preserved_orphans_are_not_expired(self, transactions, records, provider, clock) -> None:
        preserved = set()
        manager = make_manager(records, transactions, clock, is_preserved=preserved.__contains__)
        record = track(transactions, records, provider, "app.example.com")
        transactions.run(lambda tx: manager.mark_orphaned(tx, record))
        preserved.add("app.example.com")

        clock.advance(hours=1)
        assert manager.expired("fake") == []


class TestDelete:
    def test_deletes_at_provider_then_untracks(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")

        assert manager.delete(provider, record)

        assert provider.records == {}
        assert records.get("fake", record.provider_record_id) is None

    def test_missing_provider_record_is_untracked(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")
        provider.records.clear()

        assert not manager.delete(provider, record)
        assert records.get("fake", record.provider_record_id) is None

    def test_provider_failure_keeps_tracked_row(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")
        provider.fail("delete", ProviderAuth("forbidden", "fake"))

        with pytest.raises(ProviderAuth):
            manager.delete(provider, record)

        assert records.get("fake", record.provider_record_id) is not None

    def test_checkpoint_aborts_local_commit(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")

        def checkpoint():
            raise PersistenceError("cancelled")

        with pytest.raises(PersistenceError):
            manager.delete(provider, record, checkpoint=checkpoint)

        assert records.get("fake", record.provider_record_id) is not None

    def test_call_wrapper_is_used(self, transactions, records, provider, clock) -> None:
        manager = make_manager(records, transactions, clock)
        record = track(transactions, records, provider, "app.example.com")
        wrapped = []

        def call(fn):
            wrapped.append(fn)
            return fn()

        manager.delete(provider, record, call=call)

        assert len(wrapped) == 1
        assert provider.delete_calls == [record.provider_record_id]
