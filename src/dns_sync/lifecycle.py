"""Orphan lifecycle: Active -> Orphaned -> Deleted, with reactivation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, TypeVar

from dns_sync.db import Transaction, TransactionManager
from dns_sync.errors import ProviderNotFound
from dns_sync.models import TrackedRecord, utc_now
from dns_sync.repositories import ManagedRecordRepository

if TYPE_CHECKING:
    from dns_sync.providers import DNSProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecordState(Enum):
    ACTIVE = "active"
    ORPHANED = "orphaned"
    DELETED = "deleted"


class OrphanLifecycleManager:
    """Decides and applies orphan transitions for tracked records.

    Transitions into Orphaned and back to Active are local state changes made in
    the caller's transaction. Deletion calls the provider first and removes the
    local row only once the provider confirms the record is gone.
    """

    def __init__(
        self,
        records: ManagedRecordRepository,
        transactions: TransactionManager,
        *,
        grace_period: timedelta = timedelta(minutes=15),
        cleanup_enabled: bool = True,
        is_preserved: Callable[[str], bool] = lambda name: False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.records = records
        self.transactions = transactions
        self.grace_period = grace_period
        self.cleanup_enabled = cleanup_enabled
        self.is_preserved = is_preserved
        self._clock = clock

    @staticmethod
    def state_of(record: Optional[TrackedRecord]) -> RecordState:
        if record is None:
            return RecordState.DELETED
        return RecordState.ORPHANED if record.is_orphaned else RecordState.ACTIVE

    def should_orphan(self, record: TrackedRecord) -> bool:
        """Only active records this system created, and not preserved, are orphaned."""
        if record.is_orphaned or not record.app_managed:
            return False
        if self.is_preserved(record.name):
            logger.debug(f"Not orphaning preserved hostname {record.name}")
            return False
        return True

    def is_expired(self, record: TrackedRecord, now: Optional[datetime] = None) -> bool:
        if not record.is_orphaned or record.orphaned_at is None:
            return False
        return (now or self._clock()) - record.orphaned_at >= self.grace_period

    def mark_orphaned(self, tx: Transaction, record: TrackedRecord) -> TrackedRecord:
        at = self._clock()
        orphaned = self.records.mark_orphaned(tx, record.provider, record.provider_record_id, at)
        logger.info(
            f"[{record.provider}] Orphaned {record.type} {record.name}; "
            f"deletion after {self.grace_period}"
        )
        return orphaned

    def reactivate(self, tx: Transaction, record: TrackedRecord) -> TrackedRecord:
        active = self.records.clear_orphaned(
            tx, record.provider, record.provider_record_id, self._clock()
        )
        logger.info(f"[{record.provider}] Reactivated {record.type} {record.name}")
        return active

    def expired(self, provider: str, now: Optional[datetime] = None) -> List[TrackedRecord]:
        """Orphans past the grace period that may be deleted now."""
        if not self.cleanup_enabled:
            return []
        candidates = self.records.list_orphaned_older_than(
            self.grace_period, provider=provider, now=now or self._clock()
        )
        return [record for record in candidates if not self.is_preserved(record.name)]

    def delete(
        self,
        provider: DNSProvider,
        record: TrackedRecord,
        *,
        call: Optional[Callable[[Callable[[], bool]], bool]] = None,
        checkpoint: Callable[[], None] = lambda: None,
    ) -> bool:
        """Delete ``record`` at the provider, then drop its tracked row.

        ``call`` wraps the provider request (retries); ``checkpoint`` runs before
        the local commit and may abort it. Returns whether the provider still
        had the record.
        """

        def remove() -> bool:
            try:
                return provider.delete_record(record.provider_record_id)
            except ProviderNotFound:
                return False

        def forget(tx: Transaction, existed: bool) -> bool:
            checkpoint()
            self.records.delete(tx, record.provider, record.provider_record_id)
            return existed

        existed = self.transactions.apply_external(
            (lambda: call(remove)) if call else remove,
            forget,
            label=f"delete_{record.provider}",
        )
        if existed:
            logger.info(f"[{record.provider}] Deleted {record.type} {record.name}")
        else:
            logger.info(
                f"[{record.provider}] {record.type} {record.name} was already gone; untracked"
            )
        return existed
