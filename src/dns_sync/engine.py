"""Reconciliation engine.

One pass per provider:

    1. Refresh the provider cache when its TTL expired (or when forced).
    2. Read the desired set from discovery.
    3. Diff desired records against tracked records and the provider cache.
    4. Apply local transitions (adoption, reactivation, orphaning) in one
       transaction, one savepoint per record.
    5. Create/update records at the provider (batched when supported) and
       commit each result locally once the provider call succeeded.
    6. Delete orphans whose grace period expired.
    7. Emit a pass summary to the audit sink.

Passes for different providers run concurrently on worker threads; passes for
the same provider are serialized.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from dns_sync.audit import AuditSink, LoggingAuditSink
from dns_sync.db import Transaction
from dns_sync.discovery import DiscoverySource
from dns_sync.errors import (
    PassCancelled,
    PersistenceError,
    PersistenceIntegrity,
    ProviderAuth,
    ProviderConflict,
    ProviderError,
    ProviderNotFound,
    ProviderTransient,
    ProviderValidation,
)
from dns_sync.lifecycle import OrphanLifecycleManager
from dns_sync.models import (
    AuditAction,
    AuditEvent,
    DesiredRecord,
    DNSRecord,
    PassSummary,
    ProviderRecord,
    RecordKey,
    TrackedRecord,
    utc_now,
)
from dns_sync.providers import DNSProvider, find_provider_record
from dns_sync.repositories import ManagedRecordRepository, ProviderCacheRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COUNTERS = {
    AuditAction.CREATE: "created",
    AuditAction.UPDATE: "updated",
    AuditAction.ADOPT: "adopted",
    AuditAction.ORPHAN: "orphaned",
    AuditAction.REACTIVATE: "reactivated",
    AuditAction.DELETE: "deleted",
}


def _preferred(candidates: List[TrackedRecord], desired: DesiredRecord) -> Optional[TrackedRecord]:
    """The row that already matches wins, then one this system created."""
    if not candidates:
        return None
    return min(candidates, key=lambda r: (not r.matches(desired), not r.app_managed))


@dataclass
class ReconcilePlan:
    """Diff of one provider's desired set against its tracked records."""

    creates: List[Tuple[DesiredRecord, Optional[TrackedRecord]]] = field(default_factory=list)
    updates: List[Tuple[DesiredRecord, TrackedRecord]] = field(default_factory=list)
    unchanged: List[TrackedRecord] = field(default_factory=list)
    adopt: List[TrackedRecord] = field(default_factory=list)
    reactivate: List[TrackedRecord] = field(default_factory=list)
    untrack: List[TrackedRecord] = field(default_factory=list)
    orphan: List[TrackedRecord] = field(default_factory=list)

    @property
    def has_local_changes(self) -> bool:
        return bool(self.adopt or self.reactivate or self.untrack or self.orphan)

    def describe(self) -> str:
        return (
            f"{len(self.creates)} to create, {len(self.updates)} to update, "
            f"{len(self.unchanged)} unchanged, {len(self.adopt)} to adopt, "
            f"{len(self.reactivate)} to reactivate, {len(self.orphan)} to orphan"
        )


@dataclass
class _PassState:
    provider: DNSProvider
    summary: PassSummary
    wrote: bool = False


class ReconciliationEngine:
    def __init__(
        self,
        providers: Iterable[DNSProvider],
        discovery: DiscoverySource,
        cache: ProviderCacheRepository,
        records: ManagedRecordRepository,
        lifecycle: OrphanLifecycleManager,
        *,
        audit: Optional[AuditSink] = None,
        provider_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 10.0,
        max_workers: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.providers: Dict[str, DNSProvider] = {p.name: p for p in providers}
        self.discovery = discovery
        self.cache = cache
        self.records = records
        self.lifecycle = lifecycle
        self.transactions = records.transactions
        self.audit = audit or LoggingAuditSink()
        self.provider_retries = max(1, provider_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_workers = max_workers
        self._clock = clock

        self._stop = threading.Event()
        self._locks = {name: threading.Lock() for name in self.providers}
        # Providers whose cache must be refreshed on their next pass.
        self._stale: Set[str] = set(self.providers)
        self._stale_lock = threading.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def cancel(self) -> None:
        """Stop in-flight passes at their next checkpoint."""
        if not self._stop.is_set():
            logger.info("Cancelling reconciliation")
        self._stop.set()

    def sync_once(self, force_refresh: bool = False) -> Dict[str, PassSummary]:
        """Run one pass for every provider concurrently."""
        if not self.providers:
            return {}

        results: Dict[str, PassSummary] = {}
        workers = self.max_workers or len(self.providers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            futures = {
                pool.submit(self.reconcile_provider, name, force_refresh): name
                for name in self.providers
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.error(f"[{name}] Reconciliation crashed: {e}", exc_info=True)
                    now = self._clock()
                    results[name] = PassSummary(
                        provider=name, started_at=now, finished_at=now, status="failed", error=str(e)
                    )
        return {name: results[name] for name in self.providers}

    def reconcile_provider(self, name: str, force_refresh: bool = False) -> PassSummary:
        provider = self.providers[name]
        summary = PassSummary(provider=name, started_at=self._clock())
        state = _PassState(provider=provider, summary=summary)

        with self._locks[name]:
            try:
                self._reconcile(state, force_refresh)
                if summary.errors:
                    summary.status = "partial"
            except PassCancelled:
                summary.status = "cancelled"
                logger.warning(f"[{name}] Pass cancelled; uncommitted work discarded")
            except ProviderAuth as e:
                summary.status = "failed"
                summary.error = str(e)
                logger.error(f"[{name}] Authentication failed, aborting pass: {e}")
                self._emit(
                    AuditEvent(AuditAction.ERROR, name, "", "", timestamp=self._clock(), error=str(e))
                )
            except (ProviderError, PersistenceError) as e:
                summary.status = "failed"
                summary.error = str(e)
                logger.error(f"[{name}] Pass failed: {e}")
                self._emit(
                    AuditEvent(AuditAction.ERROR, name, "", "", timestamp=self._clock(), error=str(e))
                )
            finally:
                summary.finished_at = self._clock()
                if state.wrote:
                    self._mark_stale(name)

        self._emit_summary(summary)
        return summary

    # =========================================================================
    # Pass Steps
    # =========================================================================

    def _reconcile(self, state: _PassState, force_refresh: bool) -> None:
        provider = state.provider
        name = provider.name

        self._checkpoint()
        refreshed_at = self._refresh_cache(state, force_refresh)

        self._checkpoint()
        desired = self._desired(name)
        tracked = self.records.list(name)
        cache = self.cache.list(name)

        plan = self.plan(name, desired, tracked, cache, refreshed_at)
        logger.debug(f"[{name}] Plan: {plan.describe()}")
        state.summary.unchanged = len(plan.unchanged)

        if plan.has_local_changes:
            self._apply_local(state, plan)
        if plan.creates or plan.updates:
            self._apply_changes(state, plan)
        self._delete_expired(state)

    def _refresh_cache(self, state: _PassState, force: bool) -> Optional[datetime]:
        """Refresh the cache if due. Returns the refresh start time when it ran."""
        provider = state.provider
        with self._stale_lock:
            force = force or provider.name in self._stale

        started = self._clock()
        try:
            refreshed = self._call(
                provider, "cache refresh", lambda: self.cache.ensure_fresh(provider, force=force)
            )
        except ProviderAuth:
            raise
        except ProviderError as e:
            state.summary.errors += 1
            logger.warning(f"[{provider.name}] Cache refresh failed, keeping previous snapshot: {e}")
            return None

        if not refreshed:
            return None
        with self._stale_lock:
            self._stale.discard(provider.name)
        return started

    def _desired(self, name: str) -> List[DesiredRecord]:
        records: Dict[RecordKey, DesiredRecord] = {}
        for record in self.discovery.desired_records(name):
            existing = records.get(record.key)
            if existing is not None and existing != record:
                logger.warning(
                    f"[{name}] Conflicting definitions for {record.type} {record.name}; using the last one"
                )
            records[record.key] = record
        return list(records.values())

    def plan(
        self,
        name: str,
        desired: List[DesiredRecord],
        tracked: List[TrackedRecord],
        cache: List[DNSRecord],
        refreshed_at: Optional[datetime] = None,
    ) -> ReconcilePlan:
        """Partition records into the changes a pass has to make.

        Drift is only judged when ``refreshed_at`` is set: a tracked record
        missing from a cache refreshed after its last change is gone at the
        provider.

        Several provider records may share a type and name (round-robin
        answers). One of them stands for the desired record; the others are
        adopted and left alone.
        """
        plan = ReconcilePlan()
        now = self._clock()

        tracked_by_key: Dict[RecordKey, List[TrackedRecord]] = {}
        for record in tracked:
            tracked_by_key.setdefault(record.key, []).append(record)
        tracked_ids = {record.provider_record_id for record in tracked}

        cache_by_key: Dict[RecordKey, List[DNSRecord]] = {}
        for record in cache:
            if record.provider_record_id not in tracked_ids:
                cache_by_key.setdefault(record.key, []).append(record)
        cache_ids = {record.provider_record_id for record in cache}

        def missing(record: TrackedRecord) -> bool:
            if refreshed_at is None or record.provider_record_id in cache_ids:
                return False
            changed = record.updated_at or record.tracked_at
            return changed is not None and changed < refreshed_at

        chosen: Set[str] = set()
        for record in desired:
            current = _preferred(tracked_by_key.get(record.key, []), record)
            if current is not None:
                chosen.add(current.provider_record_id)

            if current is not None and missing(current):
                logger.warning(
                    f"[{name}] {record.type} {record.name} disappeared from the provider; re-creating"
                )
                plan.creates.append((record, current))
                continue

            if current is not None:
                if current.is_orphaned:
                    plan.reactivate.append(current)
                if not current.matches(record):
                    plan.updates.append((record, current))
                elif not current.is_orphaned:
                    plan.unchanged.append(current)
                continue

            candidates = cache_by_key.get(record.key, [])
            if candidates:
                existing = min(candidates, key=lambda c: c.fingerprint != record.fingerprint)
                chosen.add(existing.provider_record_id)
                adopted = self._adopted(name, existing, now)
                plan.adopt.append(adopted)
                if existing.fingerprint != record.fingerprint:
                    plan.updates.append((record, adopted))
                continue

            plan.creates.append((record, None))

        for existing in cache:
            record_id = existing.provider_record_id
            if record_id not in tracked_ids and record_id not in chosen:
                plan.adopt.append(self._adopted(name, existing, now))

        for record in tracked:
            if record.provider_record_id in chosen:
                continue
            if not record.app_managed and missing(record):
                plan.untrack.append(record)
            elif self.lifecycle.should_orphan(record):
                plan.orphan.append(record)

        return plan

    def _adopted(self, name: str, existing: DNSRecord, now: datetime) -> TrackedRecord:
        return TrackedRecord.from_provider(
            name,
            ProviderRecord(
                id=existing.provider_record_id,
                type=existing.type,
                name=existing.name,
                content=existing.content,
                ttl=existing.ttl,
                proxied=existing.proxied,
            ),
            app_managed=False,
            source="provider",
            now=now,
        )

    def _apply_local(self, state: _PassState, plan: ReconcilePlan) -> None:
        """Adoption, reactivation, untracking and orphaning, committed together."""
        name = state.provider.name
        self._checkpoint()

        steps: List[Tuple[str, TrackedRecord]] = (
            [("adopt", r) for r in plan.adopt]
            + [("reactivate", r) for r in plan.reactivate]
            + [("untrack", r) for r in plan.untrack]
            + [("orphan", r) for r in plan.orphan]
        )

        def apply(tx: Transaction, kind: str, record: TrackedRecord) -> Optional[AuditEvent]:
            if kind == "adopt":
                stored = self.records.upsert(tx, record)
                logger.info(f"[{name}] Adopted existing {record.type} {record.name}")
                return AuditEvent(
                    AuditAction.ADOPT, name, record.type, record.name,
                    after=stored.snapshot(), timestamp=self._clock(),
                )
            if kind == "reactivate":
                stored = self.lifecycle.reactivate(tx, record)
                return AuditEvent(
                    AuditAction.REACTIVATE, name, record.type, record.name,
                    before=record.snapshot(), after=stored.snapshot(), timestamp=self._clock(),
                )
            if kind == "untrack":
                self.records.delete(tx, name, record.provider_record_id)
                logger.info(f"[{name}] Untracked adopted {record.type} {record.name}; gone at the provider")
                return None
            stored = self.lifecycle.mark_orphaned(tx, record)
            return AuditEvent(
                AuditAction.ORPHAN, name, record.type, record.name,
                before=record.snapshot(), timestamp=self._clock(),
            )

        def work(tx: Transaction) -> Tuple[List[AuditEvent], int]:
            events: List[AuditEvent] = []
            failures = 0
            for kind, record in steps:
                try:
                    with tx.savepoint(kind) as sp:
                        event = apply(sp, kind, record)
                except PersistenceIntegrity as e:
                    failures += 1
                    logger.error(f"[{name}] Could not {kind} {record.type} {record.name}: {e}")
                    continue
                if event is not None:
                    events.append(event)
            self._checkpoint()
            return events, failures

        events, failures = self.transactions.run(work, label=f"local_{name}")
        state.summary.errors += failures
        for event in events:
            self._record(state, event)

    def _apply_changes(self, state: _PassState, plan: ReconcilePlan) -> None:
        provider = state.provider
        pending = len(plan.creates) + len(plan.updates)
        if provider.supports_batch and pending > 1 and self._apply_batch(state, plan):
            return

        for record, previous in plan.creates:
            self._isolated(state, record, lambda r=record, p=previous: self._create(state, r, p))
        for record, previous in plan.updates:
            self._isolated(state, record, lambda r=record, p=previous: self._update(state, r, p))

    def _isolated(self, state: _PassState, record: DesiredRecord, step: Callable[[], None]) -> None:
        """Run one record's change; only auth errors and cancellation escape."""
        name = state.provider.name
        try:
            step()
        except (ProviderAuth, PassCancelled):
            raise
        except ProviderValidation as e:
            state.summary.errors += 1
            logger.error(f"[{name}] Skipping invalid {record.type} {record.name}: {e}")
        except (ProviderError, PersistenceError) as e:
            state.summary.errors += 1
            logger.error(f"[{name}] Failed to apply {record.type} {record.name}: {e}")

    def _apply_batch(self, state: _PassState, plan: ReconcilePlan) -> bool:
        provider = state.provider
        name = provider.name
        items: List[Tuple[DesiredRecord, Optional[TrackedRecord], bool]] = (
            [(record, previous, True) for record, previous in plan.creates]
            + [(record, previous, False) for record, previous in plan.updates]
        )
        desired = [record for record, _, _ in items]

        def persist(tx: Transaction, ensured: List[ProviderRecord]) -> List[TrackedRecord]:
            return [
                self._persist(tx, name, result, previous, app_managed=created)
                for (_, previous, created), result in zip(items, ensured)
            ]

        try:
            stored = self.transactions.apply_external(
                lambda: self._call(
                    provider,
                    f"batch of {len(desired)} records",
                    lambda: provider.batch_ensure_records(desired),
                ),
                persist,
                label=f"batch_{name}",
            )
        except ProviderAuth:
            raise
        except ProviderError as e:
            logger.warning(f"[{name}] Batch failed, falling back to individual calls: {e}")
            return False

        state.wrote = True
        for (record, previous, created), row in zip(items, stored):
            action = AuditAction.CREATE if created else AuditAction.UPDATE
            self._record(
                state,
                AuditEvent(
                    action, name, row.type, row.name,
                    before=previous.snapshot() if previous else None,
                    after=row.snapshot(), timestamp=self._clock(),
                ),
            )
        return True

    def _create(
        self, state: _PassState, record: DesiredRecord, previous: Optional[TrackedRecord]
    ) -> None:
        provider = state.provider
        name = provider.name
        try:
            stored = self.transactions.apply_external(
                lambda: self._call(
                    provider, f"create {record.type} {record.name}", lambda: provider.create_record(record)
                ),
                lambda tx, created: self._persist(tx, name, created, previous, app_managed=True),
                label=f"create_{name}",
            )
        except ProviderConflict:
            logger.info(f"[{name}] {record.type} {record.name} already exists; adopting it")
            self._adopt_existing(state, record, previous)
            return

        state.wrote = True
        self._record(
            state,
            AuditEvent(
                AuditAction.CREATE, name, stored.type, stored.name,
                before=previous.snapshot() if previous else None,
                after=stored.snapshot(), timestamp=self._clock(),
            ),
        )

    def _update(self, state: _PassState, record: DesiredRecord, previous: TrackedRecord) -> None:
        provider = state.provider
        name = provider.name
        try:
            stored = self.transactions.apply_external(
                lambda: self._call(
                    provider,
                    f"update {record.type} {record.name}",
                    lambda: provider.update_record(previous.provider_record_id, record),
                ),
                lambda tx, updated: self._persist(
                    tx, name, updated, previous, app_managed=previous.app_managed
                ),
                label=f"update_{name}",
            )
        except ProviderNotFound:
            logger.warning(f"[{name}] {record.type} {record.name} vanished before update; re-creating")
            self._create(state, record, previous)
            return

        state.wrote = True
        self._record(
            state,
            AuditEvent(
                AuditAction.UPDATE, name, stored.type, stored.name,
                before=previous.snapshot(), after=stored.snapshot(), timestamp=self._clock(),
            ),
        )

    def _adopt_existing(
        self, state: _PassState, record: DesiredRecord, previous: Optional[TrackedRecord]
    ) -> None:
        provider = state.provider
        name = provider.name

        def persist(tx: Transaction, found: Optional[ProviderRecord]) -> Optional[TrackedRecord]:
            if found is None:
                return None
            return self._persist(tx, name, found, previous, app_managed=False)

        stored = self.transactions.apply_external(
            lambda: self._call(
                provider, f"look up {record.type} {record.name}", lambda: find_provider_record(provider, record)
            ),
            persist,
            label=f"adopt_{name}",
        )
        if stored is None:
            raise ProviderError(
                f"{record.type} {record.name} reported as existing but could not be found", name
            )

        self._record(
            state,
            AuditEvent(
                AuditAction.ADOPT, name, stored.type, stored.name,
                after=stored.snapshot(), timestamp=self._clock(),
            ),
        )
        if not stored.matches(record):
            self._update(state, record, stored)

    def _persist(
        self,
        tx: Transaction,
        name: str,
        result: ProviderRecord,
        previous: Optional[TrackedRecord],
        *,
        app_managed: bool,
    ) -> TrackedRecord:
        # Results that arrive after cancellation are dropped with the transaction.
        self._checkpoint()
        row = TrackedRecord.from_provider(
            name,
            result,
            app_managed=app_managed,
            source=self.discovery.name if app_managed else "provider",
            now=self._clock(),
            previous=previous,
        )
        if previous is not None and previous.provider_record_id != result.id:
            logger.debug(
                f"[{name}] Record id changed {previous.provider_record_id} -> {result.id}"
            )
            return self.records.update_record_id(tx, previous.provider_record_id, row)
        return self.records.upsert(tx, row)

    def _delete_expired(self, state: _PassState) -> None:
        provider = state.provider
        name = provider.name
        for record in self.lifecycle.expired(name):
            self._checkpoint()
            try:
                self.lifecycle.delete(
                    provider,
                    record,
                    call=lambda fn, r=record: self._call(provider, f"delete {r.type} {r.name}", fn),
                    checkpoint=self._checkpoint,
                )
            except (ProviderAuth, PassCancelled):
                raise
            except (ProviderError, PersistenceError) as e:
                state.summary.errors += 1
                logger.error(f"[{name}] Failed to delete orphaned {record.type} {record.name}: {e}")
                continue

            state.wrote = True
            self._record(
                state,
                AuditEvent(
                    AuditAction.DELETE, name, record.type, record.name,
                    before=record.snapshot(), timestamp=self._clock(),
                ),
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _checkpoint(self) -> None:
        if self._stop.is_set():
            raise PassCancelled("Reconciliation pass cancelled")

    def _call(self, provider: DNSProvider, action: str, fn: Callable[[], T]) -> T:
        """Call the provider, retrying transient failures with exponential backoff."""
        attempt = 0
        while True:
            attempt += 1
            self._checkpoint()
            try:
                result = fn()
            except ProviderTransient as e:
                if attempt >= self.provider_retries:
                    raise
                delay = min(self.retry_max_delay, self.retry_base_delay * (2 ** (attempt - 1)))
                logger.warning(
                    f"[{provider.name}] {action} failed (attempt {attempt}/{self.provider_retries}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                if self._stop.wait(delay):
                    raise PassCancelled("Reconciliation pass cancelled during retry backoff")
                continue
            self._checkpoint()
            return result

    def _mark_stale(self, name: str) -> None:
        with self._stale_lock:
            self._stale.add(name)

    def _record(self, state: _PassState, event: AuditEvent) -> None:
        counter = _COUNTERS.get(event.action)
        if counter:
            setattr(state.summary, counter, getattr(state.summary, counter) + 1)
        self._emit(event)

    def _emit(self, event: AuditEvent) -> None:
        try:
            self.audit.emit(event)
        except Exception as e:
            logger.warning(f"Audit sink failed for {event.action.value} {event.name}: {e}")

    def _emit_summary(self, summary: PassSummary) -> None:
        try:
            self.audit.emit_summary(summary)
        except Exception as e:
            logger.warning(f"Audit sink failed for {summary.provider} summary: {e}")
