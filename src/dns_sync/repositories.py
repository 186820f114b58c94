"""Provider cache and managed record repositories.

``dns_records`` is a disposable snapshot of everything a provider reports and is
replaced wholesale on each refresh. ``dns_tracked_records`` holds the records
this system is responsible for, along with their orphan lifecycle state.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from dns_sync.db import Session, Transaction, TransactionManager
from dns_sync.errors import PersistenceIntegrity
from dns_sync.migrations import (
    PROVIDER_CACHE_TABLE,
    PROVIDER_REFRESH_TABLE,
    TRACKED_RECORDS_TABLE,
    SchemaCapabilities,
)
from dns_sync.models import (
    DNSRecord,
    TrackedRecord,
    fingerprint,
    from_db_timestamp,
    normalize_name,
    to_db_timestamp,
    utc_now,
)

if TYPE_CHECKING:
    from dns_sync.providers import DNSProvider

logger = logging.getLogger(__name__)


class _Repository:
    def __init__(
        self,
        transactions: TransactionManager,
        capabilities: SchemaCapabilities,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transactions = transactions
        self.capabilities = capabilities
        self._clock = clock

    def _query(self, tx: Optional[Session], sql: str, params: tuple) -> List[sqlite3.Row]:
        if tx is not None:
            return tx.query(sql, params)
        with self.transactions.reader() as session:
            return session.query(sql, params)


# =============================================================================
# Provider Cache Repository
# =============================================================================


class ProviderCacheRepository(_Repository):
    """Snapshot of provider state, refreshed by replacing a provider's rows."""

    def __init__(
        self,
        transactions: TransactionManager,
        capabilities: SchemaCapabilities,
        *,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(transactions, capabilities, clock)
        capabilities.require("provider_cache")
        self.ttl = ttl

    def refresh(self, provider: DNSProvider) -> int:
        """Replace the cached rows for ``provider`` with its current record list.

        Provider errors propagate before anything is written, leaving the old
        snapshot in place.
        """
        records = provider.list_records()
        now = self._clock()

        rows: Dict[str, DNSRecord] = {}
        for record in records:
            if record.id in rows:
                logger.warning(f"{provider.name} reported record id {record.id} twice; keeping the last")
            rows[record.id] = DNSRecord.from_provider(provider.name, record, now)

        self.transactions.run(
            lambda tx: self._replace(tx, provider.name, list(rows.values()), now),
            label=f"refresh_{provider.name}",
        )
        logger.info(f"Refreshed provider cache for {provider.name}: {len(rows)} records")
        return len(rows)

    def _replace(
        self, tx: Transaction, provider: str, rows: List[DNSRecord], refreshed_at: datetime
    ) -> None:
        tx.execute(f"DELETE FROM {PROVIDER_CACHE_TABLE} WHERE provider = ?", (provider,))
        if self.capabilities.provider_refresh:
            tx.execute(
                f"""
                INSERT INTO {PROVIDER_REFRESH_TABLE} (provider, refreshed_at, record_count)
                VALUES (?, ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    refreshed_at = excluded.refreshed_at,
                    record_count = excluded.record_count
                """,
                (provider, to_db_timestamp(refreshed_at), len(rows)),
            )
        if not rows:
            return

        columns = ["provider", "record_id", "type", "name", "content", "ttl", "proxied"]
        if self.capabilities.cache_fingerprint:
            columns.append("fingerprint")
        if self.capabilities.cache_last_refreshed:
            columns.append("last_refreshed")

        values = []
        for row in rows:
            value: List[Any] = [
                row.provider,
                row.provider_record_id,
                row.type,
                row.name,
                row.content,
                row.ttl,
                1 if row.proxied else 0,
            ]
            if self.capabilities.cache_fingerprint:
                value.append(row.fingerprint)
            if self.capabilities.cache_last_refreshed:
                value.append(to_db_timestamp(row.last_refreshed or self._clock()))
            values.append(value)

        placeholders = ", ".join("?" for _ in columns)
        tx.executemany(
            f"INSERT INTO {PROVIDER_CACHE_TABLE} ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )

    def needs_refresh(self, provider: str) -> bool:
        last = self.last_refreshed(provider)
        if last is None:
            return True
        return self._clock() - last >= self.ttl

    def ensure_fresh(self, provider: DNSProvider, *, force: bool = False) -> bool:
        """Refresh when forced or when the TTL has expired. Returns True if refreshed."""
        if not force and not self.needs_refresh(provider.name):
            logger.debug(f"Provider cache for {provider.name} is fresh")
            return False
        self.refresh(provider)
        return True

    def last_refreshed(self, provider: str) -> Optional[datetime]:
        """When ``provider`` was last refreshed, including refreshes that found no records."""
        if self.capabilities.provider_refresh:
            rows = self._query(
                None,
                f"SELECT refreshed_at FROM {PROVIDER_REFRESH_TABLE} WHERE provider = ?",
                (provider,),
            )
            return from_db_timestamp(rows[0]["refreshed_at"]) if rows else None
        # Older schemas only know the refresh time through the cached rows.
        if not self.capabilities.cache_last_refreshed:
            return None
        rows = self._query(
            None,
            f"SELECT MAX(last_refreshed) AS last_refreshed FROM {PROVIDER_CACHE_TABLE} "
            f"WHERE provider = ?",
            (provider,),
        )
        return from_db_timestamp(rows[0]["last_refreshed"]) if rows else None

    def lookup(
        self, provider: str, record_type: str, name: str, tx: Optional[Session] = None
    ) -> Optional[DNSRecord]:
        rows = self._query(
            tx,
            f"SELECT * FROM {PROVIDER_CACHE_TABLE} WHERE provider = ? AND type = ? AND name = ? "
            f"ORDER BY id ASC LIMIT 1",
            (provider, record_type.upper(), normalize_name(name)),
        )
        return self._to_record(rows[0]) if rows else None

    def list(self, provider: str, tx: Optional[Session] = None) -> List[DNSRecord]:
        rows = self._query(
            tx,
            f"SELECT * FROM {PROVIDER_CACHE_TABLE} WHERE provider = ? ORDER BY name ASC, type ASC",
            (provider,),
        )
        return [self._to_record(row) for row in rows]

    def count(self, provider: str) -> int:
        rows = self._query(
            None,
            f"SELECT COUNT(*) AS n FROM {PROVIDER_CACHE_TABLE} WHERE provider = ?",
            (provider,),
        )
        return int(rows[0]["n"])

    def _to_record(self, row: sqlite3.Row) -> DNSRecord:
        keys = row.keys()
        ttl = int(row["ttl"] or 0)
        proxied = bool(row["proxied"])
        content = row["content"] or ""
        stored = row["fingerprint"] if "fingerprint" in keys else None
        return DNSRecord(
            provider=row["provider"],
            provider_record_id=row["record_id"],
            type=row["type"],
            name=row["name"],
            content=content,
            ttl=ttl,
            proxied=proxied,
            fingerprint=stored or fingerprint(row["type"], row["name"], content, ttl, proxied),
            last_refreshed=(
                from_db_timestamp(row["last_refreshed"]) if "last_refreshed" in keys else None
            ),
        )


# =============================================================================
# Managed Record Repository
# =============================================================================


class ManagedRecordRepository(_Repository):
    """Records this system creates, updates and deletes.

    Mutations take the caller's transaction so several calls can commit as one
    unit. Writes that would break the orphan flag/timestamp pairing are rejected
    with ``PersistenceIntegrity``.
    """

    def __init__(
        self,
        transactions: TransactionManager,
        capabilities: SchemaCapabilities,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(transactions, capabilities, clock)
        capabilities.require("tracked_records")

    @staticmethod
    def validate(record: TrackedRecord) -> None:
        if not record.provider or not record.provider_record_id:
            raise PersistenceIntegrity("Tracked record needs a provider and a provider record id")
        if not record.type or not record.name:
            raise PersistenceIntegrity(
                f"Tracked record {record.provider_record_id} needs a type and a name"
            )
        if record.is_orphaned and record.orphaned_at is None:
            raise PersistenceIntegrity(
                f"Tracked record {record.name} ({record.type}) is orphaned without orphaned_at"
            )
        if not record.is_orphaned and record.orphaned_at is not None:
            raise PersistenceIntegrity(
                f"Tracked record {record.name} ({record.type}) has orphaned_at but is not orphaned"
            )

    # -- reads ---------------------------------------------------------------

    def get(
        self, provider: str, provider_record_id: str, tx: Optional[Session] = None
    ) -> Optional[TrackedRecord]:
        rows = self._query(
            tx,
            f"SELECT * FROM {TRACKED_RECORDS_TABLE} WHERE provider = ? AND record_id = ?",
            (provider, provider_record_id),
        )
        return self._to_record(rows[0]) if rows else None

    def find(
        self, provider: str, record_type: str, name: str, tx: Optional[Session] = None
    ) -> Optional[TrackedRecord]:
        rows = self._query(
            tx,
            f"SELECT * FROM {TRACKED_RECORDS_TABLE} WHERE provider = ? AND type = ? AND name = ? "
            f"ORDER BY id ASC LIMIT 1",
            (provider, record_type.upper(), normalize_name(name)),
        )
        return self._to_record(rows[0]) if rows else None

    def list(
        self,
        provider: str,
        tx: Optional[Session] = None,
        *,
        orphaned: Optional[bool] = None,
    ) -> List[TrackedRecord]:
        sql = f"SELECT * FROM {TRACKED_RECORDS_TABLE} WHERE provider = ?"
        params: List[Any] = [provider]
        if orphaned is not None:
            sql += " AND is_orphaned = ?"
            params.append(1 if orphaned else 0)
        sql += " ORDER BY name ASC, type ASC"
        return [self._to_record(row) for row in self._query(tx, sql, tuple(params))]

    def list_orphaned_older_than(
        self,
        duration: timedelta,
        *,
        provider: Optional[str] = None,
        now: Optional[datetime] = None,
        tx: Optional[Session] = None,
    ) -> List[TrackedRecord]:
        """Orphaned records whose ``orphaned_at`` is at least ``duration`` ago."""
        cutoff = (now or self._clock()) - duration
        sql = f"SELECT * FROM {TRACKED_RECORDS_TABLE} WHERE is_orphaned = 1 AND orphaned_at <= ?"
        params: List[Any] = [to_db_timestamp(cutoff)]
        if provider is not None:
            sql += " AND provider = ?"
            params.append(provider)
        sql += " ORDER BY orphaned_at ASC"
        return [self._to_record(row) for row in self._query(tx, sql, tuple(params))]

    # -- writes --------------------------------------------------------------

    def upsert(self, tx: Transaction, record: TrackedRecord) -> TrackedRecord:
        """Insert or update by ``(provider, record_id)``.

        An existing row keeps its ``tracked_at`` and stays app-managed once it
        has been app-managed.
        """
        self.validate(record)
        now = self._clock()

        columns = [
            "provider",
            "record_id",
            "type",
            "name",
            "content",
            "ttl",
            "proxied",
            "is_orphaned",
            "orphaned_at",
            "tracked_at",
            "app_managed",
        ]
        values: List[Any] = [
            record.provider,
            record.provider_record_id,
            record.type.upper(),
            normalize_name(record.name),
            record.content,
            int(record.ttl),
            1 if record.proxied else 0,
            1 if record.is_orphaned else 0,
            to_db_timestamp(record.orphaned_at) if record.orphaned_at else None,
            to_db_timestamp(record.tracked_at or now),
            1 if record.app_managed else 0,
        ]
        updates = [
            "type = excluded.type",
            "name = excluded.name",
            "content = excluded.content",
            "ttl = excluded.ttl",
            "proxied = excluded.proxied",
            "is_orphaned = excluded.is_orphaned",
            "orphaned_at = excluded.orphaned_at",
            f"app_managed = MAX({TRACKED_RECORDS_TABLE}.app_managed, excluded.app_managed)",
        ]
        if self.capabilities.tracked_updated_at:
            columns.append("updated_at")
            values.append(to_db_timestamp(record.updated_at or now))
            updates.append("updated_at = excluded.updated_at")
        if self.capabilities.tracked_metadata:
            columns.append("metadata")
            values.append(
                json.dumps({"appManaged": record.app_managed, "source": record.source}, sort_keys=True)
            )
            updates.append("metadata = excluded.metadata")

        placeholders = ", ".join("?" for _ in columns)
        tx.execute(
            f"""
            INSERT INTO {TRACKED_RECORDS_TABLE} ({', '.join(columns)})
            VALUES ({placeholders})
            ON CONFLICT(provider, record_id) DO UPDATE SET {', '.join(updates)}
            """,
            values,
        )
        stored = self.get(record.provider, record.provider_record_id, tx)
        if stored is None:
            raise PersistenceIntegrity(
                f"Record {record.provider}/{record.provider_record_id} missing after upsert"
            )
        return stored

    def _require(self, tx: Transaction, provider: str, provider_record_id: str) -> TrackedRecord:
        existing = self.get(provider, provider_record_id, tx)
        if existing is None:
            raise PersistenceIntegrity(f"Record {provider}/{provider_record_id} is not tracked")
        return existing

    def mark_orphaned(
        self, tx: Transaction, provider: str, provider_record_id: str, at: datetime
    ) -> TrackedRecord:
        existing = self._require(tx, provider, provider_record_id)
        if existing.is_orphaned:
            return existing
        self._set_orphan_state(tx, existing.orphaned(at))
        return self._require(tx, provider, provider_record_id)

    def clear_orphaned(
        self,
        tx: Transaction,
        provider: str,
        provider_record_id: str,
        at: Optional[datetime] = None,
    ) -> TrackedRecord:
        existing = self._require(tx, provider, provider_record_id)
        if not existing.is_orphaned:
            return existing
        self._set_orphan_state(tx, existing.reactivated(at or self._clock()))
        return self._require(tx, provider, provider_record_id)

    def _set_orphan_state(self, tx: Transaction, record: TrackedRecord) -> None:
        self.validate(record)
        sets = ["is_orphaned = ?", "orphaned_at = ?"]
        params: List[Any] = [
            1 if record.is_orphaned else 0,
            to_db_timestamp(record.orphaned_at) if record.orphaned_at else None,
        ]
        if self.capabilities.tracked_updated_at:
            sets.append("updated_at = ?")
            params.append(to_db_timestamp(record.updated_at or self._clock()))
        params.extend([record.provider, record.provider_record_id])
        tx.execute(
            f"UPDATE {TRACKED_RECORDS_TABLE} SET {', '.join(sets)} "
            f"WHERE provider = ? AND record_id = ?",
            params,
        )

    def delete(self, tx: Transaction, provider: str, provider_record_id: str) -> bool:
        cursor = tx.execute(
            f"DELETE FROM {TRACKED_RECORDS_TABLE} WHERE provider = ? AND record_id = ?",
            (provider, provider_record_id),
        )
        return cursor.rowcount > 0

    def update_record_id(
        self, tx: Transaction, old_record_id: str, record: TrackedRecord
    ) -> TrackedRecord:
        """Re-key a tracked row after the provider assigned a new record id."""
        if old_record_id != record.provider_record_id:
            self.delete(tx, record.provider, old_record_id)
        return self.upsert(tx, record)

    def _to_record(self, row: sqlite3.Row) -> TrackedRecord:
        keys = row.keys()
        source = ""
        if "metadata" in keys and row["metadata"]:
            try:
                source = str(json.loads(row["metadata"]).get("source", ""))
            except (ValueError, AttributeError):
                logger.warning(f"Ignoring unreadable metadata on tracked record {row['record_id']}")
        return TrackedRecord(
            provider=row["provider"],
            provider_record_id=row["record_id"],
            type=row["type"],
            name=row["name"],
            content=row["content"] or "",
            ttl=int(row["ttl"] or 0),
            proxied=bool(row["proxied"]),
            is_orphaned=bool(row["is_orphaned"]),
            orphaned_at=from_db_timestamp(row["orphaned_at"]),
            tracked_at=from_db_timestamp(row["tracked_at"]),
            updated_at=from_db_timestamp(row["updated_at"]) if "updated_at" in keys else None,
            app_managed=bool(row["app_managed"]),
            source=source,
        )
