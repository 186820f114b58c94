"""Record types shared by the repositories, providers and the reconciliation engine."""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# =============================================================================
# Time Helpers
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601 so stored values sort as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# =============================================================================
# Fingerprints
# =============================================================================

RecordKey = Tuple[str, str]


def normalize_name(name: str) -> str:
    return name.strip().rstrip(".").lower()


def record_key(record_type: str, name: str) -> RecordKey:
    return (record_type.strip().upper(), normalize_name(name))


def fingerprint(record_type: str, name: str, content: str, ttl: int, proxied: bool) -> str:
    """Deterministic hash of a record's semantic fields."""
    parts = [
        record_type.strip().upper(),
        normalize_name(name),
        content,
        str(int(ttl)),
        "1" if proxied else "0",
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DesiredRecord:
    """A record that discovery says should exist."""

    type: str
    name: str
    content: str
    ttl: int
    proxied: bool = False

    @property
    def key(self) -> RecordKey:
        return record_key(self.type, self.name)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.type, self.name, self.content, self.ttl, self.proxied)


@dataclass(frozen=True)
class ProviderRecord:
    """A record as reported by a DNS provider API."""

    id: str
    type: str
    name: str
    content: str
    ttl: int = 1
    proxied: bool = False

    @property
    def key(self) -> RecordKey:
        return record_key(self.type, self.name)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.type, self.name, self.content, self.ttl, self.proxied)


@dataclass(frozen=True)
class DNSRecord:
    """Provider cache row: a snapshot of a provider record at refresh time."""

    provider: str
    provider_record_id: str
    type: str
    name: str
    content: str
    ttl: int
    proxied: bool
    fingerprint: str
    last_refreshed: Optional[datetime] = None

    @property
    def key(self) -> RecordKey:
        return record_key(self.type, self.name)

    @classmethod
    def from_provider(
        cls, provider: str, record: ProviderRecord, refreshed_at: datetime
    ) -> DNSRecord:
        return cls(
            provider=provider,
            provider_record_id=record.id,
            type=record.type.upper(),
            name=normalize_name(record.name),
            content=record.content,
            ttl=int(record.ttl),
            proxied=bool(record.proxied),
            fingerprint=record.fingerprint,
            last_refreshed=refreshed_at,
        )


@dataclass(frozen=True)
class TrackedRecord:
    """Managed record row: a record this system is responsible for."""

    provider: str
    provider_record_id: str
    type: str
    name: str
    content: str
    ttl: int
    proxied: bool = False
    is_orphaned: bool = False
    orphaned_at: Optional[datetime] = None
    tracked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    app_managed: bool = True
    source: str = ""

    @property
    def key(self) -> RecordKey:
        return record_key(self.type, self.name)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.type, self.name, self.content, self.ttl, self.proxied)

    def matches(self, desired: DesiredRecord) -> bool:
        return self.fingerprint == desired.fingerprint

    def snapshot(self) -> Dict[str, Any]:
        """Semantic fields only, as stored in audit events."""
        return {
            "id": self.provider_record_id,
            "type": self.type,
            "name": self.name,
            "content": self.content,
            "ttl": self.ttl,
            "proxied": self.proxied,
        }

    @classmethod
    def from_provider(
        cls,
        provider: str,
        record: ProviderRecord,
        *,
        app_managed: bool,
        source: str,
        now: datetime,
        previous: Optional[TrackedRecord] = None,
    ) -> TrackedRecord:
        """Build the row to persist after a provider call returned ``record``.

        ``previous`` carries over first-seen time and ownership of an existing row.
        """
        tracked_at = previous.tracked_at if previous and previous.tracked_at else now
        return cls(
            provider=provider,
            provider_record_id=record.id,
            type=record.type.upper(),
            name=normalize_name(record.name),
            content=record.content,
            ttl=int(record.ttl),
            proxied=bool(record.proxied),
            is_orphaned=False,
            orphaned_at=None,
            tracked_at=tracked_at,
            updated_at=now,
            app_managed=app_managed or bool(previous and previous.app_managed),
            source=source or (previous.source if previous else ""),
        )

    def orphaned(self, at: datetime) -> TrackedRecord:
        return replace(self, is_orphaned=True, orphaned_at=at, updated_at=at)

    def reactivated(self, at: datetime) -> TrackedRecord:
        return replace(self, is_orphaned=False, orphaned_at=None, updated_at=at)


@dataclass(frozen=True)
class MigrationRecord:
    version: int
    name: str
    applied_at: Optional[datetime]
    status: str


class AuditAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    ADOPT = "adopt"
    ORPHAN = "orphan"
    REACTIVATE = "reactivate"
    DELETE = "delete"
    ERROR = "error"


@dataclass(frozen=True)
class AuditEvent:
    """One applied change, handed to the audit sink."""

    action: AuditAction
    provider: str
    record_type: str
    name: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utc_now)
    error: str = ""


@dataclass
class PassSummary:
    """Counts for a single reconciliation pass of one provider."""

    provider: str
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    adopted: int = 0
    orphaned: int = 0
    reactivated: int = 0
    deleted: int = 0
    errors: int = 0
    status: str = "ok"
    error: str = ""

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = to_db_timestamp(self.started_at)
        data["finished_at"] = to_db_timestamp(self.finished_at) if self.finished_at else None
        return data

    def describe(self) -> str:
        return (
            f"{self.created} created, {self.updated} updated, {self.unchanged} unchanged, "
            f"{self.adopted} adopted, {self.orphaned} orphaned, {self.reactivated} reactivated, "
            f"{self.deleted} deleted, {self.errors} errors"
        )
