"""Exception classes for dns-sync.

Exception Hierarchy:
    DNSSyncError (Base)
    ├─ ConfigError              - Invalid or missing configuration
    ├─ ProviderError            - DNS provider API communication
    │  ├─ ProviderTransient     - Network blips, 5xx (retried with backoff)
    │  │  └─ RateLimited        - Provider throttling (429)
    │  ├─ ProviderConflict      - Record already exists (adoption path)
    │  ├─ ProviderAuth          - Unauthorized/forbidden (fatal for the pass)
    │  ├─ ProviderValidation    - Malformed record (record skipped)
    │  └─ ProviderNotFound      - Record does not exist (delete is idempotent)
    ├─ PersistenceError         - Embedded store failures
    │  ├─ PersistenceBusy       - Database busy/locked (retried)
    │  ├─ PersistenceIntegrity  - Invariant or constraint violation
    │  └─ LockTimeout           - Writer or migration lock not acquired in time
    ├─ MigrationFailure         - Schema migration rolled back
    └─ PassCancelled            - Reconciliation pass cancelled mid-flight
"""

from __future__ import annotations


class DNSSyncError(Exception):
    """Base exception for all dns-sync errors."""

    pass


class ConfigError(DNSSyncError):
    """Configuration error (bad environment value, unknown provider)."""

    pass


class ProviderError(DNSSyncError):
    """DNS provider API call failed."""

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class ProviderTransient(ProviderError):
    """Temporary provider failure, safe to retry."""

    pass


class RateLimited(ProviderTransient):
    """Provider rejected the call because of rate limiting."""

    pass


class ProviderConflict(ProviderError):
    """Record already exists on the provider."""

    pass


class ProviderAuth(ProviderError):
    """Provider rejected our credentials."""

    pass


class ProviderValidation(ProviderError):
    """Provider rejected the record as malformed."""

    pass


class ProviderNotFound(ProviderError):
    """Record does not exist on the provider."""

    pass


class PersistenceError(DNSSyncError):
    """Embedded store operation failed."""

    pass


class PersistenceBusy(PersistenceError):
    """Store is busy or locked by another writer."""

    pass


class PersistenceIntegrity(PersistenceError):
    """Write rejected because it would break a data invariant."""

    pass


class LockTimeout(PersistenceError):
    """Lock could not be acquired before the timeout expired."""

    pass


class MigrationFailure(DNSSyncError):
    """A schema migration failed and was rolled back."""

    def __init__(self, message: str, migration: str = ""):
        super().__init__(message)
        self.migration = migration


class PassCancelled(DNSSyncError):
    """Reconciliation pass was cancelled before it finished."""

    pass
