"""Environment configuration for dns-sync.

Environment variables:

    Providers:
        DNS_PROVIDERS          Comma-separated providers to reconcile (default: adguard)
                               Supported: adguard, cloudflare

    AdGuard DNS Provider:
        ADGUARD_URL            AdGuard Home base URL (default: http://adguard)
        ADGUARD_USERNAME       Admin username (optional)
        ADGUARD_PASSWORD       Admin password (optional)

    Cloudflare DNS Provider:
        CLOUDFLARE_TOKEN       API token with DNS edit permission
        CLOUDFLARE_ZONE_ID     Zone identifier

    Discovery:
        DISCOVERY_CONFIG_PATH  YAML file, or directory of *.yaml files, listing desired
                               records (default: /config/records)
                               Example config file:
                                 records:
                                   - provider: "adguard"
                                     type: "A"
                                     name: "app.example.com"
                                     content: "10.0.0.5"
                                     ttl: 300
                                     proxied: false
        DNS_DEFAULT_TTL        TTL for entries without one (default: 300)
        DNS_DEFAULT_PROXIED    Proxied flag for entries without one (default: false)

    Persistence:
        DATABASE_PATH                   SQLite database file (default: /data/dns-sync.db)
        DB_ACQUIRE_TIMEOUT_SECONDS      Wait for the single writer (default: 30)
        DB_BUSY_RETRIES                 Attempts for busy/locked writes (default: 5)
        DB_READERS                      Reader connections (default: 4)
        MIGRATION_LOCK_PATH             Migration lock file (default: DATABASE_PATH + .migration.lock)
        MIGRATION_LOCK_TIMEOUT_SECONDS  Wait for the migration lock (default: 10)
        MIGRATION_LOCK_STALE_SECONDS    Lock age presumed abandoned (default: 120)

    Reconciliation:
        DNS_CACHE_REFRESH_INTERVAL  Provider cache TTL in seconds (default: 3600)
        CLEANUP_ORPHANED            Delete orphaned records after the grace period (default: true)
        CLEANUP_GRACE_PERIOD        Grace period in minutes (default: 15)
        PRESERVED_HOSTNAMES         Comma-separated patterns never orphaned or deleted.
                                    Supports three formats:
                                      - Exact domain: "auth.example.com"
                                      - Wildcard (fnmatch-style): "*.internal.*", "dev-*"
                                      - Regex (prefix with ~): "~^staging-\\d+\\.example\\.com$"
        PROVIDER_RETRIES            Attempts for transient provider errors (default: 3)

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS  Poll interval in watch mode (default: 60)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List, Mapping, Optional, Tuple

from dns_sync.errors import ConfigError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("adguard", "cloudflare")

# =============================================================================
# Parsing Helpers
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and not value.strip():
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'")


def _parse_list(value: str) -> List[str]:
    return [item.strip().lower() for item in (value or "").split(",") if item.strip()]


def _parse_hostname_patterns(value: str) -> List[re.Pattern]:
    """Parse hostname patterns (exact, wildcard or ~regex) from an env var."""
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                regex_str = re.escape(item)
                regex_str = regex_str.replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added hostname pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid hostname pattern '{item}': {e}")

    return patterns


def _matches_any(hostname: str, patterns: List[re.Pattern]) -> bool:
    for pattern in patterns:
        if pattern.search(hostname):
            return True
    return False


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True)
class Settings:
    providers: Tuple[str, ...] = ("adguard",)

    adguard_url: str = "http://adguard"
    adguard_username: str = ""
    adguard_password: str = ""

    cloudflare_token: str = ""
    cloudflare_zone_id: str = ""

    discovery_config_path: str = "/config/records"
    default_ttl: int = 300
    default_proxied: bool = False

    database_path: str = "/data/dns-sync.db"
    db_acquire_timeout_seconds: float = 30.0
    db_busy_retries: int = 5
    db_readers: int = 4
    migration_lock_path: str = ""
    migration_lock_timeout_seconds: float = 10.0
    migration_lock_stale_seconds: float = 120.0

    cache_refresh_interval_seconds: int = 3600
    cleanup_orphaned: bool = True
    cleanup_grace_period_minutes: int = 15
    preserved_patterns: Tuple[re.Pattern, ...] = field(default_factory=tuple)
    provider_retries: int = 3

    sync_mode: str = "watch"
    poll_interval_seconds: int = 60
    log_level: str = "INFO"

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.cleanup_grace_period_minutes)

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_refresh_interval_seconds)

    @property
    def lock_path(self) -> str:
        return self.migration_lock_path or f"{self.database_path}.migration.lock"

    def is_preserved(self, hostname: str) -> bool:
        return _matches_any(hostname, list(self.preserved_patterns))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        database_path = env.get("DATABASE_PATH", "/data/dns-sync.db")
        return cls(
            providers=tuple(_parse_list(env.get("DNS_PROVIDERS", "adguard"))),
            adguard_url=env.get("ADGUARD_URL", "http://adguard"),
            adguard_username=env.get("ADGUARD_USERNAME", ""),
            adguard_password=env.get("ADGUARD_PASSWORD", ""),
            cloudflare_token=env.get("CLOUDFLARE_TOKEN", ""),
            cloudflare_zone_id=env.get("CLOUDFLARE_ZONE_ID", ""),
            discovery_config_path=env.get("DISCOVERY_CONFIG_PATH", "/config/records"),
            default_ttl=_parse_int(env, "DNS_DEFAULT_TTL", 300),
            default_proxied=_parse_bool(env.get("DNS_DEFAULT_PROXIED"), default=False),
            database_path=database_path,
            db_acquire_timeout_seconds=float(_parse_int(env, "DB_ACQUIRE_TIMEOUT_SECONDS", 30)),
            db_busy_retries=_parse_int(env, "DB_BUSY_RETRIES", 5),
            db_readers=_parse_int(env, "DB_READERS", 4),
            migration_lock_path=env.get("MIGRATION_LOCK_PATH", ""),
            migration_lock_timeout_seconds=float(
                _parse_int(env, "MIGRATION_LOCK_TIMEOUT_SECONDS", 10)
            ),
            migration_lock_stale_seconds=float(_parse_int(env, "MIGRATION_LOCK_STALE_SECONDS", 120)),
            cache_refresh_interval_seconds=_parse_int(env, "DNS_CACHE_REFRESH_INTERVAL", 3600),
            cleanup_orphaned=_parse_bool(env.get("CLEANUP_ORPHANED"), default=True),
            cleanup_grace_period_minutes=_parse_int(env, "CLEANUP_GRACE_PERIOD", 15),
            preserved_patterns=tuple(_parse_hostname_patterns(env.get("PRESERVED_HOSTNAMES", ""))),
            provider_retries=_parse_int(env, "PROVIDER_RETRIES", 3),
            sync_mode=env.get("SYNC_MODE", "watch").strip().lower(),
            poll_interval_seconds=_parse_int(env, "POLL_INTERVAL_SECONDS", 60),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty when valid)."""
        errors: List[str] = []

        if not self.providers:
            errors.append("DNS_PROVIDERS must name at least one provider")
        for name in self.providers:
            if name not in SUPPORTED_PROVIDERS:
                errors.append(
                    f"Unsupported DNS provider: '{name}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}"
                )

        if "adguard" in self.providers:
            if not self.adguard_url:
                errors.append("ADGUARD_URL is required when DNS_PROVIDERS includes adguard")
            if not self.adguard_username or not self.adguard_password:
                logger.warning("ADGUARD_USERNAME/PASSWORD not set. Using unauthenticated access.")

        if "cloudflare" in self.providers:
            if not self.cloudflare_token:
                errors.append("CLOUDFLARE_TOKEN is required when DNS_PROVIDERS includes cloudflare")
            if not self.cloudflare_zone_id:
                errors.append(
                    "CLOUDFLARE_ZONE_ID is required when DNS_PROVIDERS includes cloudflare"
                )

        if self.cleanup_grace_period_minutes < 0:
            errors.append("CLEANUP_GRACE_PERIOD must not be negative")
        if self.db_busy_retries < 1:
            errors.append("DB_BUSY_RETRIES must be at least 1")
        if self.provider_retries < 1:
            errors.append("PROVIDER_RETRIES must be at least 1")
        if self.sync_mode not in ("once", "watch"):
            errors.append(f"Invalid SYNC_MODE: {self.sync_mode}. Use 'once' or 'watch'")

        return errors
