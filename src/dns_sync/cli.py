#!/usr/bin/env python3
"""dns-sync - keep DNS providers in line with a desired record set

Reads desired records from YAML discovery files and reconciles them into one or
more DNS providers, tracking what it manages in a local SQLite database so
records it created can be cleaned up after they disappear from the desired set.

Supported DNS Providers:
    - adguard: AdGuard Home DNS rewrites
    - cloudflare: Cloudflare DNS records

See ``dns_sync.config`` for the environment variables.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from dns_sync.audit import AuditSink, DatabaseAuditSink, LoggingAuditSink
from dns_sync.config import Settings
from dns_sync.db import ConnectionPool, TransactionManager
from dns_sync.discovery import DiscoverySource, FileDiscovery
from dns_sync.engine import ReconciliationEngine
from dns_sync.errors import ConfigError, PersistenceError
from dns_sync.lifecycle import OrphanLifecycleManager
from dns_sync.locks import FileLock
from dns_sync.migrations import MigrationResult, MigrationRunner, SchemaCapabilities
from dns_sync.models import utc_now
from dns_sync.providers import DNSProvider, create_dns_providers
from dns_sync.repositories import ManagedRecordRepository, ProviderCacheRepository

logger = logging.getLogger("dns_sync")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class Application:
    settings: Settings
    pool: ConnectionPool
    transactions: TransactionManager
    migrations: MigrationResult
    capabilities: SchemaCapabilities
    engine: ReconciliationEngine

    def close(self) -> None:
        self.pool.close()


def run_migrations(
    settings: Settings,
    transactions: TransactionManager,
    clock: Callable[[], datetime] = utc_now,
) -> MigrationResult:
    lock = FileLock(
        settings.lock_path,
        timeout=settings.migration_lock_timeout_seconds,
        stale_after=settings.migration_lock_stale_seconds,
        clock=clock,
    )
    return MigrationRunner(transactions, lock=lock, clock=clock).run()


def build_application(
    settings: Settings,
    *,
    providers: Optional[Dict[str, DNSProvider]] = None,
    discovery: Optional[DiscoverySource] = None,
    audit: Optional[AuditSink] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Application:
    """Wire the database, repositories and engine for ``settings``."""
    if providers is None:
        providers = create_dns_providers(settings)

    pool = ConnectionPool(
        settings.database_path,
        readers=settings.db_readers,
        acquire_timeout=settings.db_acquire_timeout_seconds,
    )
    transactions = TransactionManager(pool, max_attempts=settings.db_busy_retries)

    try:
        migrations = run_migrations(settings, transactions, clock)
        capabilities = SchemaCapabilities.detect(transactions)
        capabilities.require("provider_cache", "tracked_records")
    except PersistenceError:
        pool.close()
        raise

    if audit is None:
        audit = (
            DatabaseAuditSink(transactions, capabilities, forward=LoggingAuditSink())
            if capabilities.audit_log
            else LoggingAuditSink()
        )

    records = ManagedRecordRepository(transactions, capabilities, clock=clock)
    cache = ProviderCacheRepository(transactions, capabilities, ttl=settings.cache_ttl, clock=clock)
    lifecycle = OrphanLifecycleManager(
        records,
        transactions,
        grace_period=settings.grace_period,
        cleanup_enabled=settings.cleanup_orphaned,
        is_preserved=settings.is_preserved,
        clock=clock,
    )
    engine = ReconciliationEngine(
        providers.values(),
        discovery
        or FileDiscovery(
            settings.discovery_config_path,
            default_ttl=settings.default_ttl,
            default_proxied=settings.default_proxied,
        ),
        cache,
        records,
        lifecycle,
        audit=audit,
        provider_retries=settings.provider_retries,
        clock=clock,
    )
    return Application(settings, pool, transactions, migrations, capabilities, engine)


def main():
    """Main entry point."""
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        configure_logging("INFO")
        logger.error(str(e))
        sys.exit(1)

    configure_logging(settings.log_level)
    logger.info(f"dns-sync: {settings.discovery_config_path} -> {', '.join(settings.providers)}")

    errors = settings.validate()
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"Database: {settings.database_path}")
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.sync_mode == "watch":
        logger.info(f"Poll interval: {settings.poll_interval_seconds}s")
    if settings.cleanup_orphaned:
        logger.info(f"Orphan cleanup: after {settings.cleanup_grace_period_minutes} minute(s)")
    else:
        logger.info("Orphan cleanup: disabled")
    if settings.preserved_patterns:
        logger.info(f"Preserved hostnames: {len(settings.preserved_patterns)} pattern(s) configured")

    try:
        app = build_application(settings)
    except PersistenceError as e:
        logger.critical(f"Database unusable: {e}")
        sys.exit(1)
    if not app.migrations.ok:
        logger.critical(
            f"Running on schema version {app.capabilities.schema_version} "
            f"after failed migration {app.migrations.failed}"
        )

    for provider in app.engine.providers.values():
        if not provider.test_connection():
            logger.error(f"Cannot connect to {provider.display_name}. Exiting.")
            app.close()
            sys.exit(1)

    engine = app.engine
    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()
        engine.cancel()

    signal.signal(signal.SIGTERM, handle_signal)

    try:
        if settings.sync_mode == "once":
            summaries = engine.sync_once()
            if any(s.failed for s in summaries.values()):
                sys.exit(1)
            return

        while not stop.is_set():
            engine.sync_once()
            stop.wait(max(5, settings.poll_interval_seconds))

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
        engine.cancel()
    finally:
        app.close()


if __name__ == "__main__":
    main()
