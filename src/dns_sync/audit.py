"""Audit/history sinks for applied changes and pass summaries."""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from dns_sync.db import TransactionManager
from dns_sync.migrations import AUDIT_LOG_TABLE, SchemaCapabilities
from dns_sync.models import AuditAction, AuditEvent, PassSummary, to_db_timestamp

logger = logging.getLogger(__name__)

SUMMARY_ACTION = "summary"


class AuditSink(ABC):
    """Receives one event per applied change and one summary per pass."""

    @abstractmethod
    def emit(self, event: AuditEvent) -> None:
        pass

    @abstractmethod
    def emit_summary(self, summary: PassSummary) -> None:
        pass


class LoggingAuditSink(AuditSink):
    def emit(self, event: AuditEvent) -> None:
        if event.action is AuditAction.ERROR:
            logger.error(f"[{event.provider}] {event.error}")
            return
        detail = ""
        if event.before and event.after:
            detail = f": {event.before.get('content')} -> {event.after.get('content')}"
        logger.info(f"[{event.provider}] {event.action.value} {event.record_type} {event.name}{detail}")

    def emit_summary(self, summary: PassSummary) -> None:
        log = logger.error if summary.failed else logger.info
        log(f"[{summary.provider}] Pass {summary.status}: {summary.describe()}")


class DatabaseAuditSink(AuditSink):
    """Writes events to the ``audit_log`` table, and logs them through ``forward``."""

    def __init__(
        self,
        transactions: TransactionManager,
        capabilities: SchemaCapabilities,
        *,
        forward: Optional[AuditSink] = None,
    ):
        capabilities.require("audit_log")
        self.transactions = transactions
        self.forward = forward

    @staticmethod
    def _json(value: Optional[Dict[str, Any]]) -> Optional[str]:
        return json.dumps(value, sort_keys=True) if value is not None else None

    def _insert(self, row: Sequence[Any]) -> None:
        self.transactions.run(
            lambda tx: tx.execute(
                f"INSERT INTO {AUDIT_LOG_TABLE} "
                f"(action, provider, record_type, name, before_json, after_json, error, created_at) "
                f"VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                row,
            ),
            label="audit",
        )

    def emit(self, event: AuditEvent) -> None:
        if self.forward is not None:
            self.forward.emit(event)
        self._insert(
            (
                event.action.value,
                event.provider,
                event.record_type,
                event.name,
                self._json(event.before),
                self._json(event.after),
                event.error or None,
                to_db_timestamp(event.timestamp),
            )
        )

    def emit_summary(self, summary: PassSummary) -> None:
        if self.forward is not None:
            self.forward.emit_summary(summary)
        self._insert(
            (
                SUMMARY_ACTION,
                summary.provider,
                None,
                None,
                None,
                self._json(summary.as_dict()),
                summary.error or None,
                to_db_timestamp(summary.finished_at or summary.started_at),
            )
        )

    def recent(self, limit: int = 100, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM {AUDIT_LOG_TABLE}"
        params: List[Any] = []
        if provider is not None:
            sql += " WHERE provider = ?"
            params.append(provider)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self.transactions.reader() as session:
            rows = session.query(sql, params)
        return [
            {
                "action": row["action"],
                "provider": row["provider"],
                "record_type": row["record_type"],
                "name": row["name"],
                "before": json.loads(row["before_json"]) if row["before_json"] else None,
                "after": json.loads(row["after_json"]) if row["after_json"] else None,
                "error": row["error"] or "",
                "created_at": row["created_at"],
            }
            for row in rows
        ]


class MemoryAuditSink(AuditSink):
    """Keeps events in memory; handy for inspecting a run."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self.summaries: List[PassSummary] = []
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def emit_summary(self, summary: PassSummary) -> None:
        with self._lock:
            self.summaries.append(summary)

    def actions(self, provider: Optional[str] = None) -> List[AuditAction]:
        with self._lock:
            return [e.action for e in self.events if provider is None or e.provider == provider]
