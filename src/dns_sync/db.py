"""Connection pool and transaction manager for the embedded SQLite store.

SQLite allows a single writer at a time. The pool models that with one writer
connection guarded by a lock (acquisition times out with ``LockTimeout``) and a
small set of reader connections that run concurrently under WAL.

Transactions are scoped handles: leaving the ``with`` block commits, an
exception rolls back, and nothing can leave a transaction half-open.
"""

from __future__ import annotations

import itertools
import logging
import queue
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence, TypeVar

from dns_sync.errors import LockTimeout, PersistenceBusy, PersistenceError, PersistenceIntegrity

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BUSY_TIMEOUT_MS = 5_000

_SAVEPOINT_UNSAFE = re.compile(r"\W")

_BUSY_SUBSTRINGS = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
    "database is busy",
)


def _is_busy_error(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return any(fragment in message for fragment in _BUSY_SUBSTRINGS)


def translate_error(exc: sqlite3.Error, operation: str) -> PersistenceError:
    """Map a sqlite3 error onto the persistence error taxonomy."""
    if isinstance(exc, sqlite3.IntegrityError):
        return PersistenceIntegrity(f"{operation} violated a constraint: {exc}")
    if _is_busy_error(exc):
        return PersistenceBusy(f"{operation} hit a busy database: {exc}")
    return PersistenceError(f"{operation} failed: {exc}")


# =============================================================================
# Sessions and Transactions
# =============================================================================


class Session:
    """Query helpers over a single connection."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            raise translate_error(e, sql.split(None, 1)[0].upper()) from e

    def executemany(self, sql: str, rows: Sequence[Sequence[Any]]) -> sqlite3.Cursor:
        try:
            return self._conn.executemany(sql, [tuple(r) for r in rows])
        except sqlite3.Error as e:
            raise translate_error(e, sql.split(None, 1)[0].upper()) from e

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()


class TransactionState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction(Session):
    """A write transaction on the writer connection.

    Obtained from ``TransactionManager.transaction()``; the manager owns begin,
    commit and rollback. ``savepoint()`` opens a nested scope that can roll back
    on its own without discarding the enclosing transaction.
    """

    _ids = itertools.count(1)

    def __init__(self, conn: sqlite3.Connection, label: str = ""):
        super().__init__(conn)
        self.id = next(self._ids)
        self.label = label or f"tx{self.id}"
        self.state = TransactionState.PENDING
        self._savepoints = itertools.count(1)

    @property
    def active(self) -> bool:
        return self.state is TransactionState.ACTIVE and self._conn.in_transaction

    def _begin(self) -> None:
        self.execute("BEGIN IMMEDIATE")
        self.state = TransactionState.ACTIVE

    def _commit(self) -> None:
        self.execute("COMMIT")
        self.state = TransactionState.COMMITTED

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error(f"Rollback of {self.label} failed: {e}")
        self.state = TransactionState.ROLLED_BACK

    @contextmanager
    def savepoint(self, name: str = "") -> Iterator[Transaction]:
        if not self.active:
            raise PersistenceError(f"Savepoint requested on inactive transaction {self.label}")
        savepoint = f"sp_{_SAVEPOINT_UNSAFE.sub('_', name) or 'step'}_{next(self._savepoints)}"
        self.execute(f"SAVEPOINT {savepoint}")
        try:
            yield self
        except BaseException:
            if self._conn.in_transaction:
                self.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self.execute(f"RELEASE SAVEPOINT {savepoint}")
            raise
        else:
            self.execute(f"RELEASE SAVEPOINT {savepoint}")


# =============================================================================
# Connection Pool
# =============================================================================


class ConnectionPool:
    """One writer connection plus up to ``readers`` reader connections."""

    def __init__(
        self,
        path: str,
        *,
        readers: int = 4,
        acquire_timeout: float = 30.0,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ):
        self.path = path
        self.acquire_timeout = acquire_timeout
        self.busy_timeout_ms = busy_timeout_ms
        self._memory = path == ":memory:"
        self._max_readers = 0 if self._memory else max(1, readers)

        self._writer: Optional[sqlite3.Connection] = None
        self._writer_lock = threading.Lock()
        self._writer_owner: Optional[int] = None

        self._readers: "queue.Queue[sqlite3.Connection]" = queue.Queue()
        self._readers_lock = threading.Lock()
        self._created_readers = 0
        self._all_readers: List[sqlite3.Connection] = []
        self._closed = False

    def _connect(self) -> sqlite3.Connection:
        if not self._memory:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            if not self._memory:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as e:
            raise translate_error(e, "CONNECT") from e
        return conn

    @contextmanager
    def writer(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise PersistenceError("Connection pool is closed")
        wait = self.acquire_timeout if timeout is None else timeout
        started = time.monotonic()
        if not self._writer_lock.acquire(timeout=wait):
            raise LockTimeout(f"Timed out after {wait:.1f}s waiting for the database writer")
        waited = time.monotonic() - started
        if waited > 1.0:
            logger.warning(f"Database writer acquisition took {waited:.1f}s")
        self._writer_owner = threading.get_ident()
        try:
            if self._writer is None:
                self._writer = self._connect()
            yield self._writer
        finally:
            self._writer_owner = None
            self._writer_lock.release()

    @contextmanager
    def reader(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise PersistenceError("Connection pool is closed")

        if self._memory:
            # A private in-memory database only exists on the writer connection.
            if self._writer_owner == threading.get_ident() and self._writer is not None:
                yield self._writer
            else:
                with self.writer(timeout) as conn:
                    yield conn
            return

        conn = self._checkout_reader(self.acquire_timeout if timeout is None else timeout)
        try:
            yield conn
        finally:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self._readers.put(conn)

    def _checkout_reader(self, timeout: float) -> sqlite3.Connection:
        try:
            return self._readers.get_nowait()
        except queue.Empty:
            pass

        with self._readers_lock:
            if self._created_readers < self._max_readers:
                conn = self._connect()
                self._created_readers += 1
                self._all_readers.append(conn)
                return conn

        try:
            return self._readers.get(timeout=timeout)
        except queue.Empty:
            raise LockTimeout(f"Timed out after {timeout:.1f}s waiting for a reader connection")

    def close(self) -> None:
        self._closed = True
        for conn in self._all_readers:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing reader connection: {e}")
        self._all_readers.clear()
        if self._writer is not None:
            with self._writer_lock:
                try:
                    self._writer.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing writer connection: {e}")
                self._writer = None


# =============================================================================
# Transaction Manager
# =============================================================================


class TransactionManager:
    """Owns every write transaction against the pool.

    - ``transaction()`` is a scoped write transaction; nested calls on the same
      thread become savepoints of the outer transaction.
    - ``run()`` retries a unit of work on ``PersistenceBusy`` with exponential
      backoff. Integrity and business errors are never retried.
    - ``apply_external()`` pairs a non-transactional call (a provider API) with
      the local commit of its result. The call runs once; only the commit is
      retried.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        max_attempts: int = 5,
        base_delay: float = 0.05,
        max_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.pool = pool
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._local = threading.local()

    def _current(self) -> Optional[Transaction]:
        tx = getattr(self._local, "tx", None)
        if tx is not None and tx.active:
            return tx
        return None

    def backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    @contextmanager
    def transaction(self, label: str = "") -> Iterator[Transaction]:
        current = self._current()
        if current is not None:
            with current.savepoint(label) as tx:
                yield tx
            return

        with self.pool.writer() as conn:
            tx = Transaction(conn, label=label)
            tx._begin()
            self._local.tx = tx
            try:
                yield tx
            except BaseException:
                tx._rollback()
                logger.debug(f"Transaction {tx.label} rolled back")
                raise
            else:
                if tx.active:
                    tx._commit()
            finally:
                self._local.tx = None
                if tx.active:
                    tx._rollback()

    @contextmanager
    def reader(self) -> Iterator[Session]:
        """Read-only session; reuses this thread's open transaction when there is one."""
        current = self._current()
        if current is not None:
            yield current
            return
        with self.pool.reader() as conn:
            yield Session(conn)

    def run(
        self,
        work: Callable[[Transaction], T],
        *,
        label: str = "",
        attempts: Optional[int] = None,
    ) -> T:
        limit = attempts or self.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.transaction(label) as tx:
                    return work(tx)
            except PersistenceBusy as e:
                if attempt >= limit or self._current() is not None:
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    f"Database busy during {label or 'transaction'} "
                    f"(attempt {attempt}/{limit}), retrying in {delay:.2f}s: {e}"
                )
                self._sleep(delay)

    def apply_external(
        self,
        call: Callable[[], R],
        persist: Callable[[Transaction, R], T],
        *,
        label: str = "",
        attempts: Optional[int] = None,
        compensate: Optional[Callable[[R], None]] = None,
    ) -> T:
        """Run ``call`` once, then commit ``persist(tx, result)`` with retries.

        Errors from ``call`` propagate untouched and nothing is written. When
        every commit attempt fails, ``compensate`` (if given) receives the
        external result before the last persistence error is raised.
        """
        result = call()

        limit = max(1, attempts or self.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.run(lambda tx: persist(tx, result), label=label, attempts=1)
            except PersistenceIntegrity:
                raise
            except PersistenceError as e:
                if attempt >= limit:
                    logger.error(
                        f"Local commit for {label or 'external call'} failed after {limit} attempts"
                    )
                    if compensate is not None:
                        compensate(result)
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    f"Local commit for {label or 'external call'} failed "
                    f"(attempt {attempt}/{limit}), retrying in {delay:.2f}s: {e}"
                )
                self._sleep(delay)
