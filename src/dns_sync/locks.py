"""File-based coordination lock used to serialize schema migrations across processes."""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from dns_sync.errors import LockTimeout
from dns_sync.models import from_db_timestamp, to_db_timestamp, utc_now

logger = logging.getLogger(__name__)


def default_holder_identity() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}"


@dataclass(frozen=True)
class LockInfo:
    holder: str
    acquired_at: Optional[datetime]

    def is_stale(self, now: datetime, threshold: timedelta) -> bool:
        # Unreadable timestamps come from a crashed writer.
        if self.acquired_at is None:
            return True
        return now - self.acquired_at > threshold


class FileLock:
    """Exclusive lock backed by a lock file containing the holder and acquisition time.

    A lock older than ``stale_after`` is presumed abandoned by a crashed process
    and is reclaimed.
    """

    def __init__(
        self,
        path: str,
        *,
        timeout: float = 10.0,
        stale_after: float = 120.0,
        holder: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.stale_after = timedelta(seconds=stale_after)
        self.holder = holder or default_holder_identity()
        self._clock = clock
        self._owned = False

    @property
    def owned(self) -> bool:
        return self._owned

    def read(self) -> Optional[LockInfo]:
        try:
            raw = self.path.read_text("utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
            return LockInfo(
                holder=str(data.get("holder", "")),
                acquired_at=from_db_timestamp(data.get("acquired_at")),
            )
        except (ValueError, AttributeError):
            return LockInfo(holder=raw.strip(), acquired_at=None)

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        payload = {"holder": self.holder, "acquired_at": to_db_timestamp(self._clock())}
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(payload, sort_keys=True))
        return True

    def _reclaim_if_stale(self) -> bool:
        info = self.read()
        if info is None:
            return False
        if not info.is_stale(self._clock(), self.stale_after):
            return False
        logger.warning(f"Removing stale lock {self.path} held by '{info.holder}'")
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def acquire(self) -> None:
        if self._owned:
            return

        deadline = time.monotonic() + self.timeout
        attempt = 0
        while True:
            attempt += 1
            if self._try_create():
                self._owned = True
                logger.debug(f"Lock {self.path} acquired by {self.holder}")
                return

            if self._reclaim_if_stale():
                continue

            if time.monotonic() >= deadline:
                info = self.read()
                owner = info.holder if info else "unknown"
                raise LockTimeout(
                    f"Could not acquire {self.path} within {self.timeout:.1f}s (held by '{owner}')"
                )

            if attempt % 20 == 0:
                logger.info(f"Waiting for lock {self.path} ({attempt} attempts so far)")
            time.sleep(min(1.0, 0.05 * attempt))

    def release(self) -> None:
        if not self._owned:
            return
        self._owned = False
        info = self.read()
        if info is not None and info.holder != self.holder:
            logger.warning(f"Lock {self.path} was reclaimed by '{info.holder}', not releasing")
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        logger.debug(f"Lock {self.path} released by {self.holder}")

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
