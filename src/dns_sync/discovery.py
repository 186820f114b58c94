"""Desired-state discovery.

Example config file:

    records:
      - provider: "adguard"
        type: "A"
        name: "app.example.com"
        content: "10.0.0.5"
      - providers: ["adguard", "cloudflare"]
        type: "CNAME"
        name: "www.example.com"
        content: "app.example.com"
        ttl: 3600
        proxied: true

Entries without ``provider``/``providers`` apply to every provider.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from dns_sync.config import _parse_bool
from dns_sync.models import DesiredRecord, normalize_name

logger = logging.getLogger(__name__)

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except OSError:
        return 0.0


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml/.yml config files in a directory, or return a single file.

    ``.template`` files are skipped.
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
        return [str(f) for f in files if not f.name.endswith(".template")]

    return []


def get_config_files_mtimes(config_files: List[str]) -> Dict[str, float]:
    return {f: get_config_file_mtime(f) for f in config_files}


# =============================================================================
# Discovery Sources
# =============================================================================


class DiscoverySource(ABC):
    """Supplies the records that should exist for a provider."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    def desired_records(self, provider: str) -> List[DesiredRecord]:
        pass


class StaticDiscovery(DiscoverySource):
    """Fixed desired set, per provider or shared."""

    def __init__(
        self,
        records: Iterable[DesiredRecord] = (),
        by_provider: Optional[Dict[str, Iterable[DesiredRecord]]] = None,
    ):
        self.records = list(records)
        self.by_provider = {k: list(v) for k, v in (by_provider or {}).items()}

    @property
    def name(self) -> str:
        return "static"

    def desired_records(self, provider: str) -> List[DesiredRecord]:
        return self.records + self.by_provider.get(provider, [])


class FileDiscovery(DiscoverySource):
    """Desired records read from YAML files.

    Files are re-read only when the set of files or a modification time
    changes. A file that fails to parse keeps its last good contents.
    """

    def __init__(self, config_path: str, *, default_ttl: int = 300, default_proxied: bool = False):
        self.config_path = config_path
        self.default_ttl = default_ttl
        self.default_proxied = default_proxied
        self._mtimes: Dict[str, float] = {}
        self._entries: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "file"

    def reload(self) -> bool:
        """Re-read changed files. Returns True if anything changed."""
        files = find_config_files(self.config_path)
        mtimes = get_config_files_mtimes(files)
        if mtimes == self._mtimes:
            return False

        removed = set(self._entries) - set(files)
        for f in removed:
            logger.info(f"Config file removed: {Path(f).name}")
            del self._entries[f]

        for f in files:
            if f in self._entries and mtimes[f] == self._mtimes.get(f):
                continue
            try:
                with open(f, "r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Failed to read {f}: {e}")
                continue
            entries = data.get("records") if isinstance(data, dict) else None
            if not isinstance(entries, list):
                logger.warning(f"{Path(f).name} has no 'records' list; ignoring")
                entries = []
            self._entries[f] = entries
            logger.info(f"Loaded {len(entries)} record(s) from {Path(f).name}")

        self._mtimes = mtimes
        return True

    def _parse(self, entry: Any, source: str) -> Optional[DesiredRecord]:
        if not isinstance(entry, dict):
            logger.warning(f"Skipping malformed record in {source}: {entry}")
            return None
        record_type = entry.get("type")
        name = entry.get("name")
        content = entry.get("content")
        if not all(isinstance(v, str) and v.strip() for v in (record_type, name, content)):
            logger.warning(f"Skipping record missing type/name/content in {source}: {entry}")
            return None
        try:
            ttl = int(entry.get("ttl", self.default_ttl))
        except (TypeError, ValueError):
            logger.warning(f"Skipping record with invalid ttl in {source}: {entry}")
            return None
        return DesiredRecord(
            type=record_type.strip().upper(),
            name=normalize_name(name),
            content=content.strip(),
            ttl=ttl,
            proxied=_parse_bool(entry.get("proxied"), default=self.default_proxied),
        )

    @staticmethod
    def _targets(entry: Dict[str, Any]) -> Optional[List[str]]:
        if "providers" in entry and isinstance(entry["providers"], list):
            return [str(p).strip().lower() for p in entry["providers"]]
        if "provider" in entry and entry["provider"]:
            return [str(entry["provider"]).strip().lower()]
        return None

    def desired_records(self, provider: str) -> List[DesiredRecord]:
        with self._lock:
            self.reload()
            snapshot = sorted(self._entries.items())

        records: List[DesiredRecord] = []
        for source, entries in snapshot:
            for entry in entries:
                targets = self._targets(entry) if isinstance(entry, dict) else None
                if targets is not None and provider not in targets:
                    continue
                record = self._parse(entry, Path(source).name)
                if record is not None:
                    records.append(record)
        return records
