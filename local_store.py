"""
local_store.py -- Local implementations of the persistence sink.

The sink interface the engine depends on:
  - append(key, record)       add one row to an append-only log
  - read_all(key)             every row of that log, oldest first
  - snapshot(key, record)     replace the latest snapshot stored under key
  - load_snapshot(key)        that snapshot, or None

MemoryStore is used by tests and as a last resort.  JsonFileStore keeps the
same data in one JSON file so a restart on the same disk picks it up; it is
the fallback when Supabase is not configured.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from typing import Any

logger = logging.getLogger(__name__)


class MemoryStore:
    def __init__(self, log_limit: int = 1000) -> None:
        self.log_limit = max(1, int(log_limit))
        self._lock = threading.Lock()
        self._logs: dict[str, list[dict[str, Any]]] = {}
        self._snapshots: dict[str, Any] = {}

    def append(self, key: str, record: dict[str, Any]) -> None:
        with self._lock:
            rows = self._logs.setdefault(str(key), [])
            rows.append(copy.deepcopy(record))
            if len(rows) > self.log_limit:
                del rows[: len(rows) - self.log_limit]

    def read_all(self, key: str) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._logs.get(str(key), []))

    def snapshot(self, key: str, record: Any) -> None:
        with self._lock:
            self._snapshots[str(key)] = copy.deepcopy(record)

    def load_snapshot(self, key: str) -> Any:
        with self._lock:
            value = self._snapshots.get(str(key))
            return copy.deepcopy(value) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "logs": copy.deepcopy(self._logs),
                "snapshots": copy.deepcopy(self._snapshots),
            }

    def load_dict(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        logs = payload.get("logs", {})
        snaps = payload.get("snapshots", {})
        with self._lock:
            self._logs = {
                str(k): [row for row in v if isinstance(row, dict)]
                for k, v in (logs.items() if isinstance(logs, dict) else [])
                if isinstance(v, list)
            }
            self._snapshots = dict(snaps) if isinstance(snaps, dict) else {}


class JsonFileStore(MemoryStore):
    """MemoryStore mirrored to a JSON file after every write (atomic replace)."""

    def __init__(self, path: str, log_limit: int = 1000) -> None:
        super().__init__(log_limit=log_limit)
        self.path = str(path)
        self._file_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("Local store %s unreadable, starting empty: %s", self.path, e)
            return
        self.load_dict(payload)
        logger.info("Local store loaded from %s", self.path)

    def _flush(self) -> None:
        with self._file_lock:
            payload = self.to_dict()
            folder = os.path.dirname(self.path)
            if folder:
                os.makedirs(folder, exist_ok=True)
            tmp = self.path + ".tmp"
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)

    def append(self, key: str, record: dict[str, Any]) -> None:
        super().append(key, record)
        self._flush()

    def snapshot(self, key: str, record: Any) -> None:
        super().snapshot(key, record)
        self._flush()
