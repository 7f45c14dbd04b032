"""
mine_status.py -- Availability observations and the per-mine transition history.

Only *changes* are recorded: a mine polled "open" a thousand times in a row
produces one history entry, not a thousand.  That keeps the history
proportional to real state changes and means every append is worth
persisting.

The in-memory history is authoritative for the running process.  The sink
only exists so a restart can pick the history back up.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

from config import normalize_address

logger = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "mine_history:"


@dataclass(frozen=True)
class TargetStatus:
    target_id: str
    label: str
    is_available: bool
    observed_at: float


@dataclass(frozen=True)
class StatusHistoryEntry:
    is_available: bool
    at: float


def _history_key(target_id: str) -> str:
    return HISTORY_KEY_PREFIX + target_id


def _entries_from_rows(rows: Any) -> list[StatusHistoryEntry]:
    """Rebuild a clean history from persisted rows, dropping anything that breaks ordering."""
    out: list[StatusHistoryEntry] = []
    if not isinstance(rows, list):
        return out
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            entry = StatusHistoryEntry(is_available=bool(row["is_available"]), at=float(row["at"]))
        except (KeyError, TypeError, ValueError):
            continue
        if out and (entry.at <= out[-1].at or entry.is_available == out[-1].is_available):
            continue
        out.append(entry)
    return out


class StatusTracker:
    def __init__(
        self,
        store=None,
        *,
        cap: int = 100,
        hooks=None,
        clock: Callable[[], float] = time.time,
        log: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.cap = max(1, int(cap))
        self.hooks = hooks
        self._clock = clock
        self.log = log or logger
        self._lock = threading.Lock()
        self._history: dict[str, list[StatusHistoryEntry]] = {}
        self._latest: dict[str, TargetStatus] = {}

    # ------------------ Core API ------------------

    def observe(
        self,
        target_id: str,
        is_available: bool,
        at: float | None = None,
        *,
        label: str = "",
    ) -> StatusHistoryEntry | None:
        """
        Fold one poll result into the history.

        Returns the new entry when the availability changed, None for a
        redundant poll or a rejected out-of-order observation.
        """
        tid = normalize_address(target_id)
        ts = float(self._clock() if at is None else at)
        available = bool(is_available)

        with self._lock:
            history = self._ensure_loaded(tid)
            last = history[-1] if history else None
            changed = last is None or last.is_available != available
            if changed and last is not None and ts <= last.at:
                self.log.warning(
                    "Out-of-order observation for %s ignored (%.3f <= %.3f)",
                    tid, ts, last.at,
                )
                return None
            self._latest[tid] = TargetStatus(
                target_id=tid,
                label=label or tid,
                is_available=available,
                observed_at=ts,
            )
            if not changed:
                return None

            entry = StatusHistoryEntry(is_available=available, at=ts)
            history.append(entry)
            if len(history) > self.cap:
                del history[: len(history) - self.cap]
            rows = [asdict(e) for e in history]

        self.log.debug("Status change recorded for mine %s: %s", tid, available)
        self._persist(tid, rows)
        if self.hooks is not None:
            self.hooks.on_status_change(tid, entry)
        return entry

    def history(self, target_id: str) -> list[StatusHistoryEntry]:
        tid = normalize_address(target_id)
        with self._lock:
            return list(self._ensure_loaded(tid))

    # ------------------ Queries ------------------

    def latest(self, target_id: str) -> TargetStatus | None:
        with self._lock:
            return self._latest.get(normalize_address(target_id))

    def targets(self) -> list[str]:
        with self._lock:
            return sorted(self._history.keys())

    def snapshot_state(self) -> dict[str, Any]:
        with self._lock:
            return {
                tid: {
                    "entries": len(history),
                    "last_change": history[-1].at if history else None,
                    "is_available": (
                        self._latest[tid].is_available if tid in self._latest else None
                    ),
                    "observed_at": (
                        self._latest[tid].observed_at if tid in self._latest else None
                    ),
                }
                for tid, history in self._history.items()
            }

    # ------------------ Internals ------------------

    def _ensure_loaded(self, tid: str) -> list[StatusHistoryEntry]:
        """Return the live history list for *tid*, loading it from the sink once. Caller holds _lock."""
        history = self._history.get(tid)
        if history is not None:
            return history
        history = []
        if self.store is not None:
            try:
                history = _entries_from_rows(self.store.load_snapshot(_history_key(tid)))
            except Exception as e:
                self.log.warning("Failed to load status history for %s: %s", tid, e)
                history = []
            if len(history) > self.cap:
                history = history[-self.cap:]
            if history:
                self.log.info("Loaded %d status transitions for mine %s", len(history), tid)
        self._history[tid] = history
        return history

    def _persist(self, tid: str, rows: list[dict[str, Any]]) -> None:
        if self.store is None:
            return
        try:
            self.store.snapshot(_history_key(tid), rows)
        except Exception as e:
            self.log.warning("Failed to save status history for %s: %s", tid, e)
