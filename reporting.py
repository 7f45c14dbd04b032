"""
reporting.py -- Daily operation report.

Counts, per UTC day, what the engine did:
  - terminal switch attempts (successful / failed), completed switches
  - fast-loop verdicts (switch / wait / no_action)
  - the most recent operation errors
and sends the finished day's summary to the operator once, at
DAILY_SUMMARY_HOUR_UTC the following day.

Fed entirely by event hooks; it never touches the chain or the coordinator.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from event_hooks import OPERATION_TERMINAL, RECOMMENDATION

logger = logging.getLogger(__name__)

STATE_KEY = "daily_report:state"
REPORTS_KEY = "daily_reports"

# Days of counters kept in memory.
_KEEP_DAYS = 7


def _utc_date(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%d")


def _empty_day() -> dict[str, Any]:
    return {
        "total_operations": 0,
        "successful_operations": 0,
        "failed_operations": 0,
        "mine_switches": 0,
        "duration_sum_sec": 0.0,
        "recommendations": {"switch": 0, "wait": 0, "no_action": 0},
        "errors": [],
    }


class DailyReport:
    def __init__(
        self,
        store=None,
        *,
        clock: Callable[[], float] = time.time,
        started_at: float | None = None,
        error_cap: int = 20,
        log: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self._clock = clock
        self.started_at = float(clock() if started_at is None else started_at)
        self.error_cap = max(1, int(error_cap))
        self.log = log or logger
        self._lock = threading.Lock()
        self._days: dict[str, dict[str, Any]] = {}
        self._last_sent: str | None = None
        self._load()
        if self._last_sent is None:
            # First run: the first report covers the day the bot started.
            self._last_sent = _utc_date(self.started_at - 86400.0)

    def attach(self, hooks) -> None:
        hooks.subscribe(OPERATION_TERMINAL, self.record_operation)
        hooks.subscribe(RECOMMENDATION, self.record_recommendation)

    # ------------------ Hook listeners ------------------

    def record_operation(self, op) -> None:
        at = op.finished_at if op.finished_at is not None else self._clock()
        with self._lock:
            day = self._day(_utc_date(at))
            day["total_operations"] += 1
            if op.status == "completed":
                day["successful_operations"] += 1
                day["mine_switches"] += 1
                day["duration_sum_sec"] += max(0.0, float(at) - float(op.started_at))
            else:
                day["failed_operations"] += 1
                day["errors"].append({
                    "at": float(at),
                    "operation": op.id,
                    "error": op.error or "unknown",
                })
                if len(day["errors"]) > self.error_cap:
                    del day["errors"][: len(day["errors"]) - self.error_cap]
        self._save()

    def record_recommendation(self, rec) -> None:
        at = getattr(rec.current, "observed_at", None) or self._clock()
        with self._lock:
            counts = self._day(_utc_date(at))["recommendations"]
            counts[rec.verdict] = counts.get(rec.verdict, 0) + 1

    # ------------------ Summary ------------------

    def summary(self, date: str | None = None, now: float | None = None) -> dict[str, Any]:
        now = float(self._clock() if now is None else now)
        date = date or _utc_date(now)
        with self._lock:
            day = self._days.get(date) or _empty_day()
            total = day["total_operations"]
            ok = day["successful_operations"]
            return {
                "date": date,
                "total_operations": total,
                "successful_operations": ok,
                "failed_operations": day["failed_operations"],
                "mine_switches": day["mine_switches"],
                "success_rate": (ok / total) if total else None,
                "avg_switch_duration_sec": (day["duration_sum_sec"] / ok) if ok else None,
                "recommendations": dict(day["recommendations"]),
                "errors": [e["error"] for e in day["errors"]],
                "uptime_sec": max(0.0, now - self.started_at),
            }

    def maybe_send(self, now: float | None = None, *, hour_utc: int = 0, send=None) -> dict | None:
        """
        Send yesterday's summary once, the first time this is called at or
        after *hour_utc* on a new UTC day.  Returns the summary when sent.
        """
        now = float(self._clock() if now is None else now)
        current = datetime.fromtimestamp(now, tz=timezone.utc)
        if current.hour < int(hour_utc):
            return None
        report_date = (current - timedelta(days=1)).strftime("%Y-%m-%d")
        with self._lock:
            if self._last_sent is not None and self._last_sent >= report_date:
                return None
            self._last_sent = report_date

        report = self.summary(report_date, now=now)
        self.log.info(
            "Daily summary %s: %d operations, %d switches, %d failed",
            report_date, report["total_operations"], report["mine_switches"],
            report["failed_operations"],
        )
        if self.store is not None:
            try:
                self.store.append(REPORTS_KEY, report)
            except Exception as e:
                self.log.warning("Failed to persist daily report %s: %s", report_date, e)
        self._save()
        if send is not None:
            send(report)
        return report

    # ------------------ Internals ------------------

    def _day(self, date: str) -> dict[str, Any]:
        """Counters for *date*, creating them. Caller holds _lock."""
        day = self._days.get(date)
        if day is None:
            day = self._days[date] = _empty_day()
            for old in sorted(self._days)[:-_KEEP_DAYS]:
                del self._days[old]
        return day

    def _save(self) -> None:
        if self.store is None:
            return
        with self._lock:
            payload = {"days": self._days, "last_sent": self._last_sent}
            try:
                self.store.snapshot(STATE_KEY, payload)
            except Exception as e:
                self.log.warning("Failed to save daily report state: %s", e)

    def _load(self) -> None:
        if self.store is None:
            return
        try:
            payload = self.store.load_snapshot(STATE_KEY)
        except Exception as e:
            self.log.warning("Failed to load daily report state: %s", e)
            return
        if not isinstance(payload, dict):
            return
        days = payload.get("days")
        if isinstance(days, dict):
            for date, raw in days.items():
                if not isinstance(raw, dict):
                    continue
                day = _empty_day()
                for key in ("total_operations", "successful_operations", "failed_operations", "mine_switches"):
                    day[key] = int(raw.get(key, 0) or 0)
                day["duration_sum_sec"] = float(raw.get("duration_sum_sec", 0.0) or 0.0)
                if isinstance(raw.get("recommendations"), dict):
                    day["recommendations"].update(raw["recommendations"])
                if isinstance(raw.get("errors"), list):
                    day["errors"] = list(raw["errors"])[-self.error_cap:]
                self._days[str(date)] = day
        last_sent = payload.get("last_sent")
        self._last_sent = str(last_sent) if last_sent else None
