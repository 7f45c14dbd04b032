"""
scheduler.py -- The two cadences that drive the switch engine.

  fast loop (POLL_INTERVAL_SECONDS):
    read current mine -> derive the other candidate -> read both
    availabilities -> record transitions -> evaluate -> maybe execute

  rotation loop (MINE_SWITCH_INTERVAL_HOURS):
    read current mine -> derive the other candidate -> execute regardless
    of availability, unless nobody has deposits or a switch is in flight

Both loops funnel into the same ExecutionCoordinator, whose single-flight
lock serializes them.  A failed read skips the cycle; nothing a single cycle
does can stop a loop.

Timers come from an injected ticker.  ThreadTicker runs one daemon thread
per cadence; ManualTicker lets tests fire ticks by hand.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

import config
from chain_client import ChainError
from config import EngineConfig, normalize_address
from mine_status import StatusTracker, TargetStatus
from recommendation import SWITCH, Recommendation, evaluate, rotation

logger = logging.getLogger(__name__)

FAST_LOOP = "fast"
ROTATION_LOOP = "rotation"


# ---------------------------------------------------------------------------
# Tickers
# ---------------------------------------------------------------------------

class TickerHandle:
    def __init__(self, name: str, interval: float, callback: Callable[[], Any]) -> None:
        self.name = name
        self.interval = float(interval)
        self.callback = callback
        self._cancelled = threading.Event()

    @property
    def active(self) -> bool:
        return not self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()


class ThreadTicker:
    """Fires each callback every *interval* seconds on its own daemon thread."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def schedule(self, interval: float, callback: Callable[[], Any], name: str) -> TickerHandle:
        handle = TickerHandle(name, interval, callback)
        thread = threading.Thread(
            target=self._loop, args=(handle,), name=f"ticker-{name}", daemon=True
        )
        thread.start()
        return handle

    def _loop(self, handle: TickerHandle) -> None:
        # Event.wait returns True once cancelled, which ends the loop.
        while not handle._cancelled.wait(handle.interval):
            try:
                handle.callback()
            except Exception:
                self.log.exception("Ticker %s callback failed", handle.name)


class ManualTicker:
    """Test ticker: nothing fires until advance() or fire() is called."""

    def __init__(self) -> None:
        self.handles: list[TickerHandle] = []
        self.elapsed = 0.0
        self._due: dict[int, float] = {}

    def schedule(self, interval: float, callback: Callable[[], Any], name: str) -> TickerHandle:
        handle = TickerHandle(name, interval, callback)
        self.handles.append(handle)
        self._due[id(handle)] = self.elapsed + handle.interval
        return handle

    def fire(self, name: str) -> int:
        fired = 0
        for handle in list(self.handles):
            if handle.name == name and handle.active:
                handle.callback()
                fired += 1
        return fired

    def advance(self, seconds: float) -> int:
        """Move virtual time forward, firing every tick that falls due, in order."""
        end = self.elapsed + float(seconds)
        fired = 0
        while True:
            due = [
                (self._due[id(h)], i, h)
                for i, h in enumerate(self.handles)
                if h.active and self._due[id(h)] <= end
            ]
            if not due:
                break
            when, _, handle = min(due, key=lambda row: (row[0], row[1]))
            self.elapsed = when
            self._due[id(handle)] = when + handle.interval
            handle.callback()
            fired += 1
        self.elapsed = end
        return fired


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    def __init__(
        self,
        cfg: EngineConfig,
        chain,
        tracker: StatusTracker,
        coordinator,
        *,
        hooks=None,
        ticker=None,
        clock: Callable[[], float] = time.time,
        log: logging.Logger | None = None,
    ) -> None:
        self.cfg = cfg
        self.chain = chain
        self.tracker = tracker
        self.coordinator = coordinator
        self.hooks = hooks
        self.ticker = ticker or ThreadTicker()
        self._clock = clock
        self.log = log or logger

        self._handles: list[TickerHandle] = []
        self._running = False
        self._stopping = False

        self.fast_cycles = 0
        self.rotation_cycles = 0
        self.skipped_cycles = 0
        self.last_fast_cycle_at: float | None = None
        self.last_rotation_at: float | None = None
        self.last_recommendation: Recommendation | None = None
        self.current_target: str | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------ Lifecycle ------------------

    def start(self, run_now: bool = False) -> None:
        config.validate(self.cfg)
        if self._running:
            return
        self._stopping = False
        self._running = True
        self._handles = [
            self.ticker.schedule(self.cfg.poll_interval_sec, self.run_fast_cycle, FAST_LOOP),
            self.ticker.schedule(
                self.cfg.rotation_interval_sec, self.run_rotation_cycle, ROTATION_LOOP
            ),
        ]
        self.log.info(
            "Scheduler started: monitoring every %.0fs, rotation every %.0fh",
            self.cfg.poll_interval_sec, self.cfg.rotation_interval_hours,
        )
        if run_now:
            self.run_fast_cycle()

    def stop(self, wait_timeout: float | None = None) -> bool:
        """Cancel both loops and wait for an in-flight attempt.  True when idle."""
        self._stopping = True
        for handle in self._handles:
            handle.cancel()
        self._handles = []
        self.coordinator.request_stop()
        idle = self.coordinator.wait_idle(wait_timeout)
        if not idle:
            self.log.warning("Scheduler stopped with a switch operation still in flight")
        self._running = False
        self.log.info("Scheduler stopped")
        return idle

    # ------------------ Cycles ------------------

    def run_fast_cycle(self) -> Recommendation | None:
        if self._stopping:
            return None
        self.fast_cycles += 1
        self.last_fast_cycle_at = self._clock()

        try:
            current_id = normalize_address(self.chain.read_current_target())
            target_id = self.cfg.other_candidate(current_id)
            current_ok = bool(self.chain.read_availability(current_id))
            target_ok = bool(self.chain.read_availability(target_id))
        except ChainError as e:
            self.skipped_cycles += 1
            self.log.warning("Monitoring cycle skipped: %s", e)
            return None
        except Exception:
            self.skipped_cycles += 1
            self.log.exception("Monitoring cycle skipped: unexpected error")
            return None

        self.current_target = current_id
        now = self._clock()
        current_label = self.cfg.label_for(current_id)
        target_label = self.cfg.label_for(target_id)
        self.tracker.observe(current_id, current_ok, now, label=current_label)
        self.tracker.observe(target_id, target_ok, now, label=target_label)

        rec = evaluate(
            TargetStatus(current_id, current_label, current_ok, now),
            TargetStatus(target_id, target_label, target_ok, now),
        )
        self.last_recommendation = rec
        self.log.info(
            "Mine status - %s: %s, %s: %s -> %s",
            current_label, "active" if current_ok else "inactive",
            target_label, "active" if target_ok else "inactive",
            rec.verdict,
        )
        if self.hooks is not None:
            self.hooks.on_recommendation(rec)

        if rec.verdict != SWITCH or not rec.target_id:
            return rec
        if rec.target_id == current_id:
            self.log.info("Already in target mine %s, no switch needed", target_label)
            return rec
        if self.coordinator.is_busy():
            self.log.info("Switch recommended but an operation is already in flight")
            return rec

        self.log.info("Switch recommended: %s", rec.reason)
        self.coordinator.execute(rec.target_id)
        return rec

    def run_rotation_cycle(self):
        if self._stopping:
            return None
        self.rotation_cycles += 1
        self.last_rotation_at = self._clock()

        try:
            depositors = int(self.chain.depositor_count())
            if depositors <= 0:
                self.log.info("No users with deposited NFTs found, skipping scheduled switch")
                return None
            current_id = normalize_address(self.chain.read_current_target())
            target_id = self.cfg.other_candidate(current_id)
            current_ok = bool(self.chain.read_availability(current_id))
            target_ok = bool(self.chain.read_availability(target_id))
        except ChainError as e:
            self.skipped_cycles += 1
            self.log.warning("Scheduled rotation skipped: %s", e)
            return None
        except Exception:
            self.skipped_cycles += 1
            self.log.exception("Scheduled rotation skipped: unexpected error")
            return None

        self.current_target = current_id
        now = self._clock()
        current_label = self.cfg.label_for(current_id)
        target_label = self.cfg.label_for(target_id)
        self.tracker.observe(current_id, current_ok, now, label=current_label)
        self.tracker.observe(target_id, target_ok, now, label=target_label)

        rec = rotation(
            TargetStatus(current_id, current_label, current_ok, now),
            TargetStatus(target_id, target_label, target_ok, now),
        )
        self.last_recommendation = rec
        if self.hooks is not None:
            self.hooks.on_recommendation(rec)

        if target_id == current_id:
            self.log.info("Already in target mine %s, skipping scheduled switch", self.cfg.label_for(target_id))
            return None
        if self.coordinator.is_busy():
            self.log.info("Scheduled rotation skipped: an operation is already in flight")
            return None

        self.log.info(
            "Scheduled rotation: switching %d depositors from %s to %s",
            depositors, self.cfg.label_for(current_id), self.cfg.label_for(target_id),
        )
        return self.coordinator.execute(target_id)

    # ------------------ Status ------------------

    def status(self) -> dict[str, Any]:
        rec = self.last_recommendation
        return {
            "running": self._running,
            "current_target": self.current_target,
            "fast_cycles": self.fast_cycles,
            "rotation_cycles": self.rotation_cycles,
            "skipped_cycles": self.skipped_cycles,
            "last_fast_cycle_at": self.last_fast_cycle_at,
            "last_rotation_at": self.last_rotation_at,
            "last_recommendation": rec.to_dict() if rec is not None else None,
        }
