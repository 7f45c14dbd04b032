"""
switch_executor.py -- Single-flight, retried execution of mine switches.

execute(target) drives one switch request from first submit to a terminal
state, synchronously:

  attempt 0: pending -> submit -> processing -> confirm -> completed | failed
  failed and retries left: wait RETRY_DELAY, attempt n+1 (a new operation)
  failed with retry_count == max_retries: stays failed, logged CRITICAL

Only one request runs at a time.  A second execute() while one is in flight
is ignored (returns None), whoever calls it.

Every terminal attempt lands in the OperationLedger, the sink audit log and
the on_operation_terminal hook.  The in-flight attempt is snapshotted to the
sink so a crash mid-confirmation is visible at the next start; such an
attempt is recorded as failed + stale and never retried automatically.

Whether the contract already points at the target is the caller's check,
not this module's.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from chain_client import ConfirmationError, ConfirmationTimeoutError, SubmitError
from config import normalize_address
from operation_ledger import (
    COMPLETED,
    FAILED,
    PROCESSING,
    OperationLedger,
    SwitchOperation,
    operation_from_dict,
)

logger = logging.getLogger(__name__)

IN_FLIGHT_KEY = "switch_in_flight"
LEDGER_KEY = "operation_ledger"
AUDIT_KEY = "switch_operations"

STALE_ERROR = "outcome unknown: interrupted before confirmation (not retried)"


def _confirmed(result: Any) -> bool:
    if isinstance(result, dict):
        return bool(result.get("success", False))
    return bool(getattr(result, "success", False))


class ExecutionCoordinator:
    def __init__(
        self,
        chain,
        ledger: OperationLedger,
        *,
        store=None,
        hooks=None,
        max_retries: int = 3,
        retry_delay_sec: float = 30.0,
        confirmation_timeout_sec: float = 120.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.chain = chain
        self.ledger = ledger
        self.store = store
        self.hooks = hooks
        self.max_retries = max(0, int(max_retries))
        self.retry_delay_sec = max(0.0, float(retry_delay_sec))
        self.confirmation_timeout_sec = float(confirmation_timeout_sec)
        self._clock = clock
        self.log = log or logger

        self._flight_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._current: SwitchOperation | None = None
        self._stop = threading.Event()
        self._idle = threading.Event()
        self._idle.set()
        self._sleep = sleep or self._stop.wait
        self._op_counter = 0

    # ------------------ Core API ------------------

    def execute(self, target_id: str) -> SwitchOperation | None:
        tid = normalize_address(target_id)
        if self._stop.is_set():
            self.log.info("Shutdown requested, switch to %s ignored", tid)
            return None
        if not self._flight_lock.acquire(blocking=False):
            busy = self.in_flight()
            self.log.warning(
                "Switch to %s ignored: operation %s is %s",
                tid,
                busy.id if busy else "?",
                busy.status if busy else "in flight",
            )
            return None

        self._idle.clear()
        try:
            retry_count = 0
            while True:
                op = self._attempt(tid, retry_count)
                if op.status == COMPLETED:
                    self._finish(op)
                    return op

                if self.is_exhausted(op):
                    self.log.critical(
                        "Operation %s exceeded maximum retries (%d): %s",
                        op.id, self.max_retries, op.error,
                    )
                    self._finish(op)
                    return op

                self._finish(op)
                if self._stop.is_set():
                    self.log.warning("Shutdown requested, not retrying failed operation %s", op.id)
                    return op

                self.log.info(
                    "Retrying failed operation %s (attempt %d/%d) in %.0fs",
                    op.id, retry_count + 1, self.max_retries, self.retry_delay_sec,
                )
                self._sleep(self.retry_delay_sec)
                if self._stop.is_set():
                    self.log.warning("Shutdown requested, not retrying failed operation %s", op.id)
                    return op
                retry_count += 1
        finally:
            with self._state_lock:
                self._current = None
            self._idle.set()
            self._flight_lock.release()

    def is_exhausted(self, op: SwitchOperation) -> bool:
        return op.status == FAILED and op.retry_count >= self.max_retries

    # ------------------ Lifecycle ------------------

    def in_flight(self) -> SwitchOperation | None:
        with self._state_lock:
            if self._current is None:
                return None
            return SwitchOperation(**self._current.to_dict())

    def is_busy(self) -> bool:
        return not self._idle.is_set()

    def request_stop(self) -> None:
        """No new executions, no further retries.  The running attempt finishes."""
        self._stop.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._idle.wait(timeout)

    def restore(self) -> SwitchOperation | None:
        """
        Reload the ledger and classify an attempt a crash left unfinished.

        Returns the stale operation when one was found.
        """
        if self.store is None:
            return None
        try:
            payload = self.store.load_snapshot(LEDGER_KEY)
            if payload:
                self.ledger.restore_state(payload)
                self.log.info("Restored %d operations into the ledger", len(self.ledger))
        except Exception as e:
            self.log.warning("Failed to restore operation ledger: %s", e)

        try:
            raw = self.store.load_snapshot(IN_FLIGHT_KEY)
        except Exception as e:
            self.log.warning("Failed to load in-flight operation: %s", e)
            return None
        op = operation_from_dict(raw) if raw else None
        if op is None or not op.in_flight:
            return None

        op.status = FAILED
        op.stale = True
        op.error = STALE_ERROR
        op.finished_at = self._clock()
        self.log.error(
            "Operation %s to %s was left %s by a previous run (tx %s); marked stale",
            op.id, op.target_id, raw.get("status"), op.tx_handle or "none",
        )
        self._finish(op)
        return op

    # ------------------ Internals ------------------

    def _new_id(self) -> str:
        with self._state_lock:
            self._op_counter += 1
            return f"switch_{int(self._clock() * 1000)}_{self._op_counter}"

    def _attempt(self, tid: str, retry_count: int) -> SwitchOperation:
        op = SwitchOperation(
            id=self._new_id(),
            target_id=tid,
            started_at=self._clock(),
            retry_count=retry_count,
        )
        with self._state_lock:
            self._current = op
        self.log.info("Starting mine switch operation %s to %s (retry %d)", op.id, tid, retry_count)
        self._snapshot_in_flight(op)

        try:
            handle = self.chain.submit_switch(tid)
        except SubmitError as e:
            return self._fail(op, f"submit failed: {e}")
        except Exception as e:
            self.log.exception("Unexpected error submitting operation %s", op.id)
            return self._fail(op, f"submit failed: {e}")

        with self._state_lock:
            op.status = PROCESSING
            op.tx_handle = str(handle)
        self._snapshot_in_flight(op)
        self.log.info("Mine switch transaction sent: %s", handle)

        try:
            result = self.chain.await_confirmation(handle, self.confirmation_timeout_sec)
        except (ConfirmationTimeoutError, TimeoutError) as e:
            return self._fail(
                op, f"confirmation timed out after {self.confirmation_timeout_sec:.0f}s: {e}"
            )
        except ConfirmationError as e:
            return self._fail(op, f"confirmation failed: {e}")
        except Exception as e:
            self.log.exception("Unexpected error confirming operation %s", op.id)
            return self._fail(op, f"confirmation failed: {e}")

        if not _confirmed(result):
            return self._fail(op, "transaction failed on chain")

        with self._state_lock:
            op.status = COMPLETED
            op.finished_at = self._clock()
        self.log.info("Mine switch completed successfully: %s (tx %s)", op.id, op.tx_handle)
        return op

    def _fail(self, op: SwitchOperation, message: str) -> SwitchOperation:
        with self._state_lock:
            op.status = FAILED
            op.error = message
            op.finished_at = self._clock()
        self.log.error("Mine switch operation %s failed: %s", op.id, message)
        return op

    def _finish(self, op: SwitchOperation) -> None:
        self.ledger.record(op)
        if self.store is not None:
            try:
                self.store.append(AUDIT_KEY, op.to_dict())
                self.store.snapshot(LEDGER_KEY, self.ledger.snapshot_state())
                self.store.snapshot(IN_FLIGHT_KEY, None)
            except Exception as e:
                self.log.warning("Failed to persist operation %s: %s", op.id, e)
        if self.hooks is not None:
            self.hooks.on_operation_terminal(op)

    def _snapshot_in_flight(self, op: SwitchOperation) -> None:
        if self.store is None:
            return
        try:
            self.store.snapshot(IN_FLIGHT_KEY, op.to_dict())
        except Exception as e:
            self.log.warning("Failed to snapshot in-flight operation %s: %s", op.id, e)
