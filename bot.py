"""
AutoMine switch bot runtime.

Keeps staked deposits in whichever of two mines is open:
- fast loop polls both mines and switches when the current one closes
- periodic loop forces a rotation to the other mine
- single-flight, retried switch execution with a bounded ledger
- Supabase (or a local JSON file) as the persistence sink
- Telegram alerts + JSON status endpoints
"""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
import urllib.parse
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any

import config
import notifier
import supabase_store
from chain_client import ChainError, DryRunChainClient
from config import ConfigurationError, EngineConfig
from event_hooks import OPERATION_TERMINAL, EventHooks
from local_store import JsonFileStore
from mine_status import StatusTracker
from operation_ledger import COMPLETED, OperationLedger
from reporting import DailyReport
from scheduler import Scheduler
from switch_executor import ExecutionCoordinator
from timing_predictor import analyze, timing_report


logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def _now() -> float:
    return time.time()


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "never"
    return time.strftime("%Y-%m-%d %H:%M:%S UTC", time.gmtime(ts))


class MineBotRuntime:
    def __init__(
        self,
        cfg: EngineConfig | None = None,
        chain=None,
        store=None,
        *,
        ticker=None,
        clock=_now,
    ) -> None:
        self.lock = threading.RLock()
        self.cfg = cfg or config.build_engine_config()
        self._clock = clock
        self.started_at = clock()
        self.running = False
        self.mode = "INIT"  # INIT | RUNNING | HALTED
        self.halt_reason = ""
        self._stop_requested = threading.Event()

        self.chain = chain
        self.store = store if store is not None else self._build_store()
        self.hooks = EventHooks()
        self.tracker = StatusTracker(
            self.store, cap=self.cfg.history_cap, hooks=self.hooks, clock=clock
        )
        self.ledger = OperationLedger(cap=self.cfg.ledger_cap, trim_to=self.cfg.ledger_trim_to)
        self.coordinator = ExecutionCoordinator(
            None,
            self.ledger,
            store=self.store,
            hooks=self.hooks,
            max_retries=self.cfg.max_retries,
            retry_delay_sec=self.cfg.retry_delay_sec,
            confirmation_timeout_sec=self.cfg.confirmation_timeout_sec,
            clock=clock,
        )
        self.scheduler = Scheduler(
            self.cfg,
            None,
            self.tracker,
            self.coordinator,
            hooks=self.hooks,
            ticker=ticker,
            clock=clock,
        )
        self.report = DailyReport(self.store, clock=clock, started_at=self.started_at)
        self.report.attach(self.hooks)
        self.hooks.subscribe(OPERATION_TERMINAL, self._on_operation_terminal)

        self.depositors: int | None = None
        self.stale_operation = None

    # ------------------ Wiring ------------------

    @staticmethod
    def _build_store():
        if supabase_store._enabled():
            return supabase_store.SupabaseSink()
        return JsonFileStore(config.STATE_FILE)

    def _build_chain(self):
        if not config.DRY_RUN:
            raise ConfigurationError(
                "DRY_RUN=false requires a live chain client passed to MineBotRuntime"
            )
        a, b = self.cfg.candidates()
        return DryRunChainClient(a, b, cycle_sec=config.DRY_RUN_CYCLE_SEC, clock=self._clock)

    # ------------------ Lifecycle ------------------

    def initialize(self) -> None:
        logger.info("============================================================")
        logger.info("  AUTOMINE SWITCH BOT")
        logger.info("============================================================")

        config.validate(self.cfg)
        if self.chain is None:
            self.chain = self._build_chain()
        self.coordinator.chain = self.chain
        self.scheduler.chain = self.chain

        supabase_store.start_writer_thread()

        try:
            has_role = bool(self.chain.has_operator_role())
        except ChainError as e:
            raise ConfigurationError(f"Could not verify operator role: {e}") from e
        if not has_role:
            raise ConfigurationError("Bot wallet does not have BOT_ROLE on the AutoMine contract")
        logger.info("Operator role verified")

        current_label = "unknown"
        try:
            current = self.chain.read_current_target()
            current_label = self.cfg.label_for(current)
            self.depositors = int(self.chain.depositor_count())
            logger.info("Current mine: %s (%s)", current_label, current)
            logger.info("Users with deposits: %d", self.depositors)
        except ChainError as e:
            logger.warning("Startup state read failed, continuing: %s", e)

        stale = self.coordinator.restore()
        if stale is not None:
            self.stale_operation = stale
            notifier.notify_stale_operation(stale, self.cfg.label_for(stale.target_id))

        with self.lock:
            self.mode = "RUNNING"
            self.running = True
        notifier.notify_startup(current_label, self.depositors or 0)

    def start(self) -> None:
        self.scheduler.start(run_now=True)

    def housekeeping(self) -> None:
        self.report.maybe_send(
            hour_utc=config.DAILY_SUMMARY_HOUR_UTC,
            send=notifier.notify_daily_summary,
        )

    def request_shutdown(self, reason: str) -> None:
        with self.lock:
            self.halt_reason = reason
        self.coordinator.request_stop()
        self._stop_requested.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout*; True once shutdown has been requested."""
        return self._stop_requested.wait(timeout)

    def shutdown(self, reason: str) -> None:
        with self.lock:
            if self.mode == "HALTED":
                return
            self.mode = "HALTED"
            self.running = False
            self.halt_reason = reason
        self._stop_requested.set()
        logger.info("Shutting down: %s", reason)
        idle = self.scheduler.stop(wait_timeout=self.cfg.confirmation_timeout_sec + 5.0)
        if not idle:
            logger.warning("Exiting with switch operation still unconfirmed; it will be marked stale")
        supabase_store.stop_writer_thread()
        notifier.notify_shutdown(reason)

    # ------------------ Hook listeners ------------------

    def _on_operation_terminal(self, op) -> None:
        label = self.cfg.label_for(op.target_id)
        if op.status == COMPLETED:
            notifier.notify_switch_completed(op, label)
        elif op.stale:
            return
        elif self.coordinator.is_exhausted(op):
            notifier.notify_retries_exhausted(op, label, self.coordinator.max_retries)

    # ------------------ Status ------------------

    def _timing(self) -> dict:
        a, b = self.cfg.candidates()
        current = self.scheduler.current_target or a
        target = self.cfg.other_candidate(current)
        return timing_report(
            analyze(self.tracker.history(current)),
            analyze(self.tracker.history(target)),
            self._clock(),
            horizon_sec=self.cfg.window_horizon_sec,
            buffer_sec=self.cfg.window_buffer_sec,
        )

    def _mines(self) -> list[dict]:
        rows = []
        for address in self.cfg.candidates():
            latest = self.tracker.latest(address)
            history = self.tracker.history(address)
            rows.append({
                "address": address,
                "label": self.cfg.label_for(address),
                "is_available": latest.is_available if latest else None,
                "observed_at": latest.observed_at if latest else None,
                "history_entries": len(history),
                "last_change": history[-1].at if history else None,
            })
        return rows

    def status_payload(self) -> dict:
        now = self._clock()
        in_flight = self.coordinator.in_flight()
        with self.lock:
            mode = self.mode
            halt_reason = self.halt_reason
            depositors = self.depositors
        return {
            "mode": mode,
            "halt_reason": halt_reason,
            "dry_run": bool(config.DRY_RUN),
            "chain_id": config.CHAIN_ID,
            "contract": config.AUTOMINE_CONTRACT_ADDRESS,
            "uptime_sec": max(0.0, now - self.started_at),
            "depositors": depositors,
            "scheduler": self.scheduler.status(),
            "mines": self._mines(),
            "timing": self._timing(),
            "in_flight": in_flight.to_dict() if in_flight else None,
            "recent_operations": [op.to_dict() for op in self.ledger.recent(5)],
            "ledger": self.ledger.stats(),
            "stale_operation": self.stale_operation.to_dict() if self.stale_operation else None,
            "daily": self.report.summary(now=now),
        }

    def operations_payload(self, limit: int = 20) -> dict:
        return {
            "operations": [op.to_dict() for op in self.ledger.recent(limit)],
            "stats": self.ledger.stats(),
        }

    def status_text(self) -> str:
        status = self.status_payload()
        sched = status["scheduler"]
        current = sched["current_target"]
        lines = [
            "AutoMine Bot Status Report",
            f"Mode: {status['mode']}{' (DRY RUN)' if status['dry_run'] else ''}",
            f"Current mine: {self.cfg.label_for(current) if current else 'unknown'}",
            f"Last check: {_fmt_ts(sched['last_fast_cycle_at'])}",
            f"Last rotation: {_fmt_ts(sched['last_rotation_at'])}",
        ]
        for mine in status["mines"]:
            state = {True: "active", False: "inactive"}.get(mine["is_available"], "unknown")
            lines.append(f"  {mine['label']}: {state} ({mine['history_entries']} transitions)")
        lines.append(f"Timing: {status['timing']['recommendation']}")
        if status["in_flight"]:
            op = status["in_flight"]
            lines.append(f"In flight: {op['id']} -> {self.cfg.label_for(op['target_id'])} ({op['status']})")
        stats = status["ledger"]
        rate = stats["success_rate"]
        lines.append(
            f"Operations: {stats['size']} kept, {stats['completed']} completed, "
            f"{stats['failed']} failed, success rate {'n/a' if rate is None else f'{rate * 100:.1f}%'}"
        )
        for op in status["recent_operations"]:
            line = f"  {op['id']}: {op['status']} -> {self.cfg.label_for(op['target_id'])}"
            if op["error"]:
                line += f" ({op['error']})"
            lines.append(line)
        return "\n".join(lines)


_RUNTIME: MineBotRuntime | None = None


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


class DashboardHandler(BaseHTTPRequestHandler):
    def log_message(self, fmt: str, *args: Any) -> None:  # noqa: D401
        logger.debug("HTTP %s - %s", self.address_string(), fmt % args)

    def _send_json(self, data: dict, code: int = 200) -> None:
        payload = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _send_text(self, text: str, code: int = 200) -> None:
        body = text.encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:  # noqa: N802
        parsed = urllib.parse.urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"

        if path == "/health":
            rt = _RUNTIME
            ok = rt is not None and rt.mode == "RUNNING"
            self._send_json({"ok": ok, "mode": rt.mode if rt else "INIT"}, 200 if ok else 503)
            return

        if _RUNTIME is None:
            self._send_json({"error": "runtime not ready"}, 503)
            return

        try:
            if path in ("/", "/status"):
                self._send_text(_RUNTIME.status_text())
                return
            if path == "/api/status":
                self._send_json(_RUNTIME.status_payload())
                return
            if path == "/api/operations":
                query = urllib.parse.parse_qs(parsed.query)
                try:
                    limit = int(query.get("limit", ["20"])[0])
                except (TypeError, ValueError):
                    self._send_json({"error": "invalid limit"}, 400)
                    return
                self._send_json(_RUNTIME.operations_payload(max(1, min(limit, 100))))
                return
        except Exception:
            logger.exception("Unhandled exception serving %s", path)
            self._send_json({"error": "internal server error"}, 500)
            return

        self._send_json({"error": "not found"}, 404)


def start_http_server() -> ThreadingHTTPServer | None:
    if config.HEALTH_PORT <= 0:
        return None
    server = ThreadingHTTPServer(("0.0.0.0", int(config.HEALTH_PORT)), DashboardHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True, name="dashboard-server")
    thread.start()
    logger.info("Status server started on :%s", config.HEALTH_PORT)
    return server


def run() -> None:
    global _RUNTIME
    setup_logging()
    config.print_banner()

    rt = MineBotRuntime()
    _RUNTIME = rt

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        rt.request_shutdown(f"signal {signum}")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGBREAK"):
        signal.signal(signal.SIGBREAK, _handle_signal)

    server = None
    try:
        try:
            rt.initialize()
        except ConfigurationError as e:
            logger.critical("Startup failed: %s", e)
            notifier.notify_error(f"Startup failed: {e}")
            raise SystemExit(1) from e

        server = start_http_server()
        rt.start()
        logger.info("AutoMine bot running")

        while not rt.wait(5.0):
            try:
                rt.housekeeping()
            except Exception as e:
                logger.exception("Housekeeping error: %s", e)

    finally:
        if server is not None:
            try:
                server.shutdown()
            except Exception as e:
                logger.warning("Status server shutdown failed: %s", e)
        if rt.mode != "INIT":
            rt.shutdown(rt.halt_reason or "process exit")


if __name__ == "__main__":
    run()
