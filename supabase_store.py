"""
supabase_store.py -- Supabase (PostgREST) persistence sink for the AutoMine bot.

Provides cloud persistence for status histories, the operation ledger, the
in-flight switch record, the operation audit log and daily reports, so data
survives redeploys on hosts with an ephemeral filesystem.

PATTERN:
  Matches notifier.py style:
    - Never raises -- logs warnings on failure
    - Bot works identically without Supabase configured (local JSON file)
    - Uses urllib.request only

WRITE PATH:
  All writes go to a collections.deque queue.  A daemon thread flushes
  every 10s, batching by table.  The engine never blocks on Supabase I/O.

READ PATH:
  SupabaseSink keeps a local copy of everything written this run and only
  goes to the network the first time a key is read.

TABLES:
  bot_state  (key text primary key, data jsonb, updated_at float8)
             one row per snapshot key, upserted
  bot_events (id bigserial, key text, created_at float8, data jsonb)
             append-only rows, one log per key
"""

from __future__ import annotations

import collections
import copy
import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

import config
from local_store import MemoryStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

# Max queued writes before dropping oldest (prevents unbounded memory)
MAX_QUEUE_SIZE = 1000

# Write queue: each item is (table_name, row_dict)
_write_queue: collections.deque = collections.deque(maxlen=MAX_QUEUE_SIZE)

# Writer thread state
_writer_thread: threading.Thread | None = None
_writer_stop = threading.Event()


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

def _enabled() -> bool:
    """Return True if Supabase is configured."""
    return bool(config.SUPABASE_URL and config.SUPABASE_KEY)


# ---------------------------------------------------------------------------
# Core HTTP helper
# ---------------------------------------------------------------------------

def _request(method: str, path: str, body: Any = None,
             params: dict | None = None, timeout: int = 10,
             upsert: bool = False):
    """
    Make a PostgREST request to Supabase.  Never raises.

    Args:
        method:  HTTP method (GET, POST, PATCH, DELETE)
        path:    Table path, e.g. "/rest/v1/bot_state"
        body:    JSON body for POST/PATCH
        params:  Query params dict
        timeout: Request timeout in seconds
        upsert:  If True, add resolution=merge-duplicates to Prefer header

    Returns:
        Parsed JSON response (list or dict), or None on failure.
    """
    if not _enabled():
        return None

    url = config.SUPABASE_URL.rstrip("/") + path
    if params:
        url += "?" + urllib.parse.urlencode(params, doseq=True)

    prefer = "return=minimal"
    if method == "GET":
        prefer = "return=representation"
    elif upsert:
        prefer = "return=minimal, resolution=merge-duplicates"

    headers = {
        "apikey": config.SUPABASE_KEY,
        "Authorization": f"Bearer {config.SUPABASE_KEY}",
        "Content-Type": "application/json",
        "Prefer": prefer,
        "User-Agent": "AutoMineBot/1.0",
    }

    data = None
    if body is not None:
        data = json.dumps(body).encode("utf-8")

    req = urllib.request.Request(url, data=data, headers=headers, method=method)

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            resp_body = resp.read().decode("utf-8")
            if resp_body:
                return json.loads(resp_body)
            return {}
    except urllib.error.HTTPError as e:
        err_body = e.read().decode("utf-8", errors="replace")[:200]
        logger.warning("Supabase %s %s HTTP %d: %s", method, path, e.code, err_body)
        return None
    except Exception as e:
        logger.warning("Supabase %s %s failed: %s", method, path, e)
        return None


# ---------------------------------------------------------------------------
# Write operations (queue-based, non-blocking)
# ---------------------------------------------------------------------------

def save_state(key: str, data: Any):
    """Queue a snapshot upsert keyed by *key*."""
    if not _enabled():
        return
    _write_queue.append(("bot_state", {
        "key": str(key),
        "data": data,
        "updated_at": time.time(),
    }))


def save_event(key: str, record: dict):
    """Queue one append-only row for the log named *key*."""
    if not _enabled():
        return
    _write_queue.append(("bot_events", {
        "key": str(key),
        "created_at": time.time(),
        "data": dict(record),
    }))


# ---------------------------------------------------------------------------
# Read operations (startup / first access only)
# ---------------------------------------------------------------------------

def load_state(key: str):
    """
    Load the snapshot stored under *key*.

    Returns the stored data, or None when missing or on failure.
    """
    if not _enabled():
        return None

    result = _request("GET", "/rest/v1/bot_state", params={
        "key": f"eq.{key}",
        "select": "data",
        "limit": "1",
    })
    if result is None:
        logger.warning("Supabase: failed to load state %s -- using local", key)
        return None
    if isinstance(result, list) and result:
        return result[0].get("data")
    return None


def load_events(key: str, limit: int = 1000) -> list:
    """Load the newest *limit* rows of log *key*, returned oldest first."""
    if not _enabled():
        return []

    result = _request("GET", "/rest/v1/bot_events", params={
        "key": f"eq.{key}",
        "select": "data,created_at",
        "order": "id.desc",
        "limit": str(int(limit)),
    })
    if not isinstance(result, list):
        return []
    rows = [r.get("data") for r in reversed(result) if isinstance(r.get("data"), dict)]
    logger.info("Supabase: loaded %d %s rows", len(rows), key)
    return rows


# ---------------------------------------------------------------------------
# Background writer thread
# ---------------------------------------------------------------------------

def _flush_queue():
    """Flush all pending writes, batching by table."""
    if not _write_queue:
        return

    # Drain the queue into batches by table
    batches: dict = {}
    while _write_queue:
        try:
            table, row = _write_queue.popleft()
        except IndexError:
            break
        batches.setdefault(table, []).append(row)

    for table, rows in batches.items():
        if table == "bot_state":
            # Upsert: only the last snapshot per key matters
            latest = {}
            for row in rows:
                latest[row["key"]] = row
            result = _request(
                "POST", "/rest/v1/bot_state",
                body=list(latest.values()),
                params={"on_conflict": "key"},
                upsert=True,
            )
            if result is None:
                logger.debug("Supabase: bot_state upsert failed (%d keys)", len(latest))
        else:
            result = _request("POST", f"/rest/v1/{table}", body=rows)
            if result is None:
                logger.debug("Supabase: %s insert failed (%d rows)", table, len(rows))
            else:
                logger.debug("Supabase: inserted %d rows into %s", len(rows), table)


def _writer_loop():
    """Background writer: flush queue every 10s."""
    logger.info("Supabase writer thread started")

    while not _writer_stop.is_set():
        try:
            _flush_queue()
        except Exception as e:
            logger.warning("Supabase writer error: %s", e)

        # Sleep 10s (interruptible)
        _writer_stop.wait(10)

    # Final flush on shutdown
    try:
        _flush_queue()
    except Exception as e:
        logger.warning("Supabase final flush failed: %s", e)
    logger.info("Supabase writer thread stopped")


def start_writer_thread():
    """Start the background writer daemon thread."""
    global _writer_thread

    if not _enabled():
        logger.info("Supabase not configured -- persistence disabled")
        return

    _writer_stop.clear()
    _writer_thread = threading.Thread(target=_writer_loop, daemon=True, name="supabase-writer")
    _writer_thread.start()
    logger.info("Supabase persistence enabled (URL: %s...)", config.SUPABASE_URL[:40])


def stop_writer_thread(timeout: float = 15.0):
    """Signal the writer to do its final flush and wait for it."""
    _writer_stop.set()
    if _writer_thread is not None:
        _writer_thread.join(timeout)


# ---------------------------------------------------------------------------
# Sink adapter
# ---------------------------------------------------------------------------

class SupabaseSink(MemoryStore):
    """
    Persistence sink backed by Supabase.

    Writes land in the local copy immediately and are queued for the writer
    thread.  A key is fetched from Supabase once, on first read.
    """

    def __init__(self, log_limit: int = 1000) -> None:
        super().__init__(log_limit=log_limit)
        self._fetched_logs: set[str] = set()
        self._fetched_snapshots: set[str] = set()

    def append(self, key: str, record: dict[str, Any]) -> None:
        super().append(key, record)
        save_event(key, copy.deepcopy(record))

    def snapshot(self, key: str, record: Any) -> None:
        super().snapshot(key, record)
        with self._lock:
            self._fetched_snapshots.add(str(key))
        save_state(key, copy.deepcopy(record))

    def read_all(self, key: str) -> list[dict[str, Any]]:
        key = str(key)
        with self._lock:
            need_fetch = key not in self._fetched_logs
            self._fetched_logs.add(key)
        if need_fetch:
            remote = load_events(key, limit=self.log_limit)
            if remote:
                with self._lock:
                    rows = remote + self._logs.get(key, [])
                    self._logs[key] = rows[-self.log_limit:]
        return super().read_all(key)

    def load_snapshot(self, key: str) -> Any:
        key = str(key)
        with self._lock:
            need_fetch = key not in self._fetched_snapshots
            self._fetched_snapshots.add(key)
        if need_fetch:
            remote = load_state(key)
            if remote is not None:
                MemoryStore.snapshot(self, key, remote)
        return super().load_snapshot(key)
