"""
config.py -- All tunable parameters for the AutoMine switch bot.

Every value here is loaded from environment variables so you can configure
the bot via the host's dashboard (or a local .env file) without touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Fatal startup problem: the scheduler must not start."""


# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# ---------------------------------------------------------------------------
# DRY RUN -- the most important toggle
# ---------------------------------------------------------------------------

# When True (the default!), the bot:
#   - Uses a simulated chain client with two mines that take turns being open
#   - SIMULATES switch transactions and confirmations
#   - Logs everything as if real
#   - Tags Telegram messages with [DRY RUN]
#
# There is no live chain client in this repository; a deployment wires its
# own into bot.MineBotRuntime.
DRY_RUN: bool = _env("DRY_RUN", True, bool)

# ---------------------------------------------------------------------------
# Chain identity (reported in the banner and status payload only)
# ---------------------------------------------------------------------------

RPC_URL: str = _env("RPC_URL", "")
CHAIN_ID: int = _env("CHAIN_ID", 0, int)

# The AutoMine staking contract that holds deposits and exposes switchMine().
AUTOMINE_CONTRACT_ADDRESS: str = _env("AUTOMINE_CONTRACT_ADDRESS", "")

# ---------------------------------------------------------------------------
# The two candidate mines
# ---------------------------------------------------------------------------

# The bot rotates deposits between exactly these two mines.  Whichever one
# the contract currently points at is "current"; the other is "target".
# Both must be set and different or the bot refuses to start.
CURRENT_MINE_ADDRESS: str = _env("CURRENT_MINE_ADDRESS", "")
TARGET_MINE_ADDRESS: str = _env("TARGET_MINE_ADDRESS", "")

# Human-readable names for logs and Telegram messages.
CURRENT_MINE_LABEL: str = _env("CURRENT_MINE_LABEL", "Mine A")
TARGET_MINE_LABEL: str = _env("TARGET_MINE_LABEL", "Mine B")

# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

# Fast monitoring loop interval in seconds.
# Every cycle: read both mines -> record transitions -> maybe switch.
# 30s catches a mine closing quickly without hammering the RPC node.
POLL_INTERVAL_SECONDS: int = _env("POLL_INTERVAL_SECONDS", 30, int)

# Forced rotation interval in hours.
# Independently of availability, the bot flips to the other mine this often.
# 24 = once a day.
MINE_SWITCH_INTERVAL_HOURS: int = _env("MINE_SWITCH_INTERVAL_HOURS", 24, int)

# ---------------------------------------------------------------------------
# Switch execution
# ---------------------------------------------------------------------------

# How many times a failed switch is retried before the bot gives up and
# pages the operator.  Total attempts = MAX_RETRIES + 1.
MAX_RETRIES: int = _env("MAX_RETRIES", 3, int)

# Fixed delay between a failed attempt and its retry (seconds).
RETRY_DELAY_SEC: float = _env("RETRY_DELAY_SEC", 30.0, float)

# How long to wait for a switch transaction to be confirmed (seconds).
# Raising it: fewer false timeouts on a congested chain.
# Lowering it: failures surface (and retry) sooner.
CONFIRMATION_TIMEOUT_SEC: float = _env("CONFIRMATION_TIMEOUT_SEC", 120.0, float)

# ---------------------------------------------------------------------------
# Bounded memory
# ---------------------------------------------------------------------------

# Transitions kept per mine.  Only changes are recorded, so 100 entries
# cover weeks of a mine that opens and closes a few times a day.
HISTORY_CAP: int = _env("HISTORY_CAP", 100, int)

# Operation ledger: once it grows past LEDGER_CAP it is cut back to the
# newest LEDGER_TRIM_TO operations.
LEDGER_CAP: int = _env("LEDGER_CAP", 100, int)
LEDGER_TRIM_TO: int = _env("LEDGER_TRIM_TO", 50, int)

# ---------------------------------------------------------------------------
# Timing heuristic
# ---------------------------------------------------------------------------

# An advisory switch window is only computed when the current mine is
# predicted to close within this horizon (seconds).
SWITCH_WINDOW_HORIZON_SEC: float = _env("SWITCH_WINDOW_HORIZON_SEC", 3600.0, float)

# The window opens this long before the target mine's predicted change.
SWITCH_WINDOW_BUFFER_SEC: float = _env("SWITCH_WINDOW_BUFFER_SEC", 1800.0, float)

# ---------------------------------------------------------------------------
# Dry-run simulation
# ---------------------------------------------------------------------------

# In dry run the two mines alternate: each is open for half of this period.
DRY_RUN_CYCLE_SEC: float = _env("DRY_RUN_CYCLE_SEC", 600.0, float)

# ---------------------------------------------------------------------------
# Notifications & persistence
# ---------------------------------------------------------------------------

# Telegram bot token (from @BotFather) and your chat ID (from @userinfobot).
TELEGRAM_BOT_TOKEN: str = _env("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID: str = _env("TELEGRAM_CHAT_ID", "")

# Supabase (PostgREST) -- cloud persistence for history, operations and state.
# If not set, the bot falls back to a local JSON file (STATE_FILE).
SUPABASE_URL: str = _env("SUPABASE_URL", "")
SUPABASE_KEY: str = _env("SUPABASE_KEY", "")

# Hour (UTC) to send the daily operation summary via Telegram.
DAILY_SUMMARY_HOUR_UTC: int = _env("DAILY_SUMMARY_HOUR_UTC", 0, int)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# Python log level.  DEBUG shows every poll; INFO is normal operations.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# Directory for local state when Supabase is not configured.
LOG_DIR: str = _env("LOG_DIR", "logs")

# Local sink file (history snapshots, in-flight operations, audit rows).
STATE_FILE: str = _env("STATE_FILE", os.path.join(LOG_DIR, "automine_state.json"))

# ---------------------------------------------------------------------------
# Health-check HTTP server
# ---------------------------------------------------------------------------

# Hosts expect a process to bind to a port.
# We run a tiny HTTP server that returns bot status as JSON.
# Set to 0 to disable.
HEALTH_PORT: int = _env("PORT", _env("HEALTH_PORT", 8080, int), int)


# ---------------------------------------------------------------------------
# Frozen engine config handed to the core components
# ---------------------------------------------------------------------------

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(address: str) -> str:
    """Addresses compare case-insensitively (checksum casing is cosmetic)."""
    return str(address or "").strip().lower()


@dataclass(frozen=True)
class EngineConfig:
    current_mine: str = ""
    target_mine: str = ""
    current_label: str = "Mine A"
    target_label: str = "Mine B"
    poll_interval_sec: float = 30.0
    rotation_interval_hours: float = 24.0
    max_retries: int = 3
    retry_delay_sec: float = 30.0
    confirmation_timeout_sec: float = 120.0
    history_cap: int = 100
    ledger_cap: int = 100
    ledger_trim_to: int = 50
    window_horizon_sec: float = 3600.0
    window_buffer_sec: float = 1800.0

    @property
    def rotation_interval_sec(self) -> float:
        return float(self.rotation_interval_hours) * 3600.0

    def candidates(self) -> tuple[str, str]:
        return normalize_address(self.current_mine), normalize_address(self.target_mine)

    def label_for(self, address: str) -> str:
        addr = normalize_address(address)
        if addr == normalize_address(self.current_mine):
            return self.current_label
        if addr == normalize_address(self.target_mine):
            return self.target_label
        return addr

    def other_candidate(self, current: str) -> str:
        """
        The mine to rotate to from *current*.

        Anything that is not the first candidate maps back to it, so an
        unknown on-chain value still converges onto a configured mine.
        """
        a, b = self.candidates()
        if not a or not b:
            raise ConfigurationError("Target mine addresses not configured")
        return b if normalize_address(current) == a else a


def build_engine_config() -> EngineConfig:
    return EngineConfig(
        current_mine=CURRENT_MINE_ADDRESS,
        target_mine=TARGET_MINE_ADDRESS,
        current_label=CURRENT_MINE_LABEL,
        target_label=TARGET_MINE_LABEL,
        poll_interval_sec=float(POLL_INTERVAL_SECONDS),
        rotation_interval_hours=float(MINE_SWITCH_INTERVAL_HOURS),
        max_retries=int(MAX_RETRIES),
        retry_delay_sec=float(RETRY_DELAY_SEC),
        confirmation_timeout_sec=float(CONFIRMATION_TIMEOUT_SEC),
        history_cap=int(HISTORY_CAP),
        ledger_cap=int(LEDGER_CAP),
        ledger_trim_to=int(LEDGER_TRIM_TO),
        window_horizon_sec=float(SWITCH_WINDOW_HORIZON_SEC),
        window_buffer_sec=float(SWITCH_WINDOW_BUFFER_SEC),
    )


def validate(cfg: EngineConfig) -> None:
    """Raise ConfigurationError for anything that makes the scheduler unsafe to start."""
    problems = []
    a, b = cfg.candidates()
    if not a or not b:
        problems.append("CURRENT_MINE_ADDRESS and TARGET_MINE_ADDRESS must both be set")
    else:
        for name, value in (("CURRENT_MINE_ADDRESS", a), ("TARGET_MINE_ADDRESS", b)):
            if not _ADDRESS_RE.match(value):
                problems.append(f"{name} is not a 0x-prefixed 20-byte address: {value!r}")
        if a == b:
            problems.append("CURRENT_MINE_ADDRESS and TARGET_MINE_ADDRESS must differ")
    if cfg.poll_interval_sec <= 0:
        problems.append("POLL_INTERVAL_SECONDS must be positive")
    if cfg.rotation_interval_hours <= 0:
        problems.append("MINE_SWITCH_INTERVAL_HOURS must be positive")
    if cfg.max_retries < 0:
        problems.append("MAX_RETRIES must not be negative")
    if cfg.retry_delay_sec < 0:
        problems.append("RETRY_DELAY_SEC must not be negative")
    if cfg.confirmation_timeout_sec <= 0:
        problems.append("CONFIRMATION_TIMEOUT_SEC must be positive")
    if cfg.history_cap < 1:
        problems.append("HISTORY_CAP must be at least 1")
    if cfg.ledger_trim_to < 1 or cfg.ledger_cap < cfg.ledger_trim_to:
        problems.append("LEDGER_CAP must be >= LEDGER_TRIM_TO >= 1")
    if problems:
        raise ConfigurationError("; ".join(problems))


# ---------------------------------------------------------------------------
# Startup banner -- printed when the bot launches
# ---------------------------------------------------------------------------

def print_banner():
    """Print a clear summary of all active settings so you know what's running."""
    mode = "DRY RUN (simulated chain)" if DRY_RUN else "LIVE (real transactions!)"
    lines = [
        "",
        "=" * 60,
        "  AUTOMINE SWITCH BOT",
        "=" * 60,
        f"  Mode:            {mode}",
        f"  Chain ID:        {CHAIN_ID or 'n/a'}",
        f"  Contract:        {AUTOMINE_CONTRACT_ADDRESS or 'NOT SET'}",
        f"  {CURRENT_MINE_LABEL + ':':<17}{CURRENT_MINE_ADDRESS or 'NOT SET'}",
        f"  {TARGET_MINE_LABEL + ':':<17}{TARGET_MINE_ADDRESS or 'NOT SET'}",
        f"  Poll interval:   {POLL_INTERVAL_SECONDS}s",
        f"  Rotation:        every {MINE_SWITCH_INTERVAL_HOURS}h",
        f"  Retries:         {MAX_RETRIES} x {RETRY_DELAY_SEC:.0f}s",
        f"  Confirm timeout: {CONFIRMATION_TIMEOUT_SEC:.0f}s",
        f"  History cap:     {HISTORY_CAP} transitions/mine",
        f"  Ledger:          {LEDGER_CAP} -> {LEDGER_TRIM_TO}",
        f"  Health port:     {HEALTH_PORT}",
        f"  Log level:       {LOG_LEVEL}",
        f"  Telegram:        {'configured' if TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID else 'NOT SET'}",
        f"  Supabase:        {'configured' if SUPABASE_URL and SUPABASE_KEY else 'NOT SET (local ' + STATE_FILE + ')'}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
