"""
notifier.py -- Telegram notifications for the AutoMine switch bot.

Sends alerts via the Telegram Bot API for:
  - Bot startup / shutdown
  - Each completed mine switch
  - Switches that exhausted their retries (operator must look)
  - Operations a restart found without an outcome
  - Daily operation summary
  - Errors that need human attention

SETUP:
  1. Message @BotFather on Telegram to create a bot -> get TELEGRAM_BOT_TOKEN
  2. Message @userinfobot to find your TELEGRAM_CHAT_ID
  3. Set both as environment variables

ZERO DEPENDENCIES:
  Uses urllib.request to POST to https://api.telegram.org/bot{token}/sendMessage
"""

from __future__ import annotations

import html
import json
import logging
import urllib.error
import urllib.request

import config

logger = logging.getLogger(__name__)

# Telegram Bot API base URL template
TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"


def _telegram_api(method: str, payload: dict) -> dict:
    """
    Call any Telegram Bot API method.

    Returns the parsed JSON response dict, or {} on failure.

    This function NEVER raises -- failures are logged and swallowed.
    """
    if not config.TELEGRAM_BOT_TOKEN:
        logger.debug("Telegram not configured, skipping %s", method)
        return {}

    url = TELEGRAM_API.format(token=config.TELEGRAM_BOT_TOKEN, method=method)
    data = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "AutoMineBot/1.0",
    }
    req = urllib.request.Request(url, data=data, headers=headers)

    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            result = json.loads(resp.read().decode("utf-8"))
            if result.get("ok"):
                return result
            logger.warning("Telegram %s returned ok=false: %s", method, result)
            return {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        logger.warning("Telegram %s HTTP %d: %s", method, e.code, body[:200])
        return {}
    except Exception as e:
        logger.warning("Telegram %s failed: %s", method, e)
        return {}


def _send_message(text: str, parse_mode: str = "HTML") -> bool:
    """
    Send a plain message via Telegram Bot API.

    Returns True if sent successfully, False otherwise.
    This function NEVER raises -- failures are logged and swallowed.
    """
    if not config.TELEGRAM_CHAT_ID:
        logger.debug("Telegram chat ID not set, skipping notification")
        return False

    result = _telegram_api("sendMessage", {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": text,
        "parse_mode": parse_mode,
        "disable_web_page_preview": True,
    })
    return bool(result)


def _prefix() -> str:
    """Add [DRY RUN] prefix when in dry-run mode."""
    return "[DRY RUN] " if config.DRY_RUN else ""


def _short(address: str) -> str:
    address = str(address or "")
    return address if len(address) <= 14 else f"{address[:8]}…{address[-4:]}"


# ---------------------------------------------------------------------------
# Notification methods -- one for each event type
# ---------------------------------------------------------------------------

def notify_startup(current_label: str, depositors: int):
    """Send startup notification with the engine configuration summary."""
    mode = "DRY RUN (simulated)" if config.DRY_RUN else "LIVE"
    text = (
        f"🤖 <b>{_prefix()}AutoMine Bot Started</b>\n\n"
        f"Mode: {mode}\n"
        f"Current mine: {html.escape(current_label)}\n"
        f"Depositors: {depositors}\n"
        f"Monitoring: every {config.POLL_INTERVAL_SECONDS}s\n"
        f"Rotation: every {config.MINE_SWITCH_INTERVAL_HOURS}h\n"
        f"Retries: {config.MAX_RETRIES} x {config.RETRY_DELAY_SEC:.0f}s"
    )
    _send_message(text)


def notify_shutdown(reason: str = "Manual"):
    """Send shutdown notification."""
    text = f"🛑 <b>{_prefix()}AutoMine Bot Stopped</b>\n\nReason: {html.escape(reason)}"
    _send_message(text)


def notify_switch_completed(op, target_label: str):
    """The "it worked" notification: deposits now sit in *target_label*."""
    text = (
        f"🔀 <b>{_prefix()}Mine Switched</b>\n\n"
        f"Now mining: {html.escape(target_label)}\n"
        f"Operation: {op.id}\n"
        f"Tx: <code>{html.escape(_short(op.tx_handle or ''))}</code>\n"
        f"Retries needed: {op.retry_count}"
    )
    _send_message(text)


def notify_retries_exhausted(op, target_label: str, max_retries: int):
    """A switch failed on every attempt.  Deposits are still in the old mine."""
    text = (
        f"🚨 <b>{_prefix()}Mine Switch Failed</b>\n\n"
        f"Target: {html.escape(target_label)}\n"
        f"Attempts: {max_retries + 1}\n"
        f"Last error: {html.escape(op.error or 'unknown')}\n\n"
        f"<i>Manual intervention required</i>"
    )
    _send_message(text)


def notify_stale_operation(op, target_label: str):
    """A restart found an operation whose outcome was never confirmed."""
    text = (
        f"⚠️ <b>{_prefix()}Unconfirmed Switch Found</b>\n\n"
        f"Target: {html.escape(target_label)}\n"
        f"Operation: {op.id}\n"
        f"Tx: <code>{html.escape(op.tx_handle or 'never sent')}</code>\n\n"
        f"<i>Check the contract before the next rotation</i>"
    )
    _send_message(text)


def notify_daily_summary(report: dict):
    """Send the daily operation summary."""
    rate = report.get("success_rate")
    rate_text = "n/a" if rate is None else f"{rate * 100:.1f}%"
    recs = report.get("recommendations", {}) or {}
    text = (
        f"📅 <b>{_prefix()}Daily Summary -- {report.get('date', '?')}</b>\n\n"
        f"Operations: {report.get('total_operations', 0)}\n"
        f"Successful: {report.get('successful_operations', 0)}\n"
        f"Failed: {report.get('failed_operations', 0)}\n"
        f"Mine switches: {report.get('mine_switches', 0)}\n"
        f"Success rate: {rate_text}\n"
        f"Checks: {sum(int(v) for v in recs.values())} "
        f"(switch {recs.get('switch', 0)}, wait {recs.get('wait', 0)}, "
        f"no action {recs.get('no_action', 0)})\n"
        f"Uptime: {float(report.get('uptime_sec', 0.0)) / 3600.0:.1f}h"
    )
    errors = report.get("errors") or []
    if errors:
        text += "\n\n<b>Recent errors</b>\n" + "\n".join(
            f"- {html.escape(str(e))}" for e in errors[-3:]
        )
    _send_message(text)


def notify_error(error_msg: str):
    """Send an error notification that needs human attention."""
    text = (
        f"❌ <b>{_prefix()}Bot Error</b>\n\n"
        f"{html.escape(error_msg)}\n\n"
        f"<i>Check logs for details</i>"
    )
    _send_message(text)
