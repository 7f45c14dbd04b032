"""
event_hooks.py -- Fire-and-forget observer hooks exposed by the switch engine.

Dashboards, the reporting sink and the notifier subscribe here.  Publishing
never raises into the engine: a listener that throws is logged and skipped.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

RECOMMENDATION = "recommendation"
OPERATION_TERMINAL = "operation_terminal"
STATUS_CHANGE = "status_change"

_EVENTS = (RECOMMENDATION, OPERATION_TERMINAL, STATUS_CHANGE)


class EventHooks:
    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger
        self._listeners: dict[str, list[Callable[..., Any]]] = {name: [] for name in _EVENTS}

    def subscribe(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"unknown hook event {event!r}")
        self._listeners[event].append(callback)

    def _publish(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback(*args)
            except Exception:
                self.log.exception("Hook listener for %s failed", event)

    # Engine-facing publishers

    def on_recommendation(self, recommendation) -> None:
        self._publish(RECOMMENDATION, recommendation)

    def on_operation_terminal(self, operation) -> None:
        self._publish(OPERATION_TERMINAL, operation)

    def on_status_change(self, target_id: str, entry) -> None:
        self._publish(STATUS_CHANGE, target_id, entry)
