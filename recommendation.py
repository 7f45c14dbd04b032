"""
recommendation.py

Switch decision core.

evaluate() is a pure function of the two mines' availability:

    current  target   verdict
    down     up       switch     (migrate now)
    up       down     no_action  (current still serving)
    down     down     wait       (nothing to move to yet)
    up       up       no_action  (no reason to move)

Switching is only ever triggered by current-down + target-up, never by the
target merely looking better.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mine_status import TargetStatus

Verdict = Literal["switch", "wait", "no_action"]

SWITCH: Verdict = "switch"
WAIT: Verdict = "wait"
NO_ACTION: Verdict = "no_action"


@dataclass(frozen=True)
class Recommendation:
    verdict: Verdict
    target_id: str | None
    reason: str
    current: TargetStatus
    target: TargetStatus

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict,
            "target_id": self.target_id,
            "reason": self.reason,
            "snapshot": {
                "current": _status_dict(self.current),
                "target": _status_dict(self.target),
            },
        }


def _status_dict(status: TargetStatus) -> dict:
    return {
        "target_id": status.target_id,
        "label": status.label,
        "is_available": status.is_available,
        "observed_at": status.observed_at,
    }


def evaluate(current: TargetStatus, target: TargetStatus) -> Recommendation:
    if not current.is_available and target.is_available:
        return Recommendation(
            verdict=SWITCH,
            target_id=target.target_id,
            reason=f"Current mine ({current.label}) is inactive, target mine ({target.label}) is active",
            current=current,
            target=target,
        )
    if current.is_available and not target.is_available:
        return Recommendation(
            verdict=NO_ACTION,
            target_id=None,
            reason=f"Current mine ({current.label}) is still active, target mine ({target.label}) is inactive",
            current=current,
            target=target,
        )
    if not current.is_available and not target.is_available:
        return Recommendation(
            verdict=WAIT,
            target_id=target.target_id,
            reason=f"Both mines are inactive - waiting for target mine ({target.label}) to open",
            current=current,
            target=target,
        )
    return Recommendation(
        verdict=NO_ACTION,
        target_id=None,
        reason="Both mines are active - no switch needed",
        current=current,
        target=target,
    )


def rotation(current: TargetStatus, target: TargetStatus) -> Recommendation:
    """Forced switch for the scheduled rotation, whatever the availability."""
    return Recommendation(
        verdict=SWITCH,
        target_id=target.target_id,
        reason=f"Scheduled rotation from {current.label} to {target.label}",
        current=current,
        target=target,
    )
