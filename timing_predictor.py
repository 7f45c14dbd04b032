"""
timing_predictor.py

Open/close timing analysis for a mine's transition history.
Implements:
  - mean open ("active") and closed ("inactive") period lengths
  - next-transition estimate assuming the pattern continues
  - a dispersion-based confidence score
  - an advisory switch window combining two mines' analyses

The confidence score is a heuristic, not a statistical model: it is
1 - variance(all gaps) / max(mean active, mean inactive), clamped to [0, 1].
A proper survival-time estimator would replace it if prediction quality ever
matters for decisions; today it is advisory only.

Pure functions: no I/O, deterministic for a given history.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

MIN_ENTRIES = 4

# The variance/mean ratio is scale-dependent; scores are calibrated on
# millisecond gaps.
_CONFIDENCE_SCALE = 1000.0


@dataclass(frozen=True)
class TimingAnalysis:
    avg_active_duration: float
    avg_inactive_duration: float
    last_change: float
    predicted_next_change: float
    confidence: float


@dataclass(frozen=True)
class SwitchWindow:
    start: float
    end: float


def _mean(values: np.ndarray) -> float:
    return float(values.mean()) if values.size else 0.0


def analyze(history: Sequence) -> TimingAnalysis | None:
    """
    Derive timing statistics from a transition history (oldest first).

    Returns None when fewer than MIN_ENTRIES transitions are known; callers
    treat that as "no prediction available".
    """
    if history is None or len(history) < MIN_ENTRIES:
        return None

    at = np.asarray([float(e.at) for e in history], dtype=float)
    was_available = np.asarray([bool(e.is_available) for e in history[:-1]], dtype=bool)
    gaps = np.diff(at)

    # A gap belongs to the state that the entry *opening* it recorded.
    avg_active = _mean(gaps[was_available])
    avg_inactive = _mean(gaps[~was_available])

    last = history[-1]
    expected = avg_active if last.is_available else avg_inactive
    predicted = float(last.at) + expected

    scaled = gaps * _CONFIDENCE_SCALE
    variance = float(np.var(scaled)) if scaled.size > 1 else 0.0
    denom = max(avg_active, avg_inactive) * _CONFIDENCE_SCALE
    if denom > 0:
        confidence = float(np.clip(1.0 - variance / denom, 0.0, 1.0))
    else:
        confidence = 0.0

    return TimingAnalysis(
        avg_active_duration=avg_active,
        avg_inactive_duration=avg_inactive,
        last_change=float(last.at),
        predicted_next_change=predicted,
        confidence=confidence,
    )


def optimal_window(
    current: TimingAnalysis | None,
    target: TimingAnalysis | None,
    now: float,
    *,
    horizon_sec: float = 3600.0,
    buffer_sec: float = 1800.0,
) -> SwitchWindow | None:
    """
    Advisory window in which to switch, or None.

    Only produced when both mines have an analysis and the current mine is
    predicted to change state within *horizon_sec* of *now*.
    """
    if current is None or target is None:
        return None
    if current.predicted_next_change >= now + horizon_sec:
        return None
    return SwitchWindow(
        start=max(float(now), target.predicted_next_change - buffer_sec),
        end=current.predicted_next_change,
    )


def timing_report(
    current: TimingAnalysis | None,
    target: TimingAnalysis | None,
    now: float,
    *,
    horizon_sec: float = 3600.0,
    buffer_sec: float = 1800.0,
) -> dict:
    window = optimal_window(current, target, now, horizon_sec=horizon_sec, buffer_sec=buffer_sec)
    if current is None or target is None:
        recommendation = "Insufficient data for timing analysis"
    elif window is not None:
        recommendation = "Optimal switch window identified based on timing patterns"
    else:
        recommendation = "Current timing patterns suggest waiting for better opportunity"
    return {
        "current": _as_dict(current),
        "target": _as_dict(target),
        "window": None if window is None else {"start": window.start, "end": window.end},
        "recommendation": recommendation,
    }


def _as_dict(analysis: TimingAnalysis | None) -> dict | None:
    if analysis is None:
        return None
    return {
        "avg_active_duration": analysis.avg_active_duration,
        "avg_inactive_duration": analysis.avg_inactive_duration,
        "last_change": analysis.last_change,
        "predicted_next_change": analysis.predicted_next_change,
        "confidence": analysis.confidence,
    }
