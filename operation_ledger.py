"""
operation_ledger.py -- Bounded ledger of terminal switch operations.

The ledger is local-first:
- SwitchOperation is the one record a switch attempt mutates through
  pending -> processing -> completed | failed.
- OperationLedger keeps recent *terminal* operations for status queries.

Once the ledger grows past its cap it is cut back to the newest `trim_to`
rows in one go, so trimming happens rarely instead of on every append.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
import threading
from typing import Any, Literal

OperationStatus = Literal["pending", "processing", "completed", "failed"]

PENDING: OperationStatus = "pending"
PROCESSING: OperationStatus = "processing"
COMPLETED: OperationStatus = "completed"
FAILED: OperationStatus = "failed"

_VALID_STATUS = {PENDING, PROCESSING, COMPLETED, FAILED}
_TERMINAL_STATUS = {COMPLETED, FAILED}


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def _norm_status(value: Any) -> OperationStatus:
    status = str(value or "").strip().lower()
    return status if status in _VALID_STATUS else PENDING


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


@dataclass
class SwitchOperation:
    # Identity
    id: str
    target_id: str
    started_at: float
    # Lifecycle (mutable)
    status: OperationStatus = PENDING
    retry_count: int = 0
    tx_handle: str | None = None
    error: str | None = None
    finished_at: float | None = None
    # Set when a restart found this attempt without a classified outcome.
    stale: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUS

    @property
    def in_flight(self) -> bool:
        return self.status in (PENDING, PROCESSING)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def operation_from_dict(row: dict[str, Any]) -> SwitchOperation | None:
    if not isinstance(row, dict) or not row.get("id"):
        return None
    return SwitchOperation(
        id=str(row.get("id")),
        target_id=str(row.get("target_id") or ""),
        started_at=_to_float(row.get("started_at")),
        status=_norm_status(row.get("status")),
        retry_count=max(0, _to_int(row.get("retry_count"), 0)),
        tx_handle=_opt_str(row.get("tx_handle")),
        error=_opt_str(row.get("error")),
        finished_at=(
            None if row.get("finished_at", None) is None else _to_float(row.get("finished_at"))
        ),
        stale=bool(row.get("stale", False)),
    )


class OperationLedger:
    def __init__(self, *, cap: int = 100, trim_to: int = 50) -> None:
        self.cap = max(1, int(cap))
        self.trim_to = max(1, min(int(trim_to), self.cap))
        self._lock = threading.Lock()
        self._rows: list[SwitchOperation] = []
        self._total_recorded = 0

    # ------------------ Core API ------------------

    def record(self, operation: SwitchOperation) -> None:
        if not operation.is_terminal:
            raise ValueError(f"operation {operation.id} is not terminal ({operation.status})")
        with self._lock:
            self._rows.append(replace(operation))
            self._total_recorded += 1
            self._trim_if_needed()

    # ------------------ Queries ------------------

    def get(self, operation_id: str) -> SwitchOperation | None:
        with self._lock:
            for row in reversed(self._rows):
                if row.id == operation_id:
                    return replace(row)
        return None

    def recent(self, limit: int = 5) -> list[SwitchOperation]:
        """Newest first."""
        with self._lock:
            rows = self._rows[-max(1, int(limit)):]
            return [replace(r) for r in reversed(rows)]

    def all(self) -> list[SwitchOperation]:
        """Oldest first."""
        with self._lock:
            return [replace(r) for r in self._rows]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            completed = sum(1 for r in self._rows if r.status == COMPLETED)
            failed = sum(1 for r in self._rows if r.status == FAILED)
            stale = sum(1 for r in self._rows if r.stale)
            size = len(self._rows)
            return {
                "size": size,
                "cap": self.cap,
                "trim_to": self.trim_to,
                "total_recorded": self._total_recorded,
                "completed": completed,
                "failed": failed,
                "stale": stale,
                "success_rate": (completed / size) if size else None,
            }

    # ------------------ Snapshot ------------------

    def snapshot_state(self) -> dict[str, Any]:
        with self._lock:
            return {
                "operations": [r.to_dict() for r in self._rows],
                "total_recorded": int(self._total_recorded),
            }

    def restore_state(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        rows: list[SwitchOperation] = []
        raw_rows = payload.get("operations", [])
        if isinstance(raw_rows, list):
            for raw in raw_rows:
                op = operation_from_dict(raw)
                if op is None or not op.is_terminal:
                    continue
                rows.append(op)
        with self._lock:
            self._rows = rows
            self._total_recorded = max(len(rows), _to_int(payload.get("total_recorded"), len(rows)))
            self._trim_if_needed()

    # ------------------ Internals ------------------

    def _trim_if_needed(self) -> None:
        if len(self._rows) <= self.cap:
            return
        self._rows = self._rows[-self.trim_to:]
