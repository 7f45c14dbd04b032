"""
chain_client.py -- The chain collaborator the switch engine talks to.

The engine only ever needs six calls:
  - read_availability(mine)     is a mine open right now?
  - read_current_target()       which mine does the contract point at?
  - submit_switch(mine)         send switchMine(mine), get a tx handle back
  - await_confirmation(h, t)    wait up to t seconds for the receipt
  - has_operator_role()         may this bot call switchMine at all?
  - depositor_count()           how many users have NFTs staked?

Key custody, ABI encoding, gas and RPC-level retries belong to whatever
implements ChainClient; the engine treats every call as an opaque operation
that can fail (ChainError subclasses) or time out.

DRY RUN:
  DryRunChainClient simulates two mines that take turns being open, and a
  contract whose switchMine() always confirms.  It is what the bot runs by
  default so the whole decision loop can be watched without a wallet.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from config import normalize_address

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class ChainError(Exception):
    """Base class for every failure surfaced by a chain client."""


class ReadError(ChainError):
    """A state read failed (transport or decoding).  Transient: skip the cycle."""


class SubmitError(ChainError):
    """The switch transaction could not be submitted."""


class ConfirmationError(ChainError):
    """The transaction was submitted but its outcome could not be confirmed."""


class ConfirmationTimeoutError(ConfirmationError):
    """No receipt within the confirmation timeout."""


@dataclass(frozen=True)
class Confirmation:
    success: bool
    tx_handle: str = ""
    block_number: int | None = None


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class ChainClient:
    """Abstract chain client.  Subclasses must raise the errors above, nothing else."""

    def read_availability(self, target_id: str) -> bool:
        raise NotImplementedError

    def read_current_target(self) -> str:
        raise NotImplementedError

    def submit_switch(self, target_id: str) -> str:
        raise NotImplementedError

    def await_confirmation(self, handle: str, timeout: float) -> Confirmation:
        raise NotImplementedError

    def has_operator_role(self) -> bool:
        return True

    def depositor_count(self) -> int:
        return 1


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class DryRunChainClient(ChainClient):
    """
    Two simulated mines alternating availability every half *cycle_sec*.

    mine_a is open during the first half of each cycle, mine_b during the
    second half.  Submitted switches confirm immediately and move the
    simulated contract to the requested mine.
    """

    def __init__(
        self,
        mine_a: str,
        mine_b: str,
        *,
        cycle_sec: float = 600.0,
        depositors: int = 1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.mine_a = normalize_address(mine_a)
        self.mine_b = normalize_address(mine_b)
        self.cycle_sec = max(2.0, float(cycle_sec))
        self.depositors = max(0, int(depositors))
        self._clock = clock
        self._epoch = float(clock())
        self._lock = threading.Lock()
        self._current = self.mine_a
        self._pending: dict[str, str] = {}
        self._tx_counter = 0

    def _phase(self) -> float:
        return ((self._clock() - self._epoch) % self.cycle_sec) / self.cycle_sec

    def read_availability(self, target_id: str) -> bool:
        mine = normalize_address(target_id)
        if mine not in (self.mine_a, self.mine_b):
            raise ReadError(f"unknown mine {target_id}")
        first_half = self._phase() < 0.5
        is_open = first_half if mine == self.mine_a else not first_half
        logger.debug("[DRY RUN] %s availability: %s", mine, is_open)
        return is_open

    def read_current_target(self) -> str:
        with self._lock:
            return self._current

    def submit_switch(self, target_id: str) -> str:
        mine = normalize_address(target_id)
        if mine not in (self.mine_a, self.mine_b):
            raise SubmitError(f"unknown mine {target_id}")
        with self._lock:
            self._tx_counter += 1
            handle = f"DRY-{int(self._clock() * 1000)}-{self._tx_counter}"
            self._pending[handle] = mine
        logger.info("[DRY RUN] Would send switchMine(%s) -> %s", mine, handle)
        return handle

    def await_confirmation(self, handle: str, timeout: float) -> Confirmation:
        with self._lock:
            mine = self._pending.pop(handle, None)
            if mine is None:
                raise ConfirmationError(f"unknown transaction {handle}")
            self._current = mine
        return Confirmation(success=True, tx_handle=handle)

    def has_operator_role(self) -> bool:
        return True

    def depositor_count(self) -> int:
        return self.depositors
