import unittest
from unittest import mock

from chain_client import ChainClient, Confirmation, ReadError
from config import ConfigurationError, EngineConfig
from event_hooks import RECOMMENDATION, EventHooks
from mine_status import StatusTracker
from operation_ledger import COMPLETED, OperationLedger
from recommendation import NO_ACTION, SWITCH, WAIT
from scheduler import FAST_LOOP, ROTATION_LOOP, ManualTicker, Scheduler
from switch_executor import ExecutionCoordinator

MINE_A = "0x" + "a" * 40
MINE_B = "0x" + "b" * 40


class ScriptedChain(ChainClient):
    def __init__(self, current=MINE_A, availability=None, depositors=3):
        self.current = current
        self.availability = dict(availability or {MINE_A: True, MINE_B: True})
        self.depositors = depositors
        self.fail_reads = False
        self.submits = []

    def read_availability(self, target_id):
        if self.fail_reads:
            raise ReadError("rpc unavailable")
        return self.availability[target_id]

    def read_current_target(self):
        if self.fail_reads:
            raise ReadError("rpc unavailable")
        return self.current

    def submit_switch(self, target_id):
        self.submits.append(target_id)
        return f"TX-{len(self.submits)}"

    def await_confirmation(self, handle, timeout):
        self.current = self.submits[-1]
        return Confirmation(True, handle)

    def depositor_count(self):
        return self.depositors


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _cfg(**kw):
    base = dict(
        current_mine=MINE_A,
        target_mine=MINE_B,
        current_label="Mine A",
        target_label="Mine B",
        poll_interval_sec=30.0,
        rotation_interval_hours=1.0,
    )
    base.update(kw)
    return EngineConfig(**base)


class SchedulerTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.chain = ScriptedChain()
        self.hooks = EventHooks()
        self.recs = []
        self.hooks.subscribe(RECOMMENDATION, self.recs.append)
        self.tracker = StatusTracker(clock=self.clock)
        self.coord = ExecutionCoordinator(
            self.chain, OperationLedger(), hooks=self.hooks, clock=self.clock,
            sleep=lambda _s: None,
        )
        self.ticker = ManualTicker()
        self.scheduler = Scheduler(
            _cfg(), self.chain, self.tracker, self.coord,
            hooks=self.hooks, ticker=self.ticker, clock=self.clock,
        )

    def test_no_action_when_both_mines_open(self):
        rec = self.scheduler.run_fast_cycle()
        self.assertEqual(rec.verdict, NO_ACTION)
        self.assertEqual(self.chain.submits, [])
        self.assertEqual(self.recs, [rec])

    def test_switches_when_current_closes_and_target_is_open(self):
        self.chain.availability = {MINE_A: False, MINE_B: True}

        rec = self.scheduler.run_fast_cycle()

        self.assertEqual(rec.verdict, SWITCH)
        self.assertEqual(self.chain.submits, [MINE_B])
        op = self.coord.ledger.recent(1)[0]
        self.assertEqual(op.status, COMPLETED)
        self.assertEqual(op.retry_count, 0)
        self.assertEqual(self.chain.current, MINE_B)

    def test_waits_when_both_mines_closed(self):
        self.chain.availability = {MINE_A: False, MINE_B: False}
        self.assertEqual(self.scheduler.run_fast_cycle().verdict, WAIT)
        self.assertEqual(self.chain.submits, [])

    def test_read_error_skips_cycle(self):
        self.chain.fail_reads = True
        with self.assertLogs("scheduler", level="WARNING"):
            self.assertIsNone(self.scheduler.run_fast_cycle())
        self.assertEqual(self.recs, [])
        self.assertEqual(self.tracker.history(MINE_A), [])
        self.assertEqual(self.scheduler.skipped_cycles, 1)

    def test_unknown_on_chain_mine_converges_onto_first_candidate(self):
        self.chain.current = "0x" + "c" * 40
        self.chain.availability["0x" + "c" * 40] = False
        rec = self.scheduler.run_fast_cycle()
        self.assertEqual(rec.target_id, MINE_A)
        self.assertEqual(self.chain.submits, [MINE_A])

    def test_fast_cycle_records_transitions(self):
        self.scheduler.run_fast_cycle()
        self.clock.now += 30
        self.chain.availability = {MINE_A: False, MINE_B: True}
        self.scheduler.run_fast_cycle()
        self.assertEqual([e.is_available for e in self.tracker.history(MINE_A)], [True, False])
        self.assertEqual([e.is_available for e in self.tracker.history(MINE_B)], [True])

    def test_switch_recommendation_is_skipped_while_busy(self):
        coord = mock.Mock()
        coord.is_busy.return_value = True
        self.chain.availability = {MINE_A: False, MINE_B: True}
        scheduler = Scheduler(_cfg(), self.chain, self.tracker, coord, ticker=self.ticker, clock=self.clock)
        scheduler.run_fast_cycle()
        coord.execute.assert_not_called()

    def test_rotation_forces_switch_regardless_of_availability(self):
        op = self.scheduler.run_rotation_cycle()
        self.assertEqual(op.status, COMPLETED)
        self.assertEqual(self.chain.submits, [MINE_B])

        self.scheduler.run_rotation_cycle()
        self.assertEqual(self.chain.submits, [MINE_B, MINE_A])

    def test_rotation_publishes_a_switch_recommendation(self):
        self.chain.availability = {MINE_A: True, MINE_B: False}
        self.scheduler.run_rotation_cycle()
        self.assertEqual(len(self.recs), 1)
        rec = self.recs[0]
        self.assertEqual(rec.verdict, SWITCH)
        self.assertEqual(rec.target_id, MINE_B)
        self.assertFalse(rec.target.is_available)
        self.assertIs(self.scheduler.last_recommendation, rec)
        self.assertFalse(self.tracker.latest(MINE_B).is_available)

    def test_rotation_skipped_without_depositors(self):
        self.chain.depositors = 0
        self.assertIsNone(self.scheduler.run_rotation_cycle())
        self.assertEqual(self.chain.submits, [])

    def test_rotation_skipped_while_busy(self):
        coord = mock.Mock()
        coord.is_busy.return_value = True
        scheduler = Scheduler(_cfg(), self.chain, self.tracker, coord, ticker=self.ticker, clock=self.clock)
        self.assertIsNone(scheduler.run_rotation_cycle())
        coord.execute.assert_not_called()

    def test_rotation_read_error_is_skipped(self):
        self.chain.fail_reads = True
        with self.assertLogs("scheduler", level="WARNING"):
            self.assertIsNone(self.scheduler.run_rotation_cycle())

    def test_start_rejects_identical_candidates(self):
        scheduler = Scheduler(
            _cfg(target_mine=MINE_A), self.chain, self.tracker, self.coord, ticker=self.ticker,
        )
        with self.assertRaises(ConfigurationError):
            scheduler.start()
        self.assertEqual(self.ticker.handles, [])
        self.assertFalse(scheduler.running)

    def test_cadences_fire_on_their_intervals(self):
        self.scheduler.start()
        self.assertEqual({h.name for h in self.ticker.handles}, {FAST_LOOP, ROTATION_LOOP})

        self.ticker.advance(3600)

        self.assertEqual(self.scheduler.fast_cycles, 120)
        self.assertEqual(self.scheduler.rotation_cycles, 1)
        self.assertEqual(self.chain.submits, [MINE_B])

    def test_run_now_performs_an_immediate_check(self):
        self.scheduler.start(run_now=True)
        self.assertEqual(self.scheduler.fast_cycles, 1)

    def test_stop_cancels_loops_and_coordinator(self):
        self.scheduler.start()
        self.assertTrue(self.scheduler.stop(wait_timeout=1))

        self.ticker.advance(7200)
        self.assertEqual(self.scheduler.fast_cycles, 0)
        self.assertIsNone(self.scheduler.run_fast_cycle())
        self.assertIsNone(self.coord.execute(MINE_B))
        self.assertFalse(self.scheduler.running)

    def test_status_reports_counters(self):
        self.scheduler.run_fast_cycle()
        status = self.scheduler.status()
        self.assertEqual(status["fast_cycles"], 1)
        self.assertEqual(status["current_target"], MINE_A)
        self.assertEqual(status["last_recommendation"]["verdict"], NO_ACTION)


if __name__ == "__main__":
    unittest.main()
