import unittest

from chain_client import (
    ChainClient,
    ConfirmationError,
    DryRunChainClient,
    ReadError,
    SubmitError,
)

MINE_A = "0x" + "a" * 40
MINE_B = "0x" + "b" * 40


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class DryRunChainClientTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(1000.0)
        self.chain = DryRunChainClient(MINE_A, MINE_B, cycle_sec=600, clock=self.clock)

    def test_mines_take_turns_being_open(self):
        self.assertTrue(self.chain.read_availability(MINE_A))
        self.assertFalse(self.chain.read_availability(MINE_B))

        self.clock.now += 300
        self.assertFalse(self.chain.read_availability(MINE_A))
        self.assertTrue(self.chain.read_availability(MINE_B))

        self.clock.now += 300
        self.assertTrue(self.chain.read_availability(MINE_A))

    def test_unknown_mine_raises(self):
        with self.assertRaises(ReadError):
            self.chain.read_availability("0x" + "c" * 40)
        with self.assertRaises(SubmitError):
            self.chain.submit_switch("0x" + "c" * 40)

    def test_confirmed_switch_moves_current_mine(self):
        self.assertEqual(self.chain.read_current_target(), MINE_A)
        handle = self.chain.submit_switch(MINE_B.upper().replace("0X", "0x"))
        self.assertTrue(handle.startswith("DRY-"))
        self.assertEqual(self.chain.read_current_target(), MINE_A)

        result = self.chain.await_confirmation(handle, 120)
        self.assertTrue(result.success)
        self.assertEqual(result.tx_handle, handle)
        self.assertEqual(self.chain.read_current_target(), MINE_B)

    def test_unknown_handle_cannot_be_confirmed(self):
        handle = self.chain.submit_switch(MINE_B)
        self.chain.await_confirmation(handle, 120)
        with self.assertRaises(ConfirmationError):
            self.chain.await_confirmation(handle, 120)

    def test_handles_are_unique(self):
        self.assertNotEqual(self.chain.submit_switch(MINE_B), self.chain.submit_switch(MINE_B))

    def test_operator_and_depositors(self):
        self.assertTrue(self.chain.has_operator_role())
        self.assertEqual(self.chain.depositor_count(), 1)
        empty = DryRunChainClient(MINE_A, MINE_B, depositors=0, clock=self.clock)
        self.assertEqual(empty.depositor_count(), 0)


class ChainClientInterfaceTests(unittest.TestCase):
    def test_abstract_calls_are_not_implemented(self):
        client = ChainClient()
        with self.assertRaises(NotImplementedError):
            client.read_current_target()
        with self.assertRaises(NotImplementedError):
            client.submit_switch(MINE_A)


if __name__ == "__main__":
    unittest.main()
