import unittest

from operation_ledger import (
    COMPLETED,
    FAILED,
    PROCESSING,
    OperationLedger,
    SwitchOperation,
    operation_from_dict,
)

MINE = "0x" + "b" * 40


def _op(n: int, status=COMPLETED, **kw) -> SwitchOperation:
    return SwitchOperation(
        id=f"switch_{n}",
        target_id=MINE,
        started_at=float(n),
        status=status,
        finished_at=float(n) + 1.0,
        **kw,
    )


class OperationLedgerTests(unittest.TestCase):
    def test_non_terminal_operation_is_rejected(self):
        ledger = OperationLedger()
        with self.assertRaises(ValueError):
            ledger.record(_op(1, status=PROCESSING))
        self.assertEqual(len(ledger), 0)

    def test_cap_is_not_trimmed_until_exceeded(self):
        ledger = OperationLedger(cap=100, trim_to=50)
        for n in range(100):
            ledger.record(_op(n))
        self.assertEqual(len(ledger), 100)

    def test_101st_record_leaves_newest_50(self):
        ledger = OperationLedger(cap=100, trim_to=50)
        for n in range(101):
            ledger.record(_op(n))
        rows = ledger.all()
        self.assertEqual(len(rows), 50)
        self.assertEqual(rows[0].id, "switch_51")
        self.assertEqual(rows[-1].id, "switch_100")
        self.assertEqual(ledger.stats()["total_recorded"], 101)

    def test_recent_is_newest_first(self):
        ledger = OperationLedger()
        for n in range(8):
            ledger.record(_op(n))
        self.assertEqual([op.id for op in ledger.recent(3)], ["switch_7", "switch_6", "switch_5"])

    def test_recorded_rows_are_copies(self):
        ledger = OperationLedger()
        op = _op(1)
        ledger.record(op)
        op.error = "mutated"
        self.assertIsNone(ledger.get("switch_1").error)
        self.assertIsNone(ledger.get("missing"))

    def test_stats(self):
        ledger = OperationLedger()
        ledger.record(_op(1))
        ledger.record(_op(2, status=FAILED, error="boom"))
        ledger.record(_op(3, status=FAILED, stale=True))
        ledger.record(_op(4))
        stats = ledger.stats()
        self.assertEqual(stats["completed"], 2)
        self.assertEqual(stats["failed"], 2)
        self.assertEqual(stats["stale"], 1)
        self.assertAlmostEqual(stats["success_rate"], 0.5)
        self.assertIsNone(OperationLedger().stats()["success_rate"])

    def test_snapshot_restore_round_trip_drops_in_flight_rows(self):
        ledger = OperationLedger()
        ledger.record(_op(1))
        ledger.record(_op(2, status=FAILED, error="boom", retry_count=2))
        payload = ledger.snapshot_state()
        payload["operations"].append(_op(3, status=PROCESSING).to_dict())

        restored = OperationLedger()
        restored.restore_state(payload)
        self.assertEqual([op.id for op in restored.all()], ["switch_1", "switch_2"])
        self.assertEqual(restored.get("switch_2").retry_count, 2)
        self.assertEqual(restored.stats()["total_recorded"], 2)

    def test_operation_from_dict_normalizes_input(self):
        self.assertIsNone(operation_from_dict({}))
        self.assertIsNone(operation_from_dict("nope"))
        op = operation_from_dict({"id": "x", "status": "BOGUS", "retry_count": "-3", "started_at": "5"})
        self.assertEqual(op.status, "pending")
        self.assertEqual(op.retry_count, 0)
        self.assertEqual(op.started_at, 5.0)
        self.assertIsNone(op.finished_at)


if __name__ == "__main__":
    unittest.main()
