import unittest

from mine_status import TargetStatus
from recommendation import NO_ACTION, SWITCH, WAIT, evaluate, rotation

CURRENT = "0x" + "a" * 40
TARGET = "0x" + "b" * 40


def _pair(current_up: bool, target_up: bool):
    return (
        TargetStatus(CURRENT, "Mine A", current_up, 100.0),
        TargetStatus(TARGET, "Mine B", target_up, 100.0),
    )


class EvaluateTests(unittest.TestCase):
    def test_decision_table(self):
        cases = [
            (False, True, SWITCH, TARGET),
            (True, False, NO_ACTION, None),
            (False, False, WAIT, TARGET),
            (True, True, NO_ACTION, None),
        ]
        for current_up, target_up, verdict, target_id in cases:
            with self.subTest(current=current_up, target=target_up):
                rec = evaluate(*_pair(current_up, target_up))
                self.assertEqual(rec.verdict, verdict)
                self.assertEqual(rec.target_id, target_id)

    def test_switch_reason_names_both_mines(self):
        rec = evaluate(*_pair(False, True))
        self.assertEqual(rec.reason, "Current mine (Mine A) is inactive, target mine (Mine B) is active")

    def test_both_active_reason(self):
        rec = evaluate(*_pair(True, True))
        self.assertEqual(rec.reason, "Both mines are active - no switch needed")

    def test_to_dict_nests_statuses_under_snapshot(self):
        payload = evaluate(*_pair(False, False)).to_dict()
        self.assertEqual(payload["verdict"], "wait")
        self.assertEqual(set(payload), {"verdict", "target_id", "reason", "snapshot"})
        self.assertEqual(payload["snapshot"]["current"]["target_id"], CURRENT)
        self.assertFalse(payload["snapshot"]["target"]["is_available"])

    def test_rotation_always_switches_to_target(self):
        rec = rotation(*_pair(True, False))
        self.assertEqual(rec.verdict, SWITCH)
        self.assertEqual(rec.target_id, TARGET)
        self.assertEqual(rec.reason, "Scheduled rotation from Mine A to Mine B")


if __name__ == "__main__":
    unittest.main()
