import json
import os
import tempfile
import threading
import unittest

from local_store import JsonFileStore, MemoryStore


class MemoryStoreTests(unittest.TestCase):
    def test_append_and_read_all_are_ordered_copies(self):
        store = MemoryStore()
        row = {"id": 1}
        store.append("ops", row)
        store.append("ops", {"id": 2})
        row["id"] = 99
        rows = store.read_all("ops")
        self.assertEqual(rows, [{"id": 1}, {"id": 2}])
        rows.append({"id": 3})
        self.assertEqual(len(store.read_all("ops")), 2)
        self.assertEqual(store.read_all("missing"), [])

    def test_log_limit_keeps_newest_rows(self):
        store = MemoryStore(log_limit=3)
        for i in range(5):
            store.append("ops", {"id": i})
        self.assertEqual([r["id"] for r in store.read_all("ops")], [2, 3, 4])

    def test_snapshot_replaces_previous_value(self):
        store = MemoryStore()
        self.assertIsNone(store.load_snapshot("state"))
        store.snapshot("state", {"v": 1})
        store.snapshot("state", {"v": 2})
        self.assertEqual(store.load_snapshot("state"), {"v": 2})
        store.snapshot("state", None)
        self.assertIsNone(store.load_snapshot("state"))


class JsonFileStoreTests(unittest.TestCase):
    def test_data_survives_a_new_instance(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "state.json")
            store = JsonFileStore(path)
            store.append("ops", {"id": "switch_1"})
            store.snapshot("history", [{"is_available": True, "at": 1.0}])

            reopened = JsonFileStore(path)
            self.assertEqual(reopened.read_all("ops"), [{"id": "switch_1"}])
            self.assertEqual(reopened.load_snapshot("history"), [{"is_available": True, "at": 1.0}])
            self.assertFalse(os.path.exists(path + ".tmp"))

    def test_unreadable_file_starts_empty(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "state.json")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write("{not json")
            with self.assertLogs("local_store", level="WARNING"):
                store = JsonFileStore(path)
            self.assertEqual(store.read_all("ops"), [])

            store.append("ops", {"id": 1})
            with open(path, "r", encoding="utf-8") as fh:
                self.assertEqual(json.load(fh)["logs"]["ops"], [{"id": 1}])

    def test_overlapping_writers_leave_the_newest_state_on_disk(self):
        taken = threading.Event()
        release = threading.Event()

        class StallingStore(JsonFileStore):
            stall = False

            def to_dict(self):
                payload = super().to_dict()
                if self.stall:
                    self.stall = False
                    taken.set()
                    release.wait(5)
                return payload

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "state.json")
            store = StallingStore(path)
            store.stall = True
            first = threading.Thread(target=store.snapshot, args=("k", "old"))
            first.start()
            self.assertTrue(taken.wait(5))

            second = threading.Thread(target=store.snapshot, args=("k", "new"))
            second.start()
            second.join(0.2)
            release.set()
            first.join(5)
            second.join(5)

            self.assertEqual(store.load_snapshot("k"), "new")
            with open(path, "r", encoding="utf-8") as fh:
                self.assertEqual(json.load(fh)["snapshots"]["k"], "new")


if __name__ == "__main__":
    unittest.main()
