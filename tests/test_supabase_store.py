import unittest
from unittest import mock

import config
import supabase_store


class SupabaseStoreTests(unittest.TestCase):
    def setUp(self):
        supabase_store._write_queue.clear()

    def tearDown(self):
        supabase_store._write_queue.clear()

    def test_disabled_store_queues_nothing(self):
        with mock.patch.object(config, "SUPABASE_URL", ""):
            supabase_store.save_state("k", {"v": 1})
            supabase_store.save_event("k", {"v": 1})
            self.assertIsNone(supabase_store.load_state("k"))
            self.assertEqual(supabase_store.load_events("k"), [])
        self.assertEqual(len(supabase_store._write_queue), 0)

    @mock.patch("supabase_store._request", return_value={})
    @mock.patch("supabase_store._enabled", return_value=True)
    def test_flush_upserts_latest_snapshot_per_key(self, _enabled, request):
        supabase_store.save_state("a", {"v": 1})
        supabase_store.save_state("b", {"v": 1})
        supabase_store.save_state("a", {"v": 2})
        supabase_store.save_event("ops", {"id": "switch_1"})

        supabase_store._flush_queue()

        calls = {c.args[1]: c for c in request.call_args_list}
        state_rows = calls["/rest/v1/bot_state"].kwargs["body"]
        self.assertEqual({r["key"]: r["data"] for r in state_rows}, {"a": {"v": 2}, "b": {"v": 1}})
        self.assertTrue(calls["/rest/v1/bot_state"].kwargs["upsert"])
        event_rows = calls["/rest/v1/bot_events"].kwargs["body"]
        self.assertEqual(event_rows[0]["key"], "ops")
        self.assertEqual(event_rows[0]["data"], {"id": "switch_1"})
        self.assertEqual(len(supabase_store._write_queue), 0)

    @mock.patch("supabase_store._enabled", return_value=True)
    def test_load_events_returns_oldest_first(self, _enabled):
        rows = [{"data": {"id": 2}}, {"data": {"id": 1}}, {"data": None}]
        with mock.patch("supabase_store._request", return_value=rows):
            self.assertEqual(supabase_store.load_events("ops"), [{"id": 1}, {"id": 2}])

    @mock.patch("supabase_store._enabled", return_value=True)
    def test_failed_state_load_falls_back(self, _enabled):
        with mock.patch("supabase_store._request", return_value=None):
            with self.assertLogs("supabase_store", level="WARNING"):
                self.assertIsNone(supabase_store.load_state("k"))


class SupabaseSinkTests(unittest.TestCase):
    def setUp(self):
        supabase_store._write_queue.clear()

    def tearDown(self):
        supabase_store._write_queue.clear()

    @mock.patch("supabase_store._enabled", return_value=True)
    def test_snapshot_is_fetched_once_then_served_locally(self, _enabled):
        sink = supabase_store.SupabaseSink()
        with mock.patch("supabase_store.load_state", return_value={"v": 1}) as load:
            self.assertEqual(sink.load_snapshot("k"), {"v": 1})
            self.assertEqual(sink.load_snapshot("k"), {"v": 1})
        load.assert_called_once_with("k")

    @mock.patch("supabase_store._enabled", return_value=True)
    def test_local_writes_win_over_remote(self, _enabled):
        sink = supabase_store.SupabaseSink()
        sink.snapshot("k", {"v": 5})
        with mock.patch("supabase_store.load_state") as load:
            self.assertEqual(sink.load_snapshot("k"), {"v": 5})
        load.assert_not_called()
        self.assertEqual(supabase_store._write_queue[-1][0], "bot_state")

    @mock.patch("supabase_store._enabled", return_value=True)
    def test_read_all_merges_remote_history_with_new_rows(self, _enabled):
        sink = supabase_store.SupabaseSink()
        sink.append("ops", {"id": 3})
        with mock.patch("supabase_store.load_events", return_value=[{"id": 1}, {"id": 2}]) as load:
            self.assertEqual([r["id"] for r in sink.read_all("ops")], [1, 2, 3])
            self.assertEqual(len(sink.read_all("ops")), 3)
        load.assert_called_once()

    @mock.patch("supabase_store._enabled", return_value=True)
    def test_queued_rows_do_not_change_after_write(self, _enabled):
        sink = supabase_store.SupabaseSink()
        payload = {"days": {"2024-05-01": 1}}
        sink.snapshot("report", payload)
        payload["days"]["2024-05-01"] = 99
        self.assertEqual(supabase_store._write_queue[-1][1]["data"], {"days": {"2024-05-01": 1}})


if __name__ == "__main__":
    unittest.main()
