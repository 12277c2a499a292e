import unittest
from unittest.mock import MagicMock

from karaoke_render.errors import RenderCancelled
from karaoke_render.orchestration.registry import (
    CancellationHandle,
    CancellationRegistry,
    InMemoryJobStore,
    RenderJob,
)


class TestInMemoryJobStore(unittest.TestCase):
    def test_progress_never_moves_backwards(self):
        store = InMemoryJobStore()
        store.set(RenderJob(id="a"))

        store.update("a", status="rendering", progress=40)
        store.update("a", status="rendering", progress=20)

        self.assertEqual(store.get("a").progress, 40)

    def test_terminal_job_is_frozen(self):
        store = InMemoryJobStore()
        store.set(RenderJob(id="a"))
        store.update("a", status="cancelled", progress=0)

        result = store.update("a", status="done", progress=100, output_path="/out/x.mp4")

        self.assertIsNone(result)
        job = store.get("a")
        self.assertEqual(job.status, "cancelled")
        self.assertEqual(job.progress, 0)
        self.assertIsNone(job.output_path)
        self.assertIsNotNone(job.finished_at)

    def test_terminal_write_may_reset_progress(self):
        store = InMemoryJobStore()
        store.set(RenderJob(id="a"))
        store.update("a", status="rendering", progress=60)

        store.update("a", status="error", progress=0, error_message="boom")

        job = store.get("a")
        self.assertEqual((job.status, job.progress, job.error_message), ("error", 0, "boom"))

    def test_unknown_job_update_returns_none(self):
        self.assertIsNone(InMemoryJobStore().update("missing", progress=10))

    def test_get_returns_copy(self):
        store = InMemoryJobStore()
        store.set(RenderJob(id="a"))
        job = store.get("a")
        job.progress = 99
        self.assertEqual(store.get("a").progress, 0)

    def test_sweep_evicts_expired_terminal_jobs(self):
        store = InMemoryJobStore(ttl_seconds=10)
        store.set(RenderJob(id="old", status="done", finished_at=100.0, updated_at=100.0))
        store.set(RenderJob(id="running", status="rendering", updated_at=100.0))
        store.set(RenderJob(id="fresh", status="error", finished_at=195.0, updated_at=195.0))

        removed = store.sweep(now=200.0)

        self.assertEqual(removed, 1)
        self.assertIsNone(store.get("old"))
        self.assertIsNotNone(store.get("running"))
        self.assertIsNotNone(store.get("fresh"))

    def test_sweep_caps_entries_by_oldest_terminal(self):
        store = InMemoryJobStore(ttl_seconds=3600, max_entries=2)
        store.set(RenderJob(id="a", status="done", finished_at=1000.0))
        store.set(RenderJob(id="b", status="done", finished_at=1001.0))
        store.set(RenderJob(id="c", status="init"))

        store.sweep(now=1002.0)

        self.assertEqual(len(store), 2)
        self.assertIsNone(store.get("a"))

    def test_delete_and_list(self):
        store = InMemoryJobStore()
        store.set(RenderJob(id="a"))
        store.set(RenderJob(id="b"))

        self.assertTrue(store.delete("a"))
        self.assertFalse(store.delete("a"))
        self.assertEqual([job.id for job in store.list()], ["b"])

    def test_to_dict_uses_camel_case(self):
        job = RenderJob(id="a", progress=100, status="done", output_path="/out/karaoke-a.mp4")
        self.assertEqual(
            job.to_dict(),
            {"renderId": "a", "progress": 100, "status": "done", "outputPath": "/out/karaoke-a.mp4"},
        )


class TestCancellationHandle(unittest.TestCase):
    def test_cancel_terminates_tracked_process(self):
        handle = CancellationHandle("job")
        process = MagicMock()
        process.poll.return_value = None

        with handle.tracking(process):
            handle.cancel()

        process.terminate.assert_called_once()
        self.assertTrue(handle.cancelled)
        with self.assertRaises(RenderCancelled):
            handle.raise_if_cancelled()

    def test_tracking_after_cancel_terminates_immediately(self):
        handle = CancellationHandle("job")
        handle.cancel()
        process = MagicMock()
        process.poll.return_value = None

        with handle.tracking(process):
            pass

        process.terminate.assert_called_once()

    def test_finished_process_not_terminated(self):
        handle = CancellationHandle("job")
        process = MagicMock()
        process.poll.return_value = 0

        with handle.tracking(process):
            handle.cancel()

        process.terminate.assert_not_called()


class TestCancellationRegistry(unittest.TestCase):
    def test_register_and_pop(self):
        registry = CancellationRegistry()
        handle = CancellationHandle("job")
        registry.register(handle)

        self.assertIn("job", registry)
        self.assertIs(registry.get("job"), handle)
        self.assertEqual(registry.items(), [("job", handle)])
        self.assertIs(registry.pop("job"), handle)
        self.assertIsNone(registry.pop("job"))
        self.assertNotIn("job", registry)


if __name__ == "__main__":
    unittest.main()
