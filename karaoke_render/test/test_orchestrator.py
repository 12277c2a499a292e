import shutil
import tempfile
import threading
import unittest
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

from karaoke_render.errors import FrameRendererError
from karaoke_render.orchestration.orchestrator import (
    OrchestratorConfig,
    RenderOrchestrator,
    normalize_frame_sequence,
    resolve_frame_range,
)
from karaoke_render.orchestration.registry import CancellationHandle, InMemoryJobStore, RenderJob
from karaoke_render.rendering.frame_renderer import CompositionMetadata, FrameRenderer
from karaoke_render.scene import RenderOptions, SceneDescription


class FakeRenderer(FrameRenderer):
    def __init__(self, total_frames=90, fps=30, *, fail_with=None, block=False):
        self.total_frames = total_frames
        self.fps = fps
        self.fail_with = fail_with
        self.block = block
        self.started = threading.Event()
        self.release = threading.Event()
        self.metadata_props = []
        self.frame_ranges = []
        self.media_outputs = []

    def prepare_scene(self, entry_point, handle=None):
        return "bundle"

    def resolve_metadata(self, bundle, props, handle=None):
        self.metadata_props.append(props)
        return CompositionMetadata(fps=self.fps, width=1280, height=720, duration_in_frames=self.total_frames)

    def _work(self, frame_range, on_progress, handle):
        self.frame_ranges.append(frame_range)
        self.started.set()
        if self.block:
            while not self.release.is_set():
                if handle is not None and handle.wait(0.01):
                    handle.raise_if_cancelled()
        if self.fail_with is not None:
            raise self.fail_with
        for ratio in (0.25, 0.5, 1.0):
            on_progress(ratio)

    def render_frame_sequence(self, bundle, props, output_dir, frame_range, on_progress, handle=None):
        self._work(frame_range, on_progress, handle)
        start, end = frame_range if frame_range is not None else (0, self.total_frames - 1)
        for index in range(start, end + 1):
            (output_dir / f"element-{index}.png").write_bytes(b"")

    def render_media(self, bundle, props, output_path, frame_range, on_progress, handle=None, *, crf=None):
        self._work(frame_range, on_progress, handle)
        output_path.write_bytes(b"mp4")
        self.media_outputs.append((output_path, crf))


class FakeCompositor:
    def __init__(self):
        self.requests = []
        self.frame_counts = []

    def composite(self, request, on_progress=None, handle=None):
        self.requests.append(request)
        self.frame_counts.append(len(list(request.frames_dir.iterdir())))
        on_progress(0.5)
        on_progress(1.0)
        request.output_path.write_bytes(b"mp4")
        return request.output_path


class RecordingStore(InMemoryJobStore):
    def __init__(self):
        super().__init__()
        self.history = []

    def update(self, job_id, **changes):
        result = super().update(job_id, **changes)
        if result is not None:
            self.history.append((result.status, result.progress))
        return result


def _scene(background="video"):
    props = {
        "audioSrc": "/uploads/song.mp3",
        "captions": [{"text": "la", "startMs": 0, "endMs": 1000}],
        "backgroundType": background,
        "fps": 30,
    }
    if background != "black":
        props["backgroundSrc"] = "/uploads/bg.mp4"
    return SceneDescription.from_props(props)


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.tmp, ignore_errors=True)
        (self.tmp / "public" / "uploads").mkdir(parents=True)
        (self.tmp / "public" / "uploads" / "bg.mp4").write_bytes(b"bg")
        self.config = OrchestratorConfig(
            output_dir=self.tmp / "public" / "out",
            temp_dir=self.tmp / "tmp",
            public_dir=self.tmp / "public",
            max_workers=1,
        )

    def make(self, renderer, compositor=None, store=None):
        orchestrator = RenderOrchestrator(
            renderer, compositor or FakeCompositor(), self.config, store=store if store is not None else RecordingStore()
        )
        self.addCleanup(orchestrator.shutdown)
        return orchestrator


class TestTwoStage(OrchestratorTestCase):
    def test_two_stage_render_composites_and_cleans_temp(self):
        renderer = FakeRenderer()
        compositor = FakeCompositor()
        orchestrator = self.make(renderer, compositor)

        job_id = orchestrator.submit_render(_scene())
        job = orchestrator.wait(job_id, timeout=10)

        self.assertEqual(job.status, "done")
        self.assertEqual(job.progress, 100)
        self.assertEqual(job.pipeline, "two_stage")
        self.assertEqual(job.output_path, f"/out/karaoke-{job_id}.mp4")
        self.assertTrue((self.config.output_dir / f"karaoke-{job_id}.mp4").exists())
        self.assertFalse((self.config.temp_dir / job_id).exists())

        request = compositor.requests[0]
        self.assertEqual(compositor.frame_counts, [90])
        self.assertAlmostEqual(request.duration_s, 3.0)
        self.assertEqual(request.background_src, str(self.tmp / "public" / "uploads" / "bg.mp4"))
        self.assertEqual(request.crf, 18)

        foreground_props = renderer.metadata_props[0]
        self.assertEqual(foreground_props["backgroundType"], "black")
        self.assertTrue(foreground_props["transparentBackground"])
        self.assertNotIn("backgroundSrc", foreground_props)

    def test_progress_is_monotonic(self):
        store = RecordingStore()
        orchestrator = self.make(FakeRenderer(), store=store)

        job_id = orchestrator.submit_render(_scene())
        orchestrator.wait(job_id, timeout=10)

        progress = [value for _, value in store.history]
        self.assertEqual(progress, sorted(progress))
        statuses = [status for status, _ in store.history]
        self.assertEqual(statuses[0], "bundling")
        self.assertIn("rendering_fg", statuses)
        self.assertIn("compositing", statuses)
        self.assertEqual(statuses[-1], "done")

    def test_sample_render_caps_frames(self):
        renderer = FakeRenderer(total_frames=1800)
        compositor = FakeCompositor()
        orchestrator = self.make(renderer, compositor)

        job_id = orchestrator.submit_render(_scene(), RenderOptions(render_sample=True))
        job = orchestrator.wait(job_id, timeout=30)

        self.assertEqual(job.status, "done")
        self.assertEqual(renderer.frame_ranges, [(0, 899)])
        self.assertEqual(compositor.frame_counts, [900])
        self.assertAlmostEqual(compositor.requests[0].duration_s, 30.0)

    def test_failure_records_error_and_cleans_up(self):
        orchestrator = self.make(FakeRenderer(fail_with=FrameRendererError("chromium crashed")))

        job_id = orchestrator.submit_render(_scene())
        job = orchestrator.wait(job_id, timeout=10)

        self.assertEqual(job.status, "error")
        self.assertEqual(job.progress, 0)
        self.assertEqual(job.error_message, "chromium crashed")
        self.assertFalse((self.config.temp_dir / job_id).exists())
        self.assertFalse((self.config.output_dir / f"karaoke-{job_id}.mp4").exists())


class TestDirect(OrchestratorTestCase):
    def test_black_background_renders_directly(self):
        renderer = FakeRenderer()
        compositor = FakeCompositor()
        orchestrator = self.make(renderer, compositor)

        job_id = orchestrator.submit_render(_scene("black"), RenderOptions(crf=23))
        job = orchestrator.wait(job_id, timeout=10)

        self.assertEqual(job.status, "done")
        self.assertEqual(job.pipeline, "direct")
        self.assertEqual(compositor.requests, [])
        self.assertEqual(renderer.media_outputs, [(self.config.output_dir / f"karaoke-{job_id}.mp4", 23)])
        self.assertNotIn("transparentBackground", renderer.metadata_props[0])


class TestCancellation(OrchestratorTestCase):
    def test_status_is_init_while_queued(self):
        blocker = FakeRenderer(block=True)
        orchestrator = self.make(blocker)

        first = orchestrator.submit_render(_scene())
        self.assertTrue(blocker.started.wait(5))
        second = orchestrator.submit_render(_scene())

        queued = orchestrator.get_status(second)
        self.assertEqual((queued.status, queued.progress), ("init", 0))

        blocker.release.set()
        orchestrator.wait(first, timeout=10)
        orchestrator.wait(second, timeout=10)
        self.assertEqual(orchestrator.get_status(second).status, "done")

    def test_cancel_running_job(self):
        renderer = FakeRenderer(block=True)
        orchestrator = self.make(renderer)

        job_id = orchestrator.submit_render(_scene())
        self.assertTrue(renderer.started.wait(5))

        self.assertTrue(orchestrator.cancel_render(job_id))
        self.assertEqual(orchestrator.get_status(job_id).status, "cancelled")

        job = orchestrator.wait(job_id, timeout=10)
        self.assertEqual((job.status, job.progress), ("cancelled", 0))
        self.assertIsNone(job.output_path)
        self.assertFalse((self.config.temp_dir / job_id).exists())
        self.assertFalse((self.config.output_dir / f"karaoke-{job_id}.mp4").exists())
        self.assertNotIn(job_id, orchestrator.cancellations)

    def test_cancel_finished_job_is_not_found(self):
        orchestrator = self.make(FakeRenderer())
        job_id = orchestrator.submit_render(_scene())
        before = orchestrator.wait(job_id, timeout=10)

        self.assertFalse(orchestrator.cancel_render(job_id))
        after = orchestrator.get_status(job_id)
        self.assertEqual((after.status, after.progress, after.output_path), ("done", 100, before.output_path))

    def test_cancel_loses_to_job_finishing_after_status_read(self):
        store = RecordingStore()
        orchestrator = self.make(FakeRenderer(), store=store)
        store.set(RenderJob(id="racing", status="done", progress=100, output_path="/out/karaoke-racing.mp4"))
        orchestrator.cancellations.register(CancellationHandle("racing"))
        stale = replace(store.get("racing"), status="rendering", progress=90)

        with patch.object(store, "get", return_value=stale):
            self.assertFalse(orchestrator.cancel_render("racing"))

        job = store.get("racing")
        self.assertEqual((job.status, job.progress, job.output_path), ("done", 100, "/out/karaoke-racing.mp4"))

    def test_cancel_unknown_job(self):
        orchestrator = self.make(FakeRenderer())
        self.assertFalse(orchestrator.cancel_render("missing"))
        self.assertIsNone(orchestrator.get_status("missing"))


class TestHelpers(unittest.TestCase):
    def test_resolve_frame_range(self):
        self.assertIsNone(resolve_frame_range(1800, 30, False, 30))
        self.assertEqual(resolve_frame_range(1800, 30, True, 30), (0, 899))
        self.assertEqual(resolve_frame_range(300, 30, True, 30), (0, 299))

    def test_normalize_frame_sequence_orders_by_trailing_number(self):
        tmp = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, tmp, ignore_errors=True)
        raw = tmp / "raw"
        raw.mkdir()
        for index in (10, 2, 1):
            (raw / f"element-{index}.png").write_text(str(index))

        count = normalize_frame_sequence(raw, tmp / "frames")

        self.assertEqual(count, 3)
        names = sorted(p.name for p in (tmp / "frames").iterdir())
        self.assertEqual(names, ["frame-000000.png", "frame-000001.png", "frame-000002.png"])
        self.assertEqual((tmp / "frames" / "frame-000002.png").read_text(), "10")

    def test_normalize_frame_sequence_requires_frames(self):
        tmp = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, tmp, ignore_errors=True)
        with self.assertRaises(FrameRendererError):
            normalize_frame_sequence(tmp, tmp / "frames")


if __name__ == "__main__":
    unittest.main()
