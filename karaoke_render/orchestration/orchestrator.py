from __future__ import annotations

import logging
import math
import re
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from ..constants import (
    FRAME_PATTERN,
    JOB_STATUS_BUNDLING,
    JOB_STATUS_CANCELLED,
    JOB_STATUS_COMPOSITING,
    JOB_STATUS_DONE,
    JOB_STATUS_ERROR,
    JOB_STATUS_RENDERING,
    JOB_STATUS_RENDERING_FG,
    JOB_STATUS_SELECTING,
    OUTPUT_FILENAME_TEMPLATE,
    PIPELINE_DIRECT,
    PIPELINE_TWO_STAGE,
    PROGRESS_BUNDLING,
    PROGRESS_COMPOSITE_END,
    PROGRESS_DONE,
    PROGRESS_FG_END,
    PROGRESS_RENDER_END,
    PROGRESS_RENDER_START,
    PROGRESS_SELECTING,
)
from ..errors import FrameRendererError, RenderCancelled
from ..rendering.compositor import BackgroundCompositor, CompositeRequest
from ..rendering.frame_renderer import CompositionMetadata, FrameRenderer, ProgressCallback
from ..scene import RenderOptions, SceneDescription
from ..shared.media import remove_path
from .registry import (
    CancellationHandle,
    CancellationRegistry,
    InMemoryJobStore,
    JobStore,
    RenderJob,
)

_TRAILING_NUMBER_RE = re.compile(r"(\d+)(?=\.[A-Za-z0-9]+$)")


@dataclass(frozen=True)
class OrchestratorConfig:
    output_dir: Path
    temp_dir: Path
    output_url_prefix: str = "/out"
    public_dir: Optional[Path] = None
    entry_point: str = "src/remotion/index.ts"
    sample_seconds: float = 30.0
    default_crf: int = 18
    max_workers: int = 2
    two_stage_enabled: bool = True


def select_pipeline(scene: SceneDescription, two_stage_enabled: bool = True) -> str:
    if two_stage_enabled and scene.has_composited_background():
        return PIPELINE_TWO_STAGE
    return PIPELINE_DIRECT


def resolve_frame_range(
    duration_in_frames: int, fps: float, sample: bool, sample_seconds: float
) -> Optional[Tuple[int, int]]:
    """Inclusive frame range to render, or None for the whole composition."""
    if not sample:
        return None
    cap = max(1, int(math.floor(sample_seconds * fps)))
    return 0, min(cap, duration_in_frames) - 1


def rendered_frame_count(duration_in_frames: int, frame_range: Optional[Tuple[int, int]]) -> int:
    if frame_range is None:
        return duration_in_frames
    start, end = frame_range
    return end - start + 1


def map_progress(ratio: float, start: int, end: int) -> int:
    ratio = max(0.0, min(1.0, float(ratio)))
    return int(start + math.floor(ratio * (end - start)))


def normalize_frame_sequence(raw_dir: Path, frames_dir: Path, pattern: str = FRAME_PATTERN) -> int:
    """Move rendered frames into a contiguous, zero-indexed sequence.

    Frames are ordered by the last number embedded in their file name.
    Returns the number of frames moved.
    """
    numbered = []
    for item in raw_dir.iterdir():
        if not item.is_file():
            continue
        match = _TRAILING_NUMBER_RE.search(item.name)
        if not match:
            logging.warning("[render] skip frame without index: %s", item.name)
            continue
        numbered.append((int(match.group(1)), item))

    if not numbered:
        raise FrameRendererError(f"no rendered frames found in {raw_dir}")

    numbered.sort(key=lambda entry: entry[0])
    frames_dir.mkdir(parents=True, exist_ok=True)
    for index, (_, item) in enumerate(numbered):
        item.replace(frames_dir / (pattern % index))
    return len(numbered)


class RenderOrchestrator:
    """Runs render jobs in managed background threads.

    Job state is only ever read through the job store; the orchestrator keeps
    each task's future so it can wait for the task to stop.
    """

    def __init__(
        self,
        renderer: FrameRenderer,
        compositor: BackgroundCompositor,
        config: OrchestratorConfig,
        *,
        store: Optional[JobStore] = None,
        cancellations: Optional[CancellationRegistry] = None,
    ):
        self.renderer = renderer
        self.compositor = compositor
        self.config = config
        self.store = store if store is not None else InMemoryJobStore()
        self.cancellations = cancellations if cancellations is not None else CancellationRegistry()
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(config.max_workers)), thread_name_prefix="render"
        )
        self._tasks: dict[str, Future] = {}
        self._tasks_lock = threading.Lock()

    def submit_render(self, scene: SceneDescription, options: Optional[RenderOptions] = None) -> str:
        options = options or RenderOptions()
        self.store.sweep()

        job_id = str(uuid.uuid4())
        self.store.set(RenderJob(id=job_id))
        handle = CancellationHandle(job_id)
        self.cancellations.register(handle)

        with self._tasks_lock:
            future = self._executor.submit(self._run, job_id, scene, options, handle)
            self._tasks[job_id] = future
        future.add_done_callback(lambda _f, job_id=job_id: self._forget_task(job_id))
        logging.info(
            "[render] submitted job=%s background=%s sample=%s",
            job_id,
            scene.background_type,
            options.render_sample,
        )
        return job_id

    def cancel_render(self, job_id: str) -> bool:
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return False
        handle = self.cancellations.pop(job_id)
        if handle is None:
            return False

        handle.cancel()
        if self.store.update(job_id, progress=0, status=JOB_STATUS_CANCELLED) is None:
            logging.info("[render] cancel ignored, job already finished job=%s", job_id)
            return False
        logging.info("[render] cancel requested job=%s", job_id)
        return True

    def get_status(self, job_id: str) -> Optional[RenderJob]:
        return self.store.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[RenderJob]:
        with self._tasks_lock:
            future = self._tasks.get(job_id)
        if future is not None:
            wait_futures([future], timeout=timeout)
        return self.store.get(job_id)

    def shutdown(self, *, cancel_running: bool = True, wait: bool = True) -> None:
        if cancel_running:
            for job_id, _ in self.cancellations.items():
                self.cancel_render(job_id)
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _forget_task(self, job_id: str) -> None:
        with self._tasks_lock:
            self._tasks.pop(job_id, None)

    def _run(
        self,
        job_id: str,
        scene: SceneDescription,
        options: RenderOptions,
        handle: CancellationHandle,
    ) -> None:
        pipeline = select_pipeline(scene, self.config.two_stage_enabled)
        output_path = self.config.output_dir / OUTPUT_FILENAME_TEMPLATE.format(job_id=job_id)
        job_temp_dir = self.config.temp_dir / job_id
        succeeded = False

        try:
            handle.raise_if_cancelled()
            self._report(job_id, JOB_STATUS_BUNDLING, PROGRESS_BUNDLING)
            bundle = self.renderer.prepare_scene(self.config.entry_point, handle)

            handle.raise_if_cancelled()
            self._report(job_id, JOB_STATUS_SELECTING, PROGRESS_SELECTING)
            render_scene = scene.foreground_only() if pipeline == PIPELINE_TWO_STAGE else scene
            props = render_scene.to_input_props()
            metadata = self.renderer.resolve_metadata(bundle, props, handle)
            frame_range = resolve_frame_range(
                metadata.duration_in_frames,
                metadata.fps,
                options.render_sample,
                self.config.sample_seconds,
            )
            crf = options.crf if options.crf is not None else self.config.default_crf
            self.store.update(job_id, pipeline=pipeline)
            logging.info(
                "[render] job=%s pipeline=%s fps=%s size=%sx%s frames=%s range=%s",
                job_id,
                pipeline,
                metadata.fps,
                metadata.width,
                metadata.height,
                metadata.duration_in_frames,
                frame_range,
            )

            handle.raise_if_cancelled()
            self.config.output_dir.mkdir(parents=True, exist_ok=True)
            if pipeline == PIPELINE_TWO_STAGE:
                self._render_two_stage(
                    job_id, scene, bundle, props, metadata, frame_range, crf, output_path, job_temp_dir, handle
                )
            else:
                handle.raise_if_cancelled()
                self._report(job_id, JOB_STATUS_RENDERING, PROGRESS_RENDER_START)
                self.renderer.render_media(
                    bundle,
                    props,
                    output_path,
                    frame_range,
                    self._progress_reporter(job_id, JOB_STATUS_RENDERING, PROGRESS_RENDER_START, PROGRESS_RENDER_END),
                    handle,
                    crf=crf,
                )

            handle.raise_if_cancelled()
            finished = self.store.update(
                job_id,
                progress=PROGRESS_DONE,
                status=JOB_STATUS_DONE,
                output_path=self._public_path(output_path),
            )
            succeeded = finished is not None
            logging.info("[render] done job=%s output=%s", job_id, output_path)
        except RenderCancelled:
            logging.info("[render] cancelled job=%s", job_id)
            self.store.update(job_id, progress=0, status=JOB_STATUS_CANCELLED)
        except Exception as exc:
            if handle.cancelled:
                logging.info("[render] cancelled job=%s (%s)", job_id, exc)
                self.store.update(job_id, progress=0, status=JOB_STATUS_CANCELLED)
            else:
                logging.exception("[render] failed job=%s", job_id)
                self.store.update(
                    job_id, progress=0, status=JOB_STATUS_ERROR, error_message=str(exc) or type(exc).__name__
                )
        finally:
            self.cancellations.pop(job_id)
            if pipeline == PIPELINE_TWO_STAGE:
                remove_path(job_temp_dir)
            if not succeeded:
                output_path.unlink(missing_ok=True)

    def _render_two_stage(
        self,
        job_id: str,
        scene: SceneDescription,
        bundle: str,
        props: dict,
        metadata: CompositionMetadata,
        frame_range: Optional[Tuple[int, int]],
        crf: int,
        output_path: Path,
        job_temp_dir: Path,
        handle: CancellationHandle,
    ) -> None:
        raw_dir = job_temp_dir / "raw"
        frames_dir = job_temp_dir / "frames"

        handle.raise_if_cancelled()
        raw_dir.mkdir(parents=True, exist_ok=True)
        self._report(job_id, JOB_STATUS_RENDERING_FG, PROGRESS_RENDER_START)
        self.renderer.render_frame_sequence(
            bundle,
            props,
            raw_dir,
            frame_range,
            self._progress_reporter(job_id, JOB_STATUS_RENDERING_FG, PROGRESS_RENDER_START, PROGRESS_FG_END),
            handle,
        )

        handle.raise_if_cancelled()
        self._report(job_id, JOB_STATUS_COMPOSITING, PROGRESS_FG_END)
        frame_count = normalize_frame_sequence(raw_dir, frames_dir)
        expected = rendered_frame_count(metadata.duration_in_frames, frame_range)
        if frame_count != expected:
            logging.warning(
                "[render] job=%s expected %s frames but renderer wrote %s", job_id, expected, frame_count
            )

        request = CompositeRequest(
            frames_dir=frames_dir,
            fps=metadata.fps,
            width=metadata.width,
            height=metadata.height,
            duration_s=frame_count / metadata.fps,
            output_path=output_path,
            crf=crf,
            audio_src=self._resolve_source(scene.audio_src),
            background_type=scene.background_type,
            background_src=self._resolve_source(scene.background_src),
            background_dim=scene.background_dim,
            background_blur=scene.background_blur,
            background_loop=scene.background_video_loop,
            background_start=scene.background_video_start,
            work_dir=job_temp_dir,
        )

        handle.raise_if_cancelled()
        self.compositor.composite(
            request,
            self._progress_reporter(job_id, JOB_STATUS_COMPOSITING, PROGRESS_FG_END, PROGRESS_COMPOSITE_END - 1),
            handle,
        )

    def _report(self, job_id: str, status: str, progress: int) -> None:
        self.store.update(job_id, status=status, progress=progress)

    def _progress_reporter(self, job_id: str, status: str, start: int, end: int) -> ProgressCallback:
        def report(ratio: float) -> None:
            self.store.update(job_id, status=status, progress=map_progress(ratio, start, end))

        return report

    def _public_path(self, output_path: Path) -> str:
        return f"{self.config.output_url_prefix.rstrip('/')}/{output_path.name}"

    def _resolve_source(self, src: Optional[str]) -> Optional[str]:
        """Map site-relative URLs such as ``/uploads/a.mp3`` onto local files."""
        if not src:
            return None
        if src.startswith("/") and self.config.public_dir is not None:
            candidate = self.config.public_dir / src.lstrip("/")
            if candidate.exists():
                return str(candidate)
        return src
