"""Two-stage background compositing.

Builds the ffmpeg invocation that lays a numbered foreground PNG sequence over
a scaled/cropped/dimmed background (or solid black), muxes the audio track and
clamps the result to the rendered duration. A looping background video with a
start offset is first cut at that offset so each loop restarts there.
Commands are argument lists and are never passed through a shell.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from ..constants import BACKGROUND_BLACK, BACKGROUND_IMAGE, BACKGROUND_VIDEO, FRAME_PATTERN
from ..errors import CompositeError, CompositeOutputMissing, RenderCancelled
from ..orchestration.registry import CancellationHandle
from ..shared.media import (
    SOFTWARE_H264_ENCODER,
    encoder_quality_args,
    pick_video_encoder,
    probe_duration,
    resolve_ffmpeg_bin,
)

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class CompositeRequest:
    frames_dir: Path
    fps: float
    width: int
    height: int
    duration_s: float
    output_path: Path
    crf: int = 18
    audio_src: Optional[str] = None
    background_type: str = BACKGROUND_BLACK
    background_src: Optional[str] = None
    background_dim: float = 1.0
    background_blur: float = 0.0
    background_loop: bool = False
    background_start: float = 0.0
    frame_pattern: str = FRAME_PATTERN
    work_dir: Optional[Path] = None

    @property
    def has_background_input(self) -> bool:
        return self.background_type in (BACKGROUND_IMAGE, BACKGROUND_VIDEO) and bool(self.background_src)

    @property
    def overlay_opacity(self) -> float:
        """Opacity of the black layer; the dim value is a brightness factor."""
        return round(1.0 - max(0.0, min(1.0, self.background_dim)), 4)

    @property
    def needs_loop_clip(self) -> bool:
        """A looping video with an in-point is looped from a clip cut at that point."""
        return (
            self.has_background_input
            and self.background_type == BACKGROUND_VIDEO
            and self.background_loop
            and self.background_start > 0
        )

    @property
    def loop_clip_path(self) -> Path:
        return (self.work_dir or self.frames_dir.parent) / "background-loop.mp4"


class BackgroundCompositor:
    def __init__(
        self,
        ffmpeg_bin: Optional[str] = None,
        *,
        hw_encoders: Iterable[str] = ("h264_videotoolbox", "h264_nvenc"),
        audio_bitrate: str = "192k",
    ):
        self.ffmpeg_bin = ffmpeg_bin or resolve_ffmpeg_bin()
        self.hw_encoders = tuple(name for name in hw_encoders if name)
        self.audio_bitrate = audio_bitrate

    def composite(
        self,
        request: CompositeRequest,
        on_progress: Optional[ProgressCallback] = None,
        handle: Optional[CancellationHandle] = None,
    ) -> Path:
        if request.duration_s <= 0:
            raise CompositeError(f"invalid composite duration: {request.duration_s}")
        request.output_path.parent.mkdir(parents=True, exist_ok=True)

        encoder = pick_video_encoder(self.ffmpeg_bin, self.hw_encoders)
        logging.info(
            "[compositor] start output=%s background=%s encoder=%s duration=%.3fs",
            request.output_path,
            request.background_type,
            encoder,
            request.duration_s,
        )
        try:
            if request.needs_loop_clip:
                self._cut_loop_clip(request, handle)
            cmd = self.build_command(request, encoder=encoder)
            try:
                self._run_ffmpeg_with_progress(cmd, request.duration_s, on_progress, handle)
            except CompositeError:
                if encoder == SOFTWARE_H264_ENCODER:
                    raise
                logging.warning(
                    "[compositor] encoder %s failed, retrying with %s", encoder, SOFTWARE_H264_ENCODER
                )
                cmd = self.build_command(request, encoder=SOFTWARE_H264_ENCODER)
                self._run_ffmpeg_with_progress(cmd, request.duration_s, on_progress, handle)
        finally:
            if request.needs_loop_clip:
                request.loop_clip_path.unlink(missing_ok=True)

        output = request.output_path
        if not output.exists() or output.stat().st_size == 0:
            logging.error(
                "[compositor] ffmpeg exited cleanly but produced no output at %s; "
                "check the encoder/driver configuration (encoder=%s)",
                output,
                encoder,
            )
            raise CompositeOutputMissing(f"composite output missing: {output}")
        self._check_duration(request)
        logging.info("[compositor] done output=%s", output)
        return output

    def build_command(self, request: CompositeRequest, *, encoder: str = SOFTWARE_H264_ENCODER) -> List[str]:
        fps = _num(request.fps)
        cmd = [self.ffmpeg_bin, "-y", "-hide_banner", "-loglevel", "error"]

        next_index = 0
        audio_index: Optional[int] = None
        if request.audio_src:
            cmd += ["-i", request.audio_src]
            audio_index = next_index
            next_index += 1

        background_index: Optional[int] = None
        if request.has_background_input:
            if request.background_type == BACKGROUND_IMAGE:
                cmd += ["-loop", "1", "-framerate", fps, "-i", str(request.background_src)]
            elif request.needs_loop_clip:
                # -stream_loop rewinds to the start of the file, so loop the pre-cut clip.
                cmd += ["-stream_loop", "-1", "-i", str(request.loop_clip_path)]
            else:
                if request.background_start > 0:
                    cmd += ["-ss", f"{request.background_start:.3f}"]
                if request.background_loop:
                    cmd += ["-stream_loop", "-1"]
                cmd += ["-i", str(request.background_src)]
            background_index = next_index
            next_index += 1

        foreground_index = next_index
        cmd += [
            "-framerate",
            fps,
            "-start_number",
            "0",
            "-i",
            str(request.frames_dir / request.frame_pattern),
        ]

        cmd += [
            "-filter_complex",
            self.build_filter_graph(request, background_index, foreground_index),
            "-map",
            "[vout]",
        ]
        if audio_index is not None:
            cmd += ["-map", f"{audio_index}:a:0?", "-c:a", "aac", "-b:a", self.audio_bitrate]
        else:
            cmd += ["-an"]

        cmd += ["-t", f"{request.duration_s:.3f}", "-c:v", encoder]
        cmd += encoder_quality_args(encoder, request.crf)
        cmd += [
            "-pix_fmt",
            "yuv420p",
            "-r",
            fps,
            "-movflags",
            "+faststart",
            str(request.output_path),
        ]
        return cmd

    def build_filter_graph(
        self, request: CompositeRequest, background_index: Optional[int], foreground_index: int
    ) -> str:
        width, height, fps = request.width, request.height, _num(request.fps)
        duration = f"{request.duration_s:.3f}"
        filters: List[str] = []

        if background_index is None:
            filters.append(f"color=c=black:s={width}x{height}:r={fps}:d={duration}[bg]")
        else:
            chain = [
                f"scale={width}:{height}:force_original_aspect_ratio=increase",
                f"crop={width}:{height}",
                "setsar=1",
                f"fps={fps}",
            ]
            if request.background_type == BACKGROUND_VIDEO and not request.background_loop:
                # Short clips hold their last frame instead of ending the output early.
                chain.append(f"tpad=stop_mode=clone:stop_duration={duration}")
            if request.background_blur > 0:
                chain.append(f"gblur=sigma={_num(request.background_blur)}")

            opacity = request.overlay_opacity
            if opacity > 0:
                filters.append(f"[{background_index}:v]{','.join(chain)}[bgbase]")
                filters.append(
                    f"color=c=black:s={width}x{height}:r={fps}:d={duration},"
                    f"format=rgba,colorchannelmixer=aa={_num(opacity)}[dim]"
                )
                filters.append("[bgbase][dim]overlay=0:0:format=auto[bg]")
            else:
                filters.append(f"[{background_index}:v]{','.join(chain)}[bg]")

        filters.append(f"[bg][{foreground_index}:v]overlay=0:0:format=auto[vout]")
        return ";".join(filters)

    def build_loop_clip_command(self, request: CompositeRequest) -> List[str]:
        """Cut the background from its in-point to the end so loops restart there."""
        return [
            self.ffmpeg_bin,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-ss",
            f"{request.background_start:.3f}",
            "-i",
            str(request.background_src),
            "-map",
            "0:v:0",
            "-an",
            "-c:v",
            SOFTWARE_H264_ENCODER,
            *encoder_quality_args(SOFTWARE_H264_ENCODER, request.crf),
            "-pix_fmt",
            "yuv420p",
            str(request.loop_clip_path),
        ]

    def _cut_loop_clip(self, request: CompositeRequest, handle: Optional[CancellationHandle]) -> None:
        clip = request.loop_clip_path
        clip.parent.mkdir(parents=True, exist_ok=True)
        logging.info(
            "[compositor] cutting loop clip from %.3fs of %s", request.background_start, request.background_src
        )
        self._run_ffmpeg_with_progress(self.build_loop_clip_command(request), 0.0, None, handle)
        if not clip.exists() or clip.stat().st_size == 0:
            raise CompositeError(
                f"background start {request.background_start:.3f}s leaves no video to loop in {request.background_src}"
            )

    def _check_duration(self, request: CompositeRequest) -> None:
        actual = probe_duration(str(request.output_path))
        if actual is None:
            return
        if abs(actual - request.duration_s) > 1.0 / request.fps:
            logging.warning(
                "[compositor] output duration %.3fs differs from expected %.3fs by more than one frame",
                actual,
                request.duration_s,
            )

    def _run_ffmpeg_with_progress(
        self,
        cmd: List[str],
        expected_duration_s: float,
        on_progress: Optional[ProgressCallback],
        handle: Optional[CancellationHandle],
    ) -> None:
        if handle is not None:
            handle.raise_if_cancelled()

        cmd_with_progress = list(cmd)
        # The output path is the final argument; inject progress flags before it.
        cmd_with_progress[-1:-1] = ["-progress", "pipe:1", "-nostats"]

        try:
            process = subprocess.Popen(
                cmd_with_progress,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise CompositeError(f"failed to start ffmpeg: {exc}") from exc

        if handle is None:
            return_code, stderr_text = self._consume_progress(process, expected_duration_s, on_progress)
        else:
            with handle.tracking(process):
                return_code, stderr_text = self._consume_progress(process, expected_duration_s, on_progress)
            if handle.cancelled:
                raise RenderCancelled(handle.job_id)

        if return_code != 0:
            raise CompositeError(f"ffmpeg failed during compositing (exit={return_code}): {stderr_text.strip()}")

    def _consume_progress(
        self,
        process: subprocess.Popen,
        expected_duration_s: float,
        on_progress: Optional[ProgressCallback],
    ) -> tuple:
        last_ratio = -1.0
        assert process.stdout is not None
        for raw in process.stdout:
            line = raw.strip()
            if not line:
                continue

            key, sep, value = line.partition("=")
            if sep != "=":
                continue

            if key in {"out_time_ms", "out_time_us"}:
                if expected_duration_s <= 0 or on_progress is None:
                    continue
                try:
                    out_time_s = float(value) / 1_000_000.0
                except ValueError:
                    continue
                ratio = max(0.0, min(1.0, out_time_s / expected_duration_s))
                if ratio - last_ratio >= 0.01:
                    self._emit(on_progress, ratio)
                    last_ratio = ratio
                continue

            if key == "progress" and value == "end" and on_progress is not None:
                self._emit(on_progress, 1.0)

        stderr_text = process.stderr.read() if process.stderr is not None else ""
        return process.wait(), stderr_text or ""

    def _emit(self, callback: ProgressCallback, ratio: float) -> None:
        try:
            callback(ratio)
        except Exception:
            logging.exception("[compositor] progress callback failed")


def _num(value: float) -> str:
    """Format a number for ffmpeg arguments without float noise."""
    return f"{float(value):.6g}"
