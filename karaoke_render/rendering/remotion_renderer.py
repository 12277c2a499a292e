from __future__ import annotations

import json
import logging
import math
import re
import shutil
import subprocess
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import FrameRendererError, RenderCancelled
from ..orchestration.registry import CancellationHandle
from .frame_renderer import CompositionMetadata, FrameRange, FrameRenderer, ProgressCallback

_NODE_RENDER_PROGRESS_RE = re.compile(r"RENDER_PROGRESS_PCT=([0-9]+(?:\.[0-9]+)?)")
_NODE_RENDER_RESULT_PREFIX = "RENDER_RESULT="


def _find_repo_root() -> Path:
    here = Path(__file__).resolve()
    for candidate in [here.parent] + list(here.parents):
        if (candidate / "remotion").exists() and (candidate / "karaoke_render").exists():
            return candidate
    return here.parents[2]


class RemotionRenderer(FrameRenderer):
    """Drives ``remotion/render.mjs`` as a Node subprocess.

    The bridge script prints ``RENDER_PROGRESS_PCT=<pct>`` while rendering and a
    single ``RENDER_RESULT=<json>`` line on success.
    """

    def __init__(
        self,
        remotion_dir: Optional[Path] = None,
        composition_id: str = "KaraokeVideo",
        *,
        node_bin: str = "node",
        reuse_bundle: bool = True,
    ):
        self.remotion_dir = Path(remotion_dir) if remotion_dir else _find_repo_root() / "remotion"
        self.composition_id = composition_id
        self.node_bin = node_bin
        self.reuse_bundle = reuse_bundle
        self._bundles: Dict[str, str] = {}
        self._bundle_lock = threading.Lock()
        self._node_checked = False

    def prepare_scene(self, entry_point: str, handle: CancellationHandle | None = None) -> str:
        if self.reuse_bundle:
            with self._bundle_lock:
                cached = self._bundles.get(entry_point)
            if cached and Path(cached).exists():
                logging.info("[remotion] reusing bundle %s", cached)
                return cached

        self._ensure_node_ready()
        result = self._run_node(["bundle", "--entry", entry_point], stage="bundle", handle=handle)
        serve_url = str((result or {}).get("serveUrl") or "").strip()
        if not serve_url:
            raise FrameRendererError("Remotion bundle did not report a serveUrl")

        if self.reuse_bundle:
            with self._bundle_lock:
                self._bundles[entry_point] = serve_url
        return serve_url

    def resolve_metadata(
        self, bundle: str, props: Dict[str, Any], handle: CancellationHandle | None = None
    ) -> CompositionMetadata:
        props_path = self._write_props(props)
        try:
            result = self._run_node(
                self._composition_args("select", bundle, props_path),
                stage="select",
                handle=handle,
            )
        finally:
            props_path.unlink(missing_ok=True)

        payload = result or {}
        try:
            fps = float(payload["fps"])
            width = int(payload["width"])
            height = int(payload["height"])
            duration_in_frames = int(payload["durationInFrames"])
        except (KeyError, TypeError, ValueError) as exc:
            raise FrameRendererError(f"Remotion returned invalid composition metadata: {payload}") from exc

        if not math.isfinite(fps) or fps <= 0 or duration_in_frames <= 0:
            raise FrameRendererError(f"Remotion returned invalid composition metadata: {payload}")
        return CompositionMetadata(
            fps=fps, width=width, height=height, duration_in_frames=duration_in_frames
        )

    def render_frame_sequence(
        self,
        bundle: str,
        props: Dict[str, Any],
        output_dir: Path,
        frame_range: FrameRange,
        on_progress: ProgressCallback,
        handle: CancellationHandle | None = None,
    ) -> None:
        output_dir.mkdir(parents=True, exist_ok=True)
        props_path = self._write_props(props)
        args = self._composition_args("frames", bundle, props_path)
        args += ["--output-dir", str(output_dir), "--image-format", "png"]
        args += self._frame_range_args(frame_range)
        try:
            self._run_node(args, stage="frames", on_progress=on_progress, handle=handle)
        finally:
            props_path.unlink(missing_ok=True)

    def render_media(
        self,
        bundle: str,
        props: Dict[str, Any],
        output_path: Path,
        frame_range: FrameRange,
        on_progress: ProgressCallback,
        handle: CancellationHandle | None = None,
        *,
        crf: int | None = None,
    ) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        props_path = self._write_props(props)
        args = self._composition_args("media", bundle, props_path)
        args += ["--output", str(output_path), "--codec", "h264"]
        if crf is not None:
            args += ["--crf", str(crf)]
        args += self._frame_range_args(frame_range)
        try:
            self._run_node(args, stage="media", on_progress=on_progress, handle=handle)
        finally:
            props_path.unlink(missing_ok=True)

    def _composition_args(self, command: str, bundle: str, props_path: Path) -> List[str]:
        return [
            command,
            "--serve-url",
            bundle,
            "--composition",
            self.composition_id,
            "--props",
            str(props_path),
        ]

    def _frame_range_args(self, frame_range: FrameRange) -> List[str]:
        if frame_range is None:
            return []
        start, end = frame_range
        return ["--frame-range", f"{int(start)}-{int(end)}"]

    def _write_props(self, props: Dict[str, Any]) -> Path:
        cache_dir = self.remotion_dir / ".cache" / "props"
        cache_dir.mkdir(parents=True, exist_ok=True)
        props_path = cache_dir / f"{uuid.uuid4().hex}.props.json"
        with open(props_path, "w", encoding="utf-8") as f:
            json.dump(props, f, ensure_ascii=False)
        return props_path

    def _run_node(
        self,
        args: List[str],
        *,
        stage: str,
        on_progress: Optional[ProgressCallback] = None,
        handle: CancellationHandle | None = None,
    ) -> Optional[Dict[str, Any]]:
        if handle is not None:
            handle.raise_if_cancelled()

        render_script = self.remotion_dir / "render.mjs"
        cmd = [self.node_bin, str(render_script)] + list(args)
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(self.remotion_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            raise FrameRendererError(f"Failed to start Remotion ({stage}): {exc}") from exc

        if handle is None:
            return self._consume_node_output(process, stage, on_progress)
        with handle.tracking(process):
            try:
                return self._consume_node_output(process, stage, on_progress)
            except FrameRendererError:
                if handle.cancelled:
                    raise RenderCancelled(handle.job_id)
                raise

    def _consume_node_output(
        self,
        process: subprocess.Popen,
        stage: str,
        on_progress: Optional[ProgressCallback],
    ) -> Optional[Dict[str, Any]]:
        recent_logs: List[str] = []
        result: Optional[Dict[str, Any]] = None
        last_ratio = -1.0
        assert process.stdout is not None
        for raw in process.stdout:
            line = raw.strip()
            if not line:
                continue

            if line.startswith(_NODE_RENDER_RESULT_PREFIX):
                try:
                    parsed = json.loads(line[len(_NODE_RENDER_RESULT_PREFIX):])
                except json.JSONDecodeError:
                    logging.warning("[remotion] unparseable result line: %s", line)
                    continue
                if isinstance(parsed, dict):
                    result = parsed
                continue

            match = _NODE_RENDER_PROGRESS_RE.search(line)
            if match:
                try:
                    ratio = max(0.0, min(1.0, float(match.group(1)) / 100.0))
                except ValueError:
                    continue
                if on_progress is not None and ratio > last_ratio:
                    self._emit_progress(on_progress, stage, ratio)
                    last_ratio = ratio
                continue

            recent_logs.append(line)
            if len(recent_logs) > 40:
                recent_logs.pop(0)
            logging.info("[remotion] %s", line)

        return_code = process.wait()
        if return_code != 0:
            tail = "\n".join(recent_logs[-20:])
            raise FrameRendererError(
                f"Remotion {stage} failed (exit={return_code}). Recent output:\n{tail}"
            )
        return result

    def _emit_progress(self, callback: ProgressCallback, stage: str, ratio: float) -> None:
        try:
            callback(ratio)
        except Exception:
            logging.exception("render progress callback failed at stage=%s", stage)

    def _ensure_node_ready(self) -> None:
        if self._node_checked:
            return
        if shutil.which(self.node_bin) is None:
            raise FrameRendererError("Node.js not found. Install Node.js to use Remotion rendering.")
        if not (self.remotion_dir / "render.mjs").exists():
            raise FrameRendererError(f"Remotion bridge script not found at {self.remotion_dir / 'render.mjs'}")

        if not self._remotion_deps_healthy():
            logging.info("[remotion] dependencies missing or incomplete; running npm install...")
            self._install_remotion_deps()
        self._node_checked = True

    def _remotion_deps_healthy(self) -> bool:
        required_files = [
            self.remotion_dir / "node_modules" / "@remotion" / "bundler" / "package.json",
            self.remotion_dir / "node_modules" / "@remotion" / "renderer" / "package.json",
            self.remotion_dir / "node_modules" / "remotion" / "package.json",
        ]
        return all(path.exists() for path in required_files)

    def _install_remotion_deps(self) -> None:
        if shutil.which("npm") is None:
            raise FrameRendererError("npm not found. Install Node.js/npm to use Remotion rendering.")
        result = subprocess.run(
            ["npm", "install"], cwd=str(self.remotion_dir), capture_output=True, text=True
        )
        if result.returncode != 0:
            raise FrameRendererError(
                "Failed to install Remotion dependencies with npm install: "
                f"{(result.stderr or '').strip()}"
            )
        if not self._remotion_deps_healthy():
            raise FrameRendererError(
                "Remotion dependencies are still invalid after npm install. "
                "Try removing remotion/node_modules and rerun."
            )
