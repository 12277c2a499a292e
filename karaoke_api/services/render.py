from __future__ import annotations

import logging
import threading
from typing import Any

from karaoke_render.orchestration.orchestrator import OrchestratorConfig, RenderOrchestrator
from karaoke_render.orchestration.registry import InMemoryJobStore, RenderJob
from karaoke_render.rendering.compositor import BackgroundCompositor
from karaoke_render.rendering.remotion_renderer import RemotionRenderer
from karaoke_render.scene import RenderOptions, SceneDescription

from ..config import get_settings
from ..errors import bad_request, not_found

_orchestrator: RenderOrchestrator | None = None
_orchestrator_lock = threading.Lock()


def build_orchestrator() -> RenderOrchestrator:
    settings = get_settings()
    renderer = RemotionRenderer(
        settings.remotion_dir,
        settings.remotion_composition_id,
        node_bin=settings.node_bin,
    )
    compositor = BackgroundCompositor(
        hw_encoders=settings.composite_hw_encoders,
        audio_bitrate=settings.composite_audio_bitrate,
    )
    config = OrchestratorConfig(
        output_dir=settings.output_dir,
        temp_dir=settings.render_temp_dir,
        output_url_prefix=settings.output_url_prefix,
        public_dir=settings.public_dir,
        entry_point=settings.remotion_entry,
        sample_seconds=settings.render_sample_seconds,
        default_crf=settings.render_default_crf,
        max_workers=settings.render_max_workers,
        two_stage_enabled=settings.render_two_stage,
    )
    store = InMemoryJobStore(ttl_seconds=settings.job_ttl_seconds, max_entries=settings.job_max_entries)
    return RenderOrchestrator(renderer, compositor, config, store=store)


def get_orchestrator() -> RenderOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
            logging.info("[karaoke_api] render orchestrator ready")
        return _orchestrator


def shutdown_orchestrator() -> None:
    global _orchestrator
    with _orchestrator_lock:
        orchestrator, _orchestrator = _orchestrator, None
    if orchestrator is not None:
        orchestrator.shutdown(cancel_running=True, wait=False)


def start_render(scene_props: dict[str, Any], options: dict[str, Any] | None) -> str:
    try:
        scene = SceneDescription.from_props(scene_props)
        render_options = RenderOptions.from_dict(options)
    except ValueError as exc:
        raise bad_request(str(exc)) from exc
    return get_orchestrator().submit_render(scene, render_options)


def load_render_or_404(render_id: str) -> RenderJob:
    job = get_orchestrator().get_status(render_id)
    if job is None:
        raise not_found("render not found")
    return job


def cancel_render_or_404(render_id: str) -> None:
    if not get_orchestrator().cancel_render(render_id):
        raise not_found("render not found or already finished")
