from __future__ import annotations

import logging
import time
from pathlib import Path

from karaoke_render.shared.media import remove_path

from ..config import get_settings

OUTPUT_GLOB = "karaoke-*.mp4"


def _is_within(base_dir: Path, target: Path) -> bool:
    base = base_dir.resolve()
    candidate = target.resolve(strict=False)
    try:
        candidate.relative_to(base)
        return True
    except ValueError:
        return False


def cleanup_stale_temp_dirs(temp_dir: Path, *, active_ids: set[str] | None = None) -> int:
    """Remove per-job frame directories that no running job owns."""
    if not temp_dir.exists():
        return 0

    active = active_ids or set()
    removed = 0
    for item in sorted(temp_dir.iterdir()):
        if not item.is_dir() or item.name in active:
            continue
        try:
            if remove_path(item):
                removed += 1
        except OSError:
            logging.exception("[karaoke_api] temp cleanup failed path=%s", item)

    if removed:
        logging.info("[karaoke_api] removed stale render temp dirs count=%s", removed)
    return removed


def cleanup_expired_outputs(output_dir: Path, ttl_seconds: int, *, now: float | None = None) -> int:
    if not output_dir.exists():
        return 0

    cutoff = (time.time() if now is None else now) - max(0, int(ttl_seconds))
    removed = 0
    for item in sorted(output_dir.glob(OUTPUT_GLOB)):
        if not item.is_file() or not _is_within(output_dir, item):
            continue
        try:
            if item.stat().st_mtime > cutoff:
                continue
            item.unlink(missing_ok=True)
            removed += 1
        except OSError:
            logging.exception("[karaoke_api] output cleanup failed path=%s", item)

    if removed:
        logging.info("[karaoke_api] removed expired outputs count=%s ttl_seconds=%s", removed, ttl_seconds)
    return removed


def empty_directory(path: Path) -> int:
    """Delete everything inside ``path`` but keep the directory itself."""
    if not path.exists():
        path.mkdir(parents=True, exist_ok=True)
        return 0

    removed = 0
    for item in path.iterdir():
        if item.name.startswith("."):
            continue
        if remove_path(item):
            removed += 1
    return removed


def cleanup_on_startup() -> None:
    settings = get_settings()
    if not settings.cleanup_on_startup:
        return
    cleanup_stale_temp_dirs(settings.render_temp_dir)
    cleanup_expired_outputs(settings.output_dir, settings.output_ttl_seconds)
