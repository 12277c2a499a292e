from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    work_dir: Path
    public_dir: Path
    output_dir: Path
    render_temp_dir: Path
    output_url_prefix: str
    remotion_dir: Path
    remotion_entry: str
    remotion_composition_id: str
    node_bin: str
    render_max_workers: int
    render_sample_seconds: float
    render_default_crf: int
    render_two_stage: bool
    composite_hw_encoders: tuple[str, ...]
    composite_audio_bitrate: str
    job_ttl_seconds: int
    job_max_entries: int
    output_ttl_seconds: int
    cleanup_on_startup: bool
    web_cors_allowed_origins: tuple[str, ...]


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_path(name: str, default: Path) -> Path:
    return Path(os.getenv(name, str(default))).expanduser().resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    repo_root = Path(__file__).resolve().parents[1]
    work_dir = _env_path("WORK_DIR", repo_root / "workdir")
    public_dir = _env_path("PUBLIC_DIR", work_dir / "public")

    return Settings(
        work_dir=work_dir,
        public_dir=public_dir,
        output_dir=_env_path("OUTPUT_DIR", public_dir / "out"),
        render_temp_dir=_env_path("RENDER_TEMP_DIR", work_dir / "tmp" / "render"),
        output_url_prefix="/" + os.getenv("OUTPUT_URL_PREFIX", "/out").strip().strip("/"),
        remotion_dir=_env_path("REMOTION_DIR", repo_root / "remotion"),
        remotion_entry=os.getenv("REMOTION_ENTRY", "src/remotion/index.ts"),
        remotion_composition_id=os.getenv("REMOTION_COMPOSITION_ID", "KaraokeVideo"),
        node_bin=os.getenv("NODE_BIN", "node"),
        render_max_workers=max(1, int(os.getenv("RENDER_MAX_WORKERS", "2"))),
        render_sample_seconds=max(1.0, float(os.getenv("RENDER_SAMPLE_SECONDS", "30"))),
        render_default_crf=min(51, max(0, int(os.getenv("RENDER_DEFAULT_CRF", "18")))),
        render_two_stage=_env_flag("RENDER_TWO_STAGE", "1"),
        composite_hw_encoders=_env_list("COMPOSITE_HW_ENCODERS", "h264_videotoolbox,h264_nvenc"),
        composite_audio_bitrate=os.getenv("COMPOSITE_AUDIO_BITRATE", "192k"),
        job_ttl_seconds=max(0, int(os.getenv("JOB_TTL_SECONDS", "3600"))),
        job_max_entries=max(1, int(os.getenv("JOB_MAX_ENTRIES", "500"))),
        output_ttl_seconds=max(0, int(os.getenv("OUTPUT_TTL_SECONDS", "86400"))),
        cleanup_on_startup=_env_flag("CLEANUP_ON_STARTUP", "1"),
        web_cors_allowed_origins=_env_list("WEB_CORS_ALLOWED_ORIGINS", "*"),
    )


def ensure_work_dirs() -> None:
    settings = get_settings()
    settings.work_dir.mkdir(parents=True, exist_ok=True)
    settings.output_dir.mkdir(parents=True, exist_ok=True)
    settings.render_temp_dir.mkdir(parents=True, exist_ok=True)
