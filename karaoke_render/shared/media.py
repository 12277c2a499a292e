from __future__ import annotations

import logging
import os
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path
from typing import Iterable

import ffmpeg

SOFTWARE_H264_ENCODER = "libx264"


def resolve_ffmpeg_bin() -> str:
    env_ffmpeg = os.environ.get("KARAOKE_FFMPEG")
    if env_ffmpeg and os.path.exists(env_ffmpeg):
        return env_ffmpeg
    return shutil.which("ffmpeg") or "ffmpeg"


def resolve_ffprobe_bin() -> str:
    env_ffprobe = os.environ.get("KARAOKE_FFPROBE")
    if env_ffprobe and os.path.exists(env_ffprobe):
        return env_ffprobe
    return shutil.which("ffprobe") or "ffprobe"


def parse_rate(rate: object) -> float | None:
    if rate is None:
        return None
    raw = str(rate).strip()
    if not raw or raw == "0/0":
        return None
    if "/" in raw:
        num, den = raw.split("/", 1)
        try:
            num_f = float(num)
            den_f = float(den)
        except ValueError:
            return None
        if den_f == 0:
            return None
        return num_f / den_f
    try:
        return float(raw)
    except ValueError:
        return None


def probe_media(path: str, ffprobe_bin: str | None = None) -> dict[str, float | int | str | None]:
    """Return duration plus first video stream geometry of ``path``."""
    try:
        payload = ffmpeg.probe(path, cmd=ffprobe_bin or resolve_ffprobe_bin())
    except ffmpeg.Error as exc:
        stderr = exc.stderr.decode("utf-8", errors="replace") if exc.stderr else ""
        raise RuntimeError(f"ffprobe failed for {path}: {stderr.strip()}") from exc
    except OSError as exc:
        raise RuntimeError(f"ffprobe could not be started: {exc}") from exc

    streams = payload.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    duration = None
    try:
        duration_raw = (payload.get("format") or {}).get("duration")
        if duration_raw is not None:
            duration = float(duration_raw)
    except (TypeError, ValueError):
        duration = None

    info: dict[str, float | int | str | None] = {
        "duration_sec": duration,
        "has_audio": int(has_audio),
        "width": None,
        "height": None,
        "fps": None,
        "video_codec": None,
    }
    if video is not None:
        info["width"] = int(video["width"]) if isinstance(video.get("width"), int) else None
        info["height"] = int(video["height"]) if isinstance(video.get("height"), int) else None
        info["fps"] = parse_rate(video.get("avg_frame_rate")) or parse_rate(video.get("r_frame_rate"))
        info["video_codec"] = video.get("codec_name")
    return info


def probe_duration(path: str, ffprobe_bin: str | None = None) -> float | None:
    try:
        return probe_media(path, ffprobe_bin).get("duration_sec")  # type: ignore[return-value]
    except RuntimeError:
        logging.warning("Failed to probe duration of %s", path)
        return None


@lru_cache(maxsize=8)
def list_encoders(ffmpeg_bin: str) -> frozenset[str]:
    cmd = [ffmpeg_bin, "-hide_banner", "-encoders"]
    try:
        result = subprocess.run(cmd, check=True, capture_output=True, text=True)
    except (OSError, subprocess.CalledProcessError):
        return frozenset()

    names = set()
    for line in result.stdout.splitlines():
        parts = line.split()
        # Encoder rows look like " V....D libx264   libx264 H.264 ..."
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS":
            names.add(parts[1])
    return frozenset(names)


def pick_video_encoder(ffmpeg_bin: str, preferred: Iterable[str]) -> str:
    available = list_encoders(ffmpeg_bin)
    for name in preferred:
        name = name.strip()
        if name and name in available:
            return name
    return SOFTWARE_H264_ENCODER


def encoder_quality_args(encoder: str, crf: int) -> list[str]:
    """Map a CRF-like quality factor (lower is better) onto encoder flags."""
    if encoder == SOFTWARE_H264_ENCODER:
        return ["-crf", str(crf), "-preset", "veryfast"]
    if encoder.endswith("_nvenc"):
        return ["-rc", "vbr", "-cq", str(crf), "-b:v", "0"]
    if encoder.endswith("_videotoolbox"):
        # videotoolbox quality runs 1..100, higher is better.
        quality = max(1, min(100, int(round(100 - crf * 100 / 51))))
        return ["-q:v", str(quality)]
    if encoder.endswith("_vaapi") or encoder.endswith("_qsv"):
        return ["-qp", str(crf)]
    return ["-crf", str(crf)]


def remove_path(path: Path) -> bool:
    if not path.exists():
        return False
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
        return True
    path.unlink(missing_ok=True)
    return True
