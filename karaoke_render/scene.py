from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any

from .constants import (
    BACKGROUND_BLACK,
    BACKGROUND_IMAGE,
    BACKGROUND_TYPES,
    BACKGROUND_VIDEO,
    DEFAULT_BACKGROUND_DIM,
    DEFAULT_FPS,
    LYRICS_LAYOUTS,
)

# Keys owned by SceneDescription; everything else is forwarded untouched.
_KNOWN_PROPS = {
    "audioSrc",
    "captions",
    "backgroundType",
    "backgroundSrc",
    "backgroundDim",
    "backgroundBlur",
    "backgroundVideoStartTime",
    "backgroundVideoLoop",
    "backgroundVideoDuration",
    "sungColor",
    "unsungColor",
    "fontSize",
    "fontFamily",
    "enableShadow",
    "enableScrollAnimation",
    "lyricsLayout",
    "fps",
    "durationInFrames",
    "transparentBackground",
}


@dataclass(frozen=True)
class CaptionSegment:
    text: str
    start_ms: float
    end_ms: float

    def to_props(self) -> dict[str, Any]:
        return {"text": self.text, "startMs": self.start_ms, "endMs": self.end_ms}


@dataclass(frozen=True)
class Caption:
    text: str
    start_ms: float
    end_ms: float
    timestamp_ms: float | None = None
    confidence: float | None = None
    segments: tuple[CaptionSegment, ...] | None = None

    def to_props(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "text": self.text,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "timestampMs": self.timestamp_ms,
            "confidence": self.confidence,
        }
        if self.segments is not None:
            payload["segments"] = [seg.to_props() for seg in self.segments]
        return payload


@dataclass(frozen=True)
class RenderOptions:
    crf: int | None = None
    render_sample: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "RenderOptions":
        if not raw:
            return cls()
        crf_raw = raw.get("crf")
        crf: int | None = None
        if crf_raw is not None:
            try:
                crf = int(crf_raw)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"invalid crf: {crf_raw!r}") from exc
            if crf < 0 or crf > 51:
                raise ValueError(f"crf out of range (0-51): {crf}")
        return cls(crf=crf, render_sample=bool(raw.get("renderSample", False)))


@dataclass(frozen=True)
class SceneDescription:
    """Declarative input of one karaoke render.

    ``background_dim`` is a brightness factor: 1 keeps the background as is,
    0 turns it fully black.
    """

    captions: tuple[Caption, ...]
    audio_src: str | None = None
    background_type: str = BACKGROUND_BLACK
    background_src: str | None = None
    background_dim: float = DEFAULT_BACKGROUND_DIM
    background_blur: float = 0.0
    background_video_start: float = 0.0
    background_video_loop: bool = False
    background_video_duration: float | None = None
    sung_color: str = "#00ff88"
    unsung_color: str = "#ffffff"
    font_size: float = 65
    font_family: str = "Roboto"
    enable_shadow: bool = True
    enable_scroll_animation: bool = False
    lyrics_layout: str = "bottom"
    fps: float = DEFAULT_FPS
    duration_in_frames: int | None = None
    transparent_background: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_props(cls, raw: dict[str, Any]) -> "SceneDescription":
        if not isinstance(raw, dict):
            raise ValueError("scene description must be an object")

        captions_raw = raw.get("captions") or []
        if not isinstance(captions_raw, list):
            raise ValueError("captions must be a list")
        captions = [_parse_caption(item, idx) for idx, item in enumerate(captions_raw)]
        captions.sort(key=lambda item: item.start_ms)

        background_type = str(raw.get("backgroundType") or BACKGROUND_BLACK)
        if background_type not in BACKGROUND_TYPES:
            raise ValueError(f"unsupported backgroundType: {background_type}")

        lyrics_layout = str(raw.get("lyricsLayout") or "bottom")
        if lyrics_layout not in LYRICS_LAYOUTS:
            raise ValueError(f"unsupported lyricsLayout: {lyrics_layout}")

        fps = _to_float(raw.get("fps"), float(DEFAULT_FPS))
        if fps <= 0:
            raise ValueError(f"fps must be positive: {fps}")

        duration_in_frames = raw.get("durationInFrames")
        if duration_in_frames is not None:
            duration_in_frames = max(1, int(duration_in_frames))

        video_duration = raw.get("backgroundVideoDuration")
        video_duration = _to_float(video_duration, 0.0) if video_duration is not None else None
        if video_duration is not None and video_duration <= 0:
            video_duration = None

        return cls(
            captions=tuple(captions),
            audio_src=(str(raw.get("audioSrc") or "").strip() or None),
            background_type=background_type,
            background_src=(str(raw.get("backgroundSrc") or "").strip() or None),
            background_dim=_clamp(_to_float(raw.get("backgroundDim"), DEFAULT_BACKGROUND_DIM), 0.0, 1.0),
            background_blur=_clamp(_to_float(raw.get("backgroundBlur"), 0.0), 0.0, 100.0),
            background_video_start=max(0.0, _to_float(raw.get("backgroundVideoStartTime"), 0.0)),
            background_video_loop=bool(raw.get("backgroundVideoLoop", False)),
            background_video_duration=video_duration,
            sung_color=str(raw.get("sungColor") or "#00ff88"),
            unsung_color=str(raw.get("unsungColor") or "#ffffff"),
            font_size=_to_float(raw.get("fontSize"), 65.0),
            font_family=str(raw.get("fontFamily") or "Roboto"),
            enable_shadow=bool(raw.get("enableShadow", True)),
            enable_scroll_animation=bool(raw.get("enableScrollAnimation", False)),
            lyrics_layout=lyrics_layout,
            fps=fps,
            duration_in_frames=duration_in_frames,
            transparent_background=bool(raw.get("transparentBackground", False)),
            extra={key: value for key, value in raw.items() if key not in _KNOWN_PROPS},
        )

    def has_composited_background(self) -> bool:
        return self.background_type in (BACKGROUND_IMAGE, BACKGROUND_VIDEO) and bool(self.background_src)

    def foreground_only(self) -> "SceneDescription":
        """Copy without any background layer, rendered on a transparent canvas."""
        return replace(
            self,
            background_type=BACKGROUND_BLACK,
            background_src=None,
            background_video_duration=None,
            background_video_loop=False,
            background_video_start=0.0,
            transparent_background=True,
        )

    def to_input_props(self) -> dict[str, Any]:
        props: dict[str, Any] = dict(self.extra)
        props.update(
            {
                "audioSrc": self.audio_src or "",
                "captions": [caption.to_props() for caption in self.captions],
                "backgroundType": self.background_type,
                "backgroundDim": self.background_dim,
                "backgroundBlur": self.background_blur,
                "backgroundVideoStartTime": self.background_video_start,
                "backgroundVideoLoop": self.background_video_loop,
                "sungColor": self.sung_color,
                "unsungColor": self.unsung_color,
                "fontSize": self.font_size,
                "fontFamily": self.font_family,
                "enableShadow": self.enable_shadow,
                "enableScrollAnimation": self.enable_scroll_animation,
                "lyricsLayout": self.lyrics_layout,
                "fps": self.fps,
            }
        )
        if self.background_src:
            props["backgroundSrc"] = self.background_src
        if self.background_video_duration is not None:
            props["backgroundVideoDuration"] = self.background_video_duration
        if self.duration_in_frames is not None:
            props["durationInFrames"] = self.duration_in_frames
        if self.transparent_background:
            props["transparentBackground"] = True
        return props


def normalize_segments(
    start_ms: float, end_ms: float, segments: list[dict[str, Any]]
) -> tuple[CaptionSegment, ...]:
    """Clamp karaoke segments into the caption interval.

    Segments that are inverted, or that fall completely outside the caption,
    are dropped.
    """
    result: list[CaptionSegment] = []
    for raw in segments:
        if not isinstance(raw, dict):
            continue
        try:
            seg_start = float(raw.get("startMs"))
            seg_end = float(raw.get("endMs"))
        except (TypeError, ValueError):
            continue
        if not math.isfinite(seg_start) or not math.isfinite(seg_end) or seg_end < seg_start:
            continue

        clamped_start = _clamp(seg_start, start_ms, end_ms)
        clamped_end = _clamp(seg_end, start_ms, end_ms)
        if clamped_end <= clamped_start and seg_end > seg_start:
            continue
        if (clamped_start, clamped_end) != (seg_start, seg_end):
            logging.debug(
                "clamped caption segment %.0f-%.0f into %.0f-%.0f",
                seg_start,
                seg_end,
                start_ms,
                end_ms,
            )
        result.append(
            CaptionSegment(text=str(raw.get("text") or ""), start_ms=clamped_start, end_ms=clamped_end)
        )
    return tuple(result)


def _parse_caption(raw: Any, index: int) -> Caption:
    if not isinstance(raw, dict):
        raise ValueError(f"caption #{index} must be an object")
    try:
        start_ms = float(raw.get("startMs"))
        end_ms = float(raw.get("endMs"))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"caption #{index} has invalid startMs/endMs") from exc
    if not math.isfinite(start_ms) or not math.isfinite(end_ms):
        raise ValueError(f"caption #{index} has non-finite timing")
    if start_ms > end_ms:
        raise ValueError(f"caption #{index} ends before it starts ({start_ms} > {end_ms})")

    segments_raw = raw.get("segments")
    segments = None
    if isinstance(segments_raw, list):
        segments = normalize_segments(start_ms, end_ms, segments_raw)

    return Caption(
        text=str(raw.get("text") or ""),
        start_ms=start_ms,
        end_ms=end_ms,
        timestamp_ms=_optional_float(raw.get("timestampMs")),
        confidence=_optional_float(raw.get("confidence")),
        segments=segments,
    )


def _to_float(value: Any, default: float) -> float:
    try:
        result = float(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    return result


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
