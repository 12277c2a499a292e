from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from ..orchestration.registry import CancellationHandle

ProgressCallback = Callable[[float], None]
FrameRange = Optional[Tuple[int, int]]


@dataclass(frozen=True)
class CompositionMetadata:
    fps: float
    width: int
    height: int
    duration_in_frames: int

    @property
    def duration_sec(self) -> float:
        return self.duration_in_frames / self.fps


class FrameRenderer:
    """Capability that turns scene props into frames or a muxed video.

    ``on_progress`` receives a ratio in [0, 1]. Implementations must poll
    ``handle`` and raise ``RenderCancelled`` once it is cancelled.
    """

    def prepare_scene(self, entry_point: str, handle: CancellationHandle | None = None) -> str:
        raise NotImplementedError

    def resolve_metadata(
        self, bundle: str, props: Dict[str, Any], handle: CancellationHandle | None = None
    ) -> CompositionMetadata:
        raise NotImplementedError

    def render_frame_sequence(
        self,
        bundle: str,
        props: Dict[str, Any],
        output_dir: Path,
        frame_range: FrameRange,
        on_progress: ProgressCallback,
        handle: CancellationHandle | None = None,
    ) -> None:
        raise NotImplementedError

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
        raise NotImplementedError
