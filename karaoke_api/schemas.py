from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CaptionSegmentModel(BaseModel):
    text: str = Field(default="")
    startMs: float
    endMs: float


class CaptionModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: str = Field(default="")
    startMs: float = Field(..., ge=0)
    endMs: float = Field(..., ge=0)
    timestampMs: Optional[float] = None
    confidence: Optional[float] = None
    segments: Optional[list[CaptionSegmentModel]] = None

    @model_validator(mode="after")
    def check_interval(self) -> "CaptionModel":
        if self.startMs > self.endMs:
            raise ValueError(f"caption ends before it starts ({self.startMs} > {self.endMs})")
        return self


class SceneModel(BaseModel):
    """Editor scene as sent by the browser; unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    audioSrc: Optional[str] = None
    captions: list[CaptionModel] = Field(default_factory=list)
    backgroundType: Literal["black", "image", "video"] = "black"
    backgroundSrc: Optional[str] = None
    backgroundDim: float = Field(default=0.6, ge=0, le=1)
    backgroundBlur: float = Field(default=0, ge=0, le=100)
    backgroundVideoStartTime: float = Field(default=0, ge=0)
    backgroundVideoLoop: bool = False
    backgroundVideoDuration: Optional[float] = Field(default=None, gt=0)
    sungColor: str = "#00ff88"
    unsungColor: str = "#ffffff"
    fontSize: float = Field(default=65, gt=0)
    fontFamily: str = "Roboto"
    enableShadow: bool = True
    enableScrollAnimation: bool = False
    lyricsLayout: Literal["traditional", "bottom"] = "bottom"
    fps: float = Field(default=30, gt=0)
    durationInFrames: Optional[int] = Field(default=None, ge=1)


class RenderOptionsModel(BaseModel):
    crf: Optional[int] = Field(default=None, ge=0, le=51)
    renderSample: bool = False


class RenderRequest(BaseModel):
    inputProps: SceneModel
    options: RenderOptionsModel = Field(default_factory=RenderOptionsModel)


def parse_render_body(body: Any) -> RenderRequest:
    """Accept ``{inputProps, options}`` or a bare scene object."""
    if isinstance(body, dict) and "inputProps" in body:
        return RenderRequest.model_validate(body)
    return RenderRequest(inputProps=SceneModel.model_validate(body))
