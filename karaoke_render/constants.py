from __future__ import annotations

JOB_STATUS_INIT = "init"
JOB_STATUS_BUNDLING = "bundling"
JOB_STATUS_SELECTING = "selecting"
JOB_STATUS_RENDERING = "rendering"
JOB_STATUS_RENDERING_FG = "rendering_fg"
JOB_STATUS_COMPOSITING = "compositing"
JOB_STATUS_DONE = "done"
JOB_STATUS_ERROR = "error"
JOB_STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({JOB_STATUS_DONE, JOB_STATUS_ERROR, JOB_STATUS_CANCELLED})

PIPELINE_DIRECT = "direct"
PIPELINE_TWO_STAGE = "two_stage"

PROGRESS_BUNDLING = 1
PROGRESS_SELECTING = 5
PROGRESS_RENDER_START = 10
PROGRESS_RENDER_END = 95
PROGRESS_FG_END = 70
PROGRESS_COMPOSITE_END = 100
PROGRESS_DONE = 100

BACKGROUND_BLACK = "black"
BACKGROUND_IMAGE = "image"
BACKGROUND_VIDEO = "video"
BACKGROUND_TYPES = (BACKGROUND_BLACK, BACKGROUND_IMAGE, BACKGROUND_VIDEO)

LYRICS_LAYOUTS = ("traditional", "bottom")

DEFAULT_FPS = 30
DEFAULT_BACKGROUND_DIM = 0.6

FRAME_PATTERN = "frame-%06d.png"
OUTPUT_FILENAME_TEMPLATE = "karaoke-{job_id}.mp4"
