from __future__ import annotations


class RenderError(RuntimeError):
    """Base class for failures raised by the render core."""


class RenderCancelled(RenderError):
    """Raised when a job observes its cancellation token.

    This is a terminal state chosen by the user, not a failure.
    """

    def __init__(self, job_id: str | None = None):
        self.job_id = job_id
        message = f"render cancelled: {job_id}" if job_id else "render cancelled"
        super().__init__(message)


class FrameRendererError(RenderError):
    """The frame renderer (bundler / metadata / frame or media render) failed."""


class CompositeError(RenderError):
    """ffmpeg exited non-zero or the filter graph could not be built."""


class CompositeOutputMissing(CompositeError):
    """ffmpeg exited cleanly but the declared output file is missing or empty."""
