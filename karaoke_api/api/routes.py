from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body
from fastapi.responses import FileResponse
from pydantic import ValidationError

from ..config import get_settings
from ..errors import bad_request, not_found
from ..schemas import parse_render_body
from ..services.render import cancel_render_or_404, load_render_or_404, start_render

router = APIRouter()
files_router = APIRouter()


def _ok(data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"success": True, **(data or {})}


def _validation_message(exc: ValidationError) -> str:
    details = exc.errors()
    if not details:
        return "request validation failed"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "request validation failed")
    return f"{location}: {message}" if location else message


@router.post("/render")
def create_render_endpoint(body: Any = Body(...)) -> dict[str, Any]:
    try:
        request = parse_render_body(body)
    except ValidationError as exc:
        raise bad_request(_validation_message(exc)) from exc

    scene_props = request.inputProps.model_dump(exclude_none=True)
    options = request.options.model_dump(exclude_none=True)
    render_id = start_render(scene_props, options)
    return _ok({"renderId": render_id})


@router.get("/render/{render_id}")
def get_render_endpoint(render_id: str) -> dict[str, Any]:
    job = load_render_or_404(render_id)
    return _ok(job.to_dict())


@router.post("/render/{render_id}/cancel")
def cancel_render_endpoint(render_id: str) -> dict[str, Any]:
    cancel_render_or_404(render_id)
    return _ok()


@router.delete("/render/{render_id}")
def delete_render_endpoint(render_id: str) -> dict[str, Any]:
    cancel_render_or_404(render_id)
    return _ok()


@files_router.get("/{filename}")
def output_file_endpoint(filename: str):
    settings = get_settings()
    if not filename or "/" in filename or "\\" in filename or filename.startswith("."):
        raise bad_request("invalid file name")

    output_dir = settings.output_dir.resolve()
    path = (output_dir / filename).resolve(strict=False)
    if path.parent != output_dir:
        raise bad_request("invalid file name")
    if not path.is_file():
        raise not_found("output not found")

    return FileResponse(
        path=str(path),
        media_type="video/mp4" if path.suffix.lower() == ".mp4" else "application/octet-stream",
        filename=path.name,
    )
