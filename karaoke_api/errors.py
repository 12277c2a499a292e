from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ApiError(Exception):
    code: str
    message: str
    status_code: int

    def to_body(self) -> dict[str, Any]:
        return {"success": False, "error": {"code": self.code, "message": self.message}}


def bad_request(message: str) -> ApiError:
    return ApiError(code="BAD_REQUEST", message=message, status_code=400)


def not_found(message: str) -> ApiError:
    return ApiError(code="NOT_FOUND", message=message, status_code=404)


def internal_error(message: str = "internal server error, please retry later") -> ApiError:
    return ApiError(code="INTERNAL_ERROR", message=message, status_code=500)
