from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

INVALID_REQUEST_ERROR = "invalid_request_error"
UPSTREAM_ERROR = "upstream_error"


class InvalidRequestError(Exception):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def error_body(message: str, error_type: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}


def error_response(
    status_code: int, message: str, error_type: str = INVALID_REQUEST_ERROR
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(message, error_type))
