from __future__ import annotations

from typing import Any

from flask import jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    """An error that renders as the JSON response envelope."""

    def __init__(self, status: int, code: str, message: str, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.body = body

    def __repr__(self) -> str:
        return f"<ApiError {self.status} {self.code}>"


def api_response(body: Any = None, message: str = "OK", code: str = "OK", status: int = 200):
    return jsonify({"code": code, "message": message, "body": body}), status


def bad_request(message: str, code: str = "BAD_REQUEST", body: Any = None) -> ApiError:
    return ApiError(400, code, message, body)


def unauthorized(message: str = "Unauthorized") -> ApiError:
    return ApiError(401, "UNAUTHORIZED", message)


def not_found(message: str = "Not found") -> ApiError:
    return ApiError(404, "NOT_FOUND", message)


def render_api_error(exc: ApiError):
    return api_response(exc.body, exc.message, exc.code, exc.status)


def render_http_error(exc: HTTPException):
    code = (exc.name or "ERROR").upper().replace(" ", "_")
    return api_response(None, exc.description or exc.name, code, exc.code or 500)
