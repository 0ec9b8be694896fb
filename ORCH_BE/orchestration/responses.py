from typing import Any

from rest_framework.response import Response


def envelope(data: Any = None, error: dict | None = None, meta: dict | None = None) -> dict:
    payload = {"success": error is None, "data": data, "error": error}
    if meta is not None:
        payload["meta"] = meta
    return payload


def error_body(code: str, message: str, details: Any = None) -> dict:
    return envelope(error={"code": code, "message": message, "details": details})


def api_response(data: Any, status_code: int = 200, meta: dict | None = None) -> Response:
    return Response(envelope(data, meta=meta), status=status_code)
