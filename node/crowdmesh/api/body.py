"""Request body parsing shared by the API routers.

Handlers return the JSONResponse from these helpers as-is when parsing fails.
"""

from __future__ import annotations

import json
import math

from fastapi import Request
from fastapi.responses import JSONResponse


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})


async def read_json(request: Request, *, allow_empty: bool = False) -> dict | JSONResponse:
    """Parse the request body as a JSON object. 400 on anything else."""
    body_bytes = await request.body()
    if allow_empty and not body_bytes.strip():
        return {}
    try:
        body = json.loads(body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return error_response(400, "invalid JSON")
    if not isinstance(body, dict):
        return error_response(400, "expected a JSON object")
    return body


def optional_str(body: dict, key: str) -> str | None:
    value = body.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def number(body: dict, key: str) -> float | None:
    """A finite number field, or None when missing or not a number."""
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None
