"""Request helpers shared by the JSON blueprints."""

from __future__ import annotations

from flask import jsonify, request

from exceptions import ValidationError
from utils import parse_datetime


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def current_actor() -> str:
    """Operator identity forwarded by the authenticating proxy."""
    return request.headers.get("X-Operator", "").strip() or "api"


def optional_datetime(data: dict, key: str):
    raw = data.get(key)
    if raw in (None, ""):
        return None
    value = parse_datetime(raw)
    if value is None:
        raise ValidationError(f"{key} must be an ISO-8601 date or datetime")
    return value


def ok(data=None, status: int = 200, **extra):
    payload = {"success": True}
    if data is not None:
        payload["data"] = data
    payload.update(extra)
    return jsonify(payload), status
