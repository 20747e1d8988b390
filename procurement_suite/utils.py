"""
Utility functions shared across the blueprints:
- json_error / validation_error: consistent JSON error bodies.
- json_formdata: feed a JSON request body into WTForms.
- parse_optional_int / parse_date_arg / parse_bool_arg: tolerant query-string parsing.
"""

from __future__ import annotations

from datetime import date, datetime

from flask import jsonify, request
from werkzeug.datastructures import ImmutableMultiDict


def json_error(message: str, status: int = 400, **extra):
    body = {"error": message}
    body.update(extra)
    return jsonify(body), status


def validation_error(form):
    """400 with per-field messages from a failed FlaskForm."""
    return json_error("Validation failed", 400, fields=form.errors)


def json_formdata(payload: dict | None = None) -> ImmutableMultiDict:
    """
    Convert the JSON body (or a nested JSON object) into form data WTForms understands.

    - null values are dropped (field keeps its default / obj value)
    - numbers become strings, booleans become "y" or ""
    - nested lists/objects are skipped; routes read those from request.get_json() directly
    """
    if payload is None:
        payload = request.get_json(silent=True) or {}
    pairs = []
    for key, value in payload.items():
        if value is None or isinstance(value, (list, dict)):
            continue
        if isinstance(value, bool):
            pairs.append((key, "y" if value else ""))
            continue
        pairs.append((key, str(value)))
    return ImmutableMultiDict(pairs)


def json_payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def parse_optional_int(value) -> int | None:
    """Parse an optional int from query/JSON. Returns None if empty/invalid."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_date_arg(value) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_bool_arg(value) -> bool | None:
    if value is None:
        return None
    raw = str(value).strip().lower()
    if raw in {"1", "true", "yes", "y"}:
        return True
    if raw in {"0", "false", "no", "n"}:
        return False
    return None


def transition_error(entity, new_status: str, label: str):
    """JSON 400 when entity.status may not move to new_status, else None."""
    if entity.can_transition_to(new_status):
        return None
    return json_error(f"Cannot change {label} status from '{entity.status}' to '{new_status}'.", 400)
