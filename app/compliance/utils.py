from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any

from flask import request

from app.compliance.errors import ValidationError


def json_payload() -> dict[str, Any]:
    """Request body as a dict: JSON when sent as JSON, otherwise the form fields."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("Request body is not valid JSON.")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        return data
    return request.form.to_dict()


def clean_str(value: Any, *, field: str, max_len: int | None = None, required: bool = False) -> str | None:
    if value is None:
        text = ""
    elif isinstance(value, str):
        text = value.strip()
    else:
        raise ValidationError(f"{field} must be a string.", details={"field": field})
    if not text:
        if required:
            raise ValidationError(f"{field} is required.", details={"field": field})
        return None
    if max_len is not None and len(text) > max_len:
        raise ValidationError(f"{field} must be at most {max_len} characters.", details={"field": field})
    return text


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_int(value: Any, *, field: str) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer.", details={"field": field})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.", details={"field": field})


def parse_datetime(value: Any, *, field: str) -> datetime | None:
    """Parse ISO-8601 date or datetime; dates mean midnight. Stored naive (UTC)."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 string.", details={"field": field})
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date or datetime.", details={"field": field})
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_date(value: Any, *, field: str) -> date | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be YYYY-MM-DD.", details={"field": field})


def parse_tags(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        # Form posts send a comma-separated list; JSON clients may send a JSON array string.
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            decoded = value.split(",")
        value = decoded
    if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
        raise ValidationError("tags must be a list of strings.", details={"field": "tags"})
    seen: dict[str, None] = {}
    for t in value:
        t = t.strip()
        if t:
            seen.setdefault(t, None)
    return list(seen)


def iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None
