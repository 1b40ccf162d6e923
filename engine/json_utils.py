"""JSON helpers for structured log events."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path


def safe_json(value):
    """Return ``value`` coerced into something ``json.dumps`` accepts."""
    if isinstance(value, dict):
        return {str(k): safe_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [safe_json(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return repr(value)


def safe_json_dumps(value, **kwargs) -> str:
    return json.dumps(safe_json(value), **kwargs)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, safe_json_dumps(payload, sort_keys=True))
    except (TypeError, ValueError) as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
