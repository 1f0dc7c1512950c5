"""
Utility functions for the tweet pipeline.

Includes id generation, timestamp coercion and canonical JSON helpers.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Union


def generate_id() -> str:
    """Generate a UUID string for event identification."""
    return str(uuid.uuid4())


def parse_timestamp(value: Union[int, float, str, datetime]) -> datetime:
    """Parse epoch seconds, ISO-8601 strings or datetimes into an aware UTC datetime."""
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        else:
            return _from_epoch(seconds)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    raise ValueError(f"unsupported timestamp: {value!r}")


def _from_epoch(seconds: Union[int, float]) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        # inf, nan and values beyond the platform time_t
        raise ValueError(f"timestamp out of range: {seconds!r}") from e


def to_epoch(dt: datetime) -> Union[int, float]:
    """Epoch seconds, as an int when there is no fractional part."""
    ts = dt.timestamp()
    return int(ts) if ts.is_integer() else ts


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(obj: Any) -> str:
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()[:32]
