"""
Parsing and validation of telemetry submissions.

Used by both ingestion routes: the API-key route takes a list of
{variable, value, timestamp?} readings, the device route takes a flat
{code: value} mapping or a raw "W=20,WP=35.5" string.
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from dateutil import parser as dtparser

MAX_READINGS_PER_SUBMISSION = 500
MAX_VARIABLE_CODE_LENGTH = 32

_KV_PAIR = re.compile(r"^([A-Za-z][A-Za-z0-9]*)=(-?\d+\.?\d*)$")


class ReadingError(ValueError):
    """A submission or one of its readings is malformed."""


@dataclass(frozen=True)
class Reading:
    variable_code: str
    value: float
    captured_at: datetime


def parse_ts(v) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp string.
    Naive values are taken as UTC. Returns None if parsing fails.
    """
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    if isinstance(v, str):
        try:
            dt = dtparser.isoparse(v)
        except (ValueError, OverflowError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def parse_value(raw: Any) -> float:
    if raw is None or isinstance(raw, bool):
        raise ReadingError("value must be a number")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ReadingError(f"value must be a number, got {raw!r}")
    if not math.isfinite(value):
        raise ReadingError("value must be finite")
    return value


def _variable_code(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ReadingError("variable is required")
    code = raw.strip().upper()
    if len(code) > MAX_VARIABLE_CODE_LENGTH:
        raise ReadingError(f"variable must be at most {MAX_VARIABLE_CODE_LENGTH} characters")
    return code


def normalize_reading(raw: Any, now: datetime) -> Reading:
    if not isinstance(raw, dict):
        raise ReadingError("each reading must be an object")
    code = _variable_code(raw.get("variable", raw.get("variableCode")))
    value = parse_value(raw.get("value"))
    ts_raw = raw.get("timestamp")
    if ts_raw is None:
        captured_at = now
    else:
        captured_at = parse_ts(ts_raw)
        if captured_at is None:
            raise ReadingError(f"invalid timestamp for {code}")
    return Reading(variable_code=code, value=value, captured_at=captured_at)


def parse_readings(raw_readings: Any, now: Optional[datetime] = None) -> list[Reading]:
    """
    Validate a `readings` array. Any malformed entry rejects the submission.
    An empty array is a valid heartbeat.
    """
    if not isinstance(raw_readings, list):
        raise ReadingError("readings must be an array")
    if len(raw_readings) > MAX_READINGS_PER_SUBMISSION:
        raise ReadingError(f"at most {MAX_READINGS_PER_SUBMISSION} readings per submission")
    now = now or datetime.now(timezone.utc)
    readings = []
    for index, raw in enumerate(raw_readings):
        try:
            readings.append(normalize_reading(raw, now))
        except ReadingError as exc:
            raise ReadingError(f"readings[{index}]: {exc}")
    return readings


def parse_key_value_pairs(text: str) -> dict[str, float]:
    """
    Parse "W=20,WP=35.5" style payloads from SMS and simple HTTP devices.
    Pairs may be separated by commas, semicolons, ampersands or whitespace.
    Codes are upper-cased; pairs that don't parse are dropped.
    """
    values: dict[str, float] = {}
    for part in re.split(r"[,;&\s]+", text or ""):
        match = _KV_PAIR.match(part.strip())
        if match:
            values[match.group(1).upper()] = float(match.group(2))
    return values


def readings_from_mapping(data: Any, now: Optional[datetime] = None) -> list[Reading]:
    """Turn a {code: value} mapping into readings, skipping non-numeric entries."""
    if not isinstance(data, dict):
        raise ReadingError("data must be an object")
    now = now or datetime.now(timezone.utc)
    readings = []
    for key, raw in data.items():
        if not isinstance(key, str) or not key.strip():
            continue
        try:
            value = parse_value(raw)
        except ReadingError:
            continue
        readings.append(Reading(variable_code=key.strip().upper(), value=value, captured_at=now))
    if len(readings) > MAX_READINGS_PER_SUBMISSION:
        raise ReadingError(f"at most {MAX_READINGS_PER_SUBMISSION} readings per submission")
    return readings
