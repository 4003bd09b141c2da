"""Turn raw NEL POST bodies into :class:`NelRecord` objects.

A report's ``body`` has no fixed shape. Known keys are hoisted into typed
record fields when their JSON type matches; anything else, including known
keys carrying the wrong type, is kept verbatim in ``additional_body``.
"""

import json
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from nel_collector.errors import ReportParseError
from nel_collector.models.record import NelRecord
from nel_collector.schemas.report import NelReport


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_string(value: Any) -> bool:
    return isinstance(value, str)


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def _as_float(value: Any) -> float:
    return float(value)


STATUS_CODE_MIN = -(2**31)
STATUS_CODE_MAX = 2**31 - 1


def _is_status_code(value: Any) -> bool:
    # Must fit the INTEGER column once truncated.
    return _is_number(value) and STATUS_CODE_MIN <= int(value) <= STATUS_CODE_MAX


def _as_int(value: Any) -> int:
    # JSON numbers are floats on the wire; int() truncates toward zero.
    return int(value)


def _same(value: Any) -> Any:
    return value


# (body key, record attribute, type check, conversion)
BODY_FIELDS: Tuple[Tuple[str, str, Callable[[Any], bool], Callable[[Any], Any]], ...] = (
    ("sampling_fraction", "sampling_fraction", _is_number, _as_float),
    ("elapsed_time", "elapsed_time", _is_number, _as_float),
    ("phase", "phase", _is_string, _same),
    ("type", "body_type", _is_string, _same),
    ("server_ip", "server_ip", _is_string, _same),
    ("protocol", "protocol", _is_string, _same),
    ("referrer", "referrer", _is_string, _same),
    ("method", "method", _is_string, _same),
    ("request_headers", "request_headers", _is_object, _same),
    ("response_headers", "response_headers", _is_object, _same),
    ("status_code", "status_code", _is_status_code, _as_int),
)

KNOWN_BODY_KEYS = frozenset(key for key, _, _, _ in BODY_FIELDS)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number {text} is out of range")
    return value


def _finite_int(text: str) -> int:
    value = int(text)
    try:
        float(value)
    except OverflowError as exc:
        raise ValueError(f"number of {len(text)} digits is out of range") from exc
    return value


def _decode(data: bytes) -> Any:
    try:
        return json.loads(
            data,
            parse_constant=_reject_constant,
            parse_float=_finite_float,
            parse_int=_finite_int,
        )
    except (ValueError, RecursionError) as exc:
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors.
        raise ReportParseError(f"invalid JSON: {exc}") from exc


def hoist_body(record: NelRecord, body: Dict[str, Any]) -> Dict[str, Any]:
    """Move known keys of ``body`` into ``record``; return what is left.

    ``body`` is consumed: extracted keys are removed from it.
    """
    for key, attr, accepts, convert in BODY_FIELDS:
        if key not in body:
            continue
        value = body[key]
        if not accepts(value):
            continue
        setattr(record, attr, convert(value))
        del body[key]
    return body


def _to_record(obj: Any, index: Optional[int], now: datetime) -> NelRecord:
    if not isinstance(obj, dict):
        raise ReportParseError(f"report is a JSON {type(obj).__name__}, not an object", index)
    try:
        report = NelReport.model_validate(obj)
    except ValidationError as exc:
        raise ReportParseError(
            f"report does not match the NEL wire format ({exc.error_count()} errors)", index
        ) from exc

    record = NelRecord(
        timestamp=now,
        age=report.age or 0,
        type=report.type or "",
        url=report.url or "",
    )
    record.additional_body = hoist_body(record, dict(report.body or {}))
    return record


def normalize(data: bytes, now: Optional[datetime] = None) -> List[NelRecord]:
    """Parse a POST body holding one report or a JSON array of reports.

    Either every report in ``data`` becomes a record or
    :class:`ReportParseError` is raised and nothing is returned.
    """
    document = _decode(data)
    timestamp = now or datetime.now(timezone.utc)

    if isinstance(document, list):
        return [_to_record(obj, index, timestamp) for index, obj in enumerate(document)]
    if isinstance(document, dict):
        return [_to_record(document, None, timestamp)]
    raise ReportParseError(f"expected a JSON object or array, got {type(document).__name__}")
