import json
from datetime import datetime, timezone
from typing import Any

from estcache.errors import MalformedRecordError
from estcache.models import EstimationRecord, GroupBy

# wire field names, in the order they are written
TIMESTAMP = "timestamp"
SERVICE_ESTIMATES = "serviceEstimates"
PERIOD_START_DATE = "periodStartDate"
PERIOD_END_DATE = "periodEndDate"
GROUP_BY = "groupBy"

_KNOWN_FIELDS = frozenset(
    (TIMESTAMP, SERVICE_ESTIMATES, PERIOD_START_DATE, PERIOD_END_DATE, GROUP_BY)
)


def format_instant(value: "datetime") -> "str":
    """
    formats an instant as an ISO-8601 UTC string with millisecond
    precision, e.g. 2020-01-01T00:00:00.000Z. Naive values are
    taken as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_instant(text: "str") -> "datetime":
    """
    parses a date or an ISO-8601 instant. A bare date is midnight UTC.
    """
    candidate = text.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    parsed = datetime.fromisoformat(candidate)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def encode_mapping(record: "EstimationRecord") -> "dict[str, Any]":
    """
    builds the JSON-ready mapping of a record. Optional fields that
    are unset are left out entirely instead of written as null.
    """
    data: "dict[str, Any]" = {
        TIMESTAMP: format_instant(record.timestamp),
    }
    if record.service_estimates is not None:
        data[SERVICE_ESTIMATES] = list(record.service_estimates)
    if record.period_start_date is not None:
        data[PERIOD_START_DATE] = format_instant(record.period_start_date)
    if record.period_end_date is not None:
        data[PERIOD_END_DATE] = format_instant(record.period_end_date)
    if record.group_by is not None:
        data[GROUP_BY] = record.group_by.value
    for key, value in record.extra.items():
        if key not in data:
            data[key] = value
    return data


def encode(record: "EstimationRecord") -> "str":
    return json.dumps(
        encode_mapping(record),
        separators=(",", ":"),
        ensure_ascii=False,
    )


def _optional_instant(data: "dict[str, Any]", key: "str") -> "datetime | None":
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise MalformedRecordError(f"{key} must be a string, got {value!r}")
    try:
        return parse_instant(value)
    except ValueError as exc:
        raise MalformedRecordError(f"invalid {key} {value!r}") from exc


def decode_mapping(data: "Any") -> "EstimationRecord":
    """
    builds a record from an already parsed JSON object. Fields
    other than the known ones are kept in ``extra``.
    """
    if not isinstance(data, dict):
        raise MalformedRecordError(f"expected an object, got {type(data).__name__}")

    timestamp = _optional_instant(data, TIMESTAMP)
    if timestamp is None:
        raise MalformedRecordError(f"missing {TIMESTAMP}")

    estimates = data.get(SERVICE_ESTIMATES)
    if estimates is not None and not isinstance(estimates, list):
        raise MalformedRecordError(f"{SERVICE_ESTIMATES} must be a list")

    group_by = None
    raw_group_by = data.get(GROUP_BY)
    if raw_group_by is not None:
        try:
            group_by = GroupBy(raw_group_by)
        except ValueError as exc:
            raise MalformedRecordError(f"unknown {GROUP_BY} {raw_group_by!r}") from exc

    return EstimationRecord(
        timestamp=timestamp,
        service_estimates=None if estimates is None else tuple(estimates),
        group_by=group_by,
        period_start_date=_optional_instant(data, PERIOD_START_DATE),
        period_end_date=_optional_instant(data, PERIOD_END_DATE),
        extra={k: v for k, v in data.items() if k not in _KNOWN_FIELDS},
    )


def decode(text: "str") -> "EstimationRecord":
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedRecordError(exc.msg, line=exc.lineno, offset=exc.colno) from exc
    return decode_mapping(data)
