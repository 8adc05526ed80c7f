from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class GroupBy(str, Enum):
    """
    GroupBy is the calendar unit a single estimation
    record covers.
    """

    day = "day"
    week = "week"
    month = "month"


@dataclass(frozen=True, slots=True)
class EstimationRecord:
    """
    EstimationRecord represents the computed result
    for one period.
    """

    # start of the period, timezone-aware UTC
    timestamp: "datetime"
    # per-resource entries, never interpreted here; None when absent
    service_estimates: "tuple[dict[str, Any], ...] | None" = None
    group_by: "GroupBy | None" = None
    period_start_date: "datetime | None" = None
    period_end_date: "datetime | None" = None
    # unknown fields from the cache, kept for re-encoding
    extra: "dict[str, Any]" = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EstimationRequest:
    """
    EstimationRequest is the date range a caller asks
    estimates for. Both dates are inclusive.
    """

    start_date: "datetime"
    end_date: "datetime"
    group_by: "GroupBy" = GroupBy.day
    ignore_cache: "bool" = False
    skip: "int" = 0
    limit: "int | None" = None
