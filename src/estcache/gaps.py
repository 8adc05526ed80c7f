from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator

import structlog
from dateutil.relativedelta import relativedelta

from estcache.models import EstimationRecord, EstimationRequest, GroupBy

logger = structlog.get_logger()


def to_utc(value: "datetime") -> "datetime":
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_start(value: "datetime", group_by: "GroupBy | str") -> "datetime":
    """
    returns the UTC start of the period holding ``value``: midnight
    for days, the Monday of the ISO week for weeks and the first of
    the month for months.
    """
    group_by = GroupBy(group_by)
    value = to_utc(value)
    start = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if group_by is GroupBy.week:
        return start - timedelta(days=start.weekday())
    if group_by is GroupBy.month:
        return start.replace(day=1)
    return start


def next_period(start: "datetime", group_by: "GroupBy | str") -> "datetime":
    """
    steps one unit forward from a period start. Month steps go
    through relativedelta so month lengths are respected.
    """
    group_by = GroupBy(group_by)
    if group_by is GroupBy.day:
        return start + timedelta(days=1)
    if group_by is GroupBy.week:
        return start + timedelta(weeks=1)
    return start + relativedelta(months=1)


def iter_periods(
    start_date: "datetime",
    end_date: "datetime",
    group_by: "GroupBy | str",
) -> "Iterator[datetime]":
    """
    yields every period start between the two dates, both ends
    included. Nothing is yielded when start_date > end_date.
    """
    if to_utc(start_date) > to_utc(end_date):
        return
    current = period_start(start_date, group_by)
    last = period_start(end_date, group_by)
    while current <= last:
        yield current
        current = next_period(current, group_by)


def missing_periods(
    cached: "Iterable[EstimationRecord]",
    request: "EstimationRequest",
    group_by: "GroupBy | str | None" = None,
) -> "list[datetime]":
    """
    returns, in ascending order, the period starts of the requested
    range that no cached record covers. Cached records are matched
    on their normalized period start, so mid-period timestamps still
    count as coverage.
    """
    group_by = GroupBy(group_by or request.group_by)
    seen = {period_start(record.timestamp, group_by) for record in cached}
    missing = [
        start
        for start in iter_periods(request.start_date, request.end_date, group_by)
        if start not in seen
    ]
    logger.debug(
        "missing_periods_computed",
        group_by=group_by.value,
        cached_count=len(seen),
        missing_count=len(missing),
    )
    return missing


def contiguous_ranges(
    periods: "Iterable[datetime]",
    group_by: "GroupBy | str",
) -> "list[tuple[datetime, datetime]]":
    """
    collapses ascending period starts into runs of adjacent periods.
    Each run is returned as an inclusive (first day, last day) pair,
    the last day being the final day of the run's last period.
    """
    group_by = GroupBy(group_by)
    ranges: "list[tuple[datetime, datetime]]" = []
    run_start: "datetime | None" = None
    run_next: "datetime | None" = None

    for start in periods:
        if run_start is not None and start == run_next:
            run_next = next_period(start, group_by)
            continue
        if run_start is not None and run_next is not None:
            ranges.append((run_start, run_next - timedelta(days=1)))
        run_start = start
        run_next = next_period(start, group_by)

    if run_start is not None and run_next is not None:
        ranges.append((run_start, run_next - timedelta(days=1)))
    return ranges
