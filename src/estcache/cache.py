import time
from datetime import datetime
from pathlib import Path

import structlog

from estcache.config import cache_file_name
from estcache.errors import EstcacheError
from estcache.gaps import (
    contiguous_ranges,
    iter_periods,
    missing_periods,
    period_start,
    to_utc,
)
from estcache.merge import merge_estimates
from estcache.metrics import CacheMetrics
from estcache.models import EstimationRecord, EstimationRequest, GroupBy
from estcache.provider.base import Estimator
from estcache.stream import FileSink, iter_file_chunks, read_cache, write_cache

logger = structlog.get_logger()


class EstimatesCache:
    """
    EstimatesCache serves estimate requests from the per-granularity
    cache files and asks the estimator only for the periods that are
    missing. Fresh records are merged behind the cached ones and the
    result is written back.

    A single instance assumes exclusive use of its cache files;
    callers sharing them across processes must serialize access.
    """

    def __init__(
        self,
        estimator: "Estimator",
        metrics: "CacheMetrics",
        cache_dir: "str | Path" = ".",
        cache_path: "str | None" = None,
    ) -> "None":
        self._estimator = estimator
        self._metrics = metrics
        self._cache_dir = Path(cache_dir)
        self._cache_path = cache_path

    def cache_file(self, group_by: "GroupBy") -> "Path":
        return self._cache_dir / cache_file_name(group_by, self._cache_path)

    async def load(self, group_by: "GroupBy") -> "list[EstimationRecord]":
        """
        reads every cached record for a granularity. A missing file
        is an empty cache; a malformed one raises.
        """
        path = self.cache_file(group_by)
        try:
            return await read_cache(iter_file_chunks(path))
        except EstcacheError:
            self._metrics.inc_read_error(group_by)
            logger.error("cache_read_failed", path=str(path), group_by=group_by.value)
            raise

    async def store(
        self, group_by: "GroupBy", records: "list[EstimationRecord]"
    ) -> "None":
        path = self.cache_file(group_by)
        started = time.monotonic()
        async with FileSink(path) as sink:
            await write_cache(sink, records)
        self._metrics.observe_write_duration(group_by, time.monotonic() - started)
        logger.info(
            "cache_written",
            path=str(path),
            group_by=group_by.value,
            record_count=len(records),
        )

    async def get_estimates(
        self, request: "EstimationRequest"
    ) -> "list[EstimationRecord]":
        """
        returns the records of the requested range, ordered by
        timestamp, after filling any gaps in the cache.
        """
        group_by = GroupBy(request.group_by)
        if to_utc(request.start_date) > to_utc(request.end_date):
            return []

        if request.ignore_cache:
            fresh = await self._estimator.estimate(
                period_start(request.start_date, group_by), request.end_date, group_by
            )
            records = sorted(fresh, key=lambda record: record.timestamp)
            return self._paginate(self._in_range(records, request), request)

        cached = await self.load(group_by)
        missing = missing_periods(cached, request, group_by)
        periods = iter_periods(request.start_date, request.end_date, group_by)
        total = sum(1 for _ in periods)
        self._metrics.observe_lookup(
            group_by, cached=total - len(missing), missing=len(missing)
        )

        fresh: "list[EstimationRecord]" = []
        for start, end in contiguous_ranges(missing, group_by):
            logger.info(
                "estimating_missing_range",
                group_by=group_by.value,
                start=start.date().isoformat(),
                end=end.date().isoformat(),
            )
            fresh.extend(await self._estimator.estimate(start, end, group_by))
        fresh.sort(key=lambda record: record.timestamp)

        merged = merge_estimates(cached, fresh)
        if fresh:
            await self.store(group_by, merged)

        return self._paginate(self._in_range(merged, request), request)

    @staticmethod
    def _in_range(
        records: "list[EstimationRecord]", request: "EstimationRequest"
    ) -> "list[EstimationRecord]":
        group_by = GroupBy(request.group_by)
        first: "datetime" = period_start(request.start_date, group_by)
        last: "datetime" = period_start(request.end_date, group_by)
        return [
            record
            for record in records
            if first <= period_start(record.timestamp, group_by) <= last
        ]

    @staticmethod
    def _paginate(
        records: "list[EstimationRecord]", request: "EstimationRequest"
    ) -> "list[EstimationRecord]":
        stop = None if request.limit is None else request.skip + request.limit
        return records[request.skip : stop]
