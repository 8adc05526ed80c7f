from datetime import datetime, timezone
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from estcache.cache import EstimatesCache
from estcache.errors import MalformedRecordError
from estcache.gaps import iter_periods
from estcache.metrics import CacheMetrics
from estcache.models import EstimationRecord, EstimationRequest, GroupBy
from estcache.stream import FileSink, iter_file_chunks, read_cache, write_cache


def utc(year: "int", month: "int", day: "int") -> "datetime":
    return datetime(year, month, day, tzinfo=timezone.utc)


def _record(
    timestamp: "datetime", source: "str", group_by: "GroupBy" = GroupBy.day
) -> "EstimationRecord":
    return EstimationRecord(
        timestamp=timestamp,
        service_estimates=({"cloudProvider": "AWS", "source": source},),
        group_by=group_by,
    )


class MockEstimator:
    """
    A mock estimator producing one record per period and
    remembering the ranges it was asked for.
    """

    def __init__(self) -> "None":
        self.calls: "list[tuple[datetime, datetime, GroupBy]]" = []

    async def estimate(
        self,
        start_date: "datetime",
        end_date: "datetime",
        group_by: "GroupBy",
    ) -> "list[EstimationRecord]":
        self.calls.append((start_date, end_date, group_by))
        return [
            _record(start, "fresh", group_by)
            for start in iter_periods(start_date, end_date, group_by)
        ]

    async def close(self) -> "None":
        pass


async def _seed(path: "Path", records: "list[EstimationRecord]") -> "None":
    async with FileSink(path) as sink:
        await write_cache(sink, records)


def _sources(records: "list[EstimationRecord]") -> "list[str]":
    return [r.service_estimates[0]["source"] for r in records]


@pytest.fixture()
def estimator() -> "MockEstimator":
    return MockEstimator()


@pytest.fixture()
def cache(
    tmp_path: "Path", estimator: "MockEstimator", registry: "CollectorRegistry"
) -> "EstimatesCache":
    return EstimatesCache(
        estimator,
        CacheMetrics(registry=registry),
        cache_dir=tmp_path,
        cache_path="estimates.cache.json",
    )


class TestEstimatesCache:
    def test_cache_file_per_group_by(
        self, cache: "EstimatesCache", tmp_path: "Path"
    ) -> "None":
        assert cache.cache_file(GroupBy.week) == tmp_path / "estimates.cache.week.json"

    @pytest.mark.asyncio
    async def test_empty_cache_is_filled(
        self,
        cache: "EstimatesCache",
        estimator: "MockEstimator",
        tmp_path: "Path",
    ) -> "None":
        request = EstimationRequest(
            start_date=utc(2022, 1, 1), end_date=utc(2022, 1, 3)
        )
        records = await cache.get_estimates(request)

        assert [r.timestamp.day for r in records] == [1, 2, 3]
        assert estimator.calls == [(utc(2022, 1, 1), utc(2022, 1, 3), GroupBy.day)]

        path = tmp_path / "estimates.cache.day.json"
        assert await read_cache(iter_file_chunks(path)) == records

    @pytest.mark.asyncio
    async def test_second_request_is_served_from_cache(
        self, cache: "EstimatesCache", estimator: "MockEstimator"
    ) -> "None":
        request = EstimationRequest(
            start_date=utc(2022, 1, 1), end_date=utc(2022, 1, 3)
        )
        first = await cache.get_estimates(request)
        second = await cache.get_estimates(request)

        assert second == first
        assert len(estimator.calls) == 1

    @pytest.mark.asyncio
    async def test_only_gaps_are_estimated(
        self,
        cache: "EstimatesCache",
        estimator: "MockEstimator",
        tmp_path: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        await _seed(
            tmp_path / "estimates.cache.day.json",
            [_record(utc(2022, 1, 1), "cached"), _record(utc(2022, 1, 3), "cached")],
        )
        request = EstimationRequest(
            start_date=utc(2022, 1, 1), end_date=utc(2022, 1, 4)
        )
        records = await cache.get_estimates(request)

        assert estimator.calls == [
            (utc(2022, 1, 2), utc(2022, 1, 2), GroupBy.day),
            (utc(2022, 1, 4), utc(2022, 1, 4), GroupBy.day),
        ]
        assert _sources(records) == ["cached", "fresh", "cached", "fresh"]

        labels = {"group_by": "day"}
        assert registry.get_sample_value("estcache_periods_cached_total", labels) == 2
        assert registry.get_sample_value("estcache_periods_missing_total", labels) == 2

    @pytest.mark.asyncio
    async def test_returns_only_requested_range(
        self, cache: "EstimatesCache", tmp_path: "Path"
    ) -> "None":
        await _seed(
            tmp_path / "estimates.cache.day.json",
            [_record(utc(2022, 1, day), "cached") for day in range(1, 11)],
        )
        request = EstimationRequest(
            start_date=utc(2022, 1, 4), end_date=utc(2022, 1, 6)
        )
        records = await cache.get_estimates(request)
        assert [r.timestamp.day for r in records] == [4, 5, 6]

    @pytest.mark.asyncio
    async def test_fully_cached_range_leaves_file_alone(
        self,
        cache: "EstimatesCache",
        estimator: "MockEstimator",
        tmp_path: "Path",
    ) -> "None":
        path = tmp_path / "estimates.cache.day.json"
        await _seed(path, [_record(utc(2022, 1, 1), "cached")])
        before = path.read_bytes()

        request = EstimationRequest(
            start_date=utc(2022, 1, 1), end_date=utc(2022, 1, 1)
        )
        await cache.get_estimates(request)

        assert estimator.calls == []
        assert path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_ignore_cache_bypasses_file(
        self,
        cache: "EstimatesCache",
        estimator: "MockEstimator",
        tmp_path: "Path",
    ) -> "None":
        path = tmp_path / "estimates.cache.day.json"
        await _seed(path, [_record(utc(2022, 1, 1), "cached")])
        before = path.read_bytes()

        request = EstimationRequest(
            start_date=utc(2022, 1, 1), end_date=utc(2022, 1, 2), ignore_cache=True
        )
        records = await cache.get_estimates(request)

        assert _sources(records) == ["fresh", "fresh"]
        assert path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_months(
        self, cache: "EstimatesCache", estimator: "MockEstimator"
    ) -> "None":
        request = EstimationRequest(
            start_date=utc(2022, 1, 15),
            end_date=utc(2022, 3, 2),
            group_by=GroupBy.month,
        )
        records = await cache.get_estimates(request)

        assert [r.timestamp for r in records] == [
            utc(2022, 1, 1),
            utc(2022, 2, 1),
            utc(2022, 3, 1),
        ]
        assert estimator.calls == [(utc(2022, 1, 1), utc(2022, 3, 31), GroupBy.month)]

    @pytest.mark.asyncio
    async def test_pagination(self, cache: "EstimatesCache") -> "None":
        request = EstimationRequest(
            start_date=utc(2022, 1, 1), end_date=utc(2022, 1, 10), skip=2, limit=3
        )
        records = await cache.get_estimates(request)
        assert [r.timestamp.day for r in records] == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_reversed_range_is_empty(
        self, cache: "EstimatesCache", estimator: "MockEstimator"
    ) -> "None":
        request = EstimationRequest(
            start_date=utc(2022, 1, 5), end_date=utc(2022, 1, 1)
        )
        assert await cache.get_estimates(request) == []
        assert estimator.calls == []

    @pytest.mark.asyncio
    async def test_malformed_cache_is_not_repaired(
        self,
        cache: "EstimatesCache",
        estimator: "MockEstimator",
        tmp_path: "Path",
        registry: "CollectorRegistry",
    ) -> "None":
        path = tmp_path / "estimates.cache.day.json"
        path.write_bytes(b"[\nnot json\n]")

        request = EstimationRequest(
            start_date=utc(2022, 1, 1), end_date=utc(2022, 1, 1)
        )
        with pytest.raises(MalformedRecordError):
            await cache.get_estimates(request)

        assert estimator.calls == []
        assert path.read_bytes() == b"[\nnot json\n]"
        errors = registry.get_sample_value(
            "estcache_cache_read_errors_total", {"group_by": "day"}
        )
        assert errors == 1.0
