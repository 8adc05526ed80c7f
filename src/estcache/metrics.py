from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from estcache.models import GroupBy


class CacheMetrics:
    """
    records how estimate lookups were served by the cache.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._periods_cached: "Counter" = Counter(
            "estcache_periods_cached_total",
            "Requested periods already present in the cache",
            ["group_by"],
            registry=registry,
        )
        self._periods_missing: "Counter" = Counter(
            "estcache_periods_missing_total",
            "Requested periods that had to be estimated",
            ["group_by"],
            registry=registry,
        )
        self._read_errors: "Counter" = Counter(
            "estcache_cache_read_errors_total",
            "Cache reads aborted by a malformed or failing stream",
            ["group_by"],
            registry=registry,
        )
        self._write_duration: "Histogram" = Histogram(
            "estcache_cache_write_duration_seconds",
            "Duration of cache file writes",
            ["group_by"],
            registry=registry,
        )

    def observe_lookup(
        self, group_by: "GroupBy", cached: "int", missing: "int"
    ) -> "None":
        self._periods_cached.labels(group_by=group_by.value).inc(cached)
        self._periods_missing.labels(group_by=group_by.value).inc(missing)

    def inc_read_error(self, group_by: "GroupBy") -> "None":
        self._read_errors.labels(group_by=group_by.value).inc()

    def observe_write_duration(
        self, group_by: "GroupBy", duration_seconds: "float"
    ) -> "None":
        self._write_duration.labels(group_by=group_by.value).observe(duration_seconds)
