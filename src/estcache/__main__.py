import argparse
import asyncio
import sys

import structlog
from prometheus_client import CollectorRegistry

from estcache.cache import EstimatesCache
from estcache.cli import parse_args
from estcache.codec import encode, format_instant
from estcache.config import Config
from estcache.errors import EstcacheError
from estcache.gaps import missing_periods
from estcache.logging import setup_logging
from estcache.metrics import CacheMetrics
from estcache.models import EstimationRequest
from estcache.provider.http import HttpEstimator

logger = structlog.get_logger()


async def _run(config: "Config", args: "argparse.Namespace") -> "None":
    estimator = HttpEstimator(config.estimator_url)
    cache = EstimatesCache(
        estimator,
        # one-shot process, nothing scrapes these
        CacheMetrics(registry=CollectorRegistry()),
        cache_dir=config.cache_dir,
        cache_path=config.cache_path,
    )

    try:
        if args.command == "show":
            records = await cache.load(args.group_by)
            print(f"{cache.cache_file(args.group_by)}: {len(records)} records")
            if records:
                first = format_instant(records[0].timestamp)
                last = format_instant(records[-1].timestamp)
                print(f"{first} .. {last}")
            return

        request = EstimationRequest(
            start_date=args.start_date,
            end_date=args.end_date,
            group_by=args.group_by,
            ignore_cache=getattr(args, "ignore_cache", False),
        )

        if args.command == "missing":
            records = await cache.load(args.group_by)
            for start in missing_periods(records, request, args.group_by):
                print(format_instant(start))
            return

        for record in await cache.get_estimates(request):
            print(encode(record))
    finally:
        await estimator.close()


def main(argv: "list[str] | None" = None) -> "None":
    config, args = parse_args(argv)
    setup_logging(config.log_level)

    if args.command == "estimate" and not config.estimator_enabled:
        raise SystemExit(
            "No estimator configured. Set ESTCACHE_ESTIMATOR_URL "
            "or pass --estimator-url."
        )

    try:
        asyncio.run(_run(config, args))
    except EstcacheError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
