import argparse
from datetime import datetime

from estcache.codec import parse_instant
from estcache.config import Config
from estcache.models import GroupBy


def _date(value: "str") -> "datetime":
    try:
        return parse_instant(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}") from exc


def _add_group_by(parser: "argparse.ArgumentParser", default: "object") -> "None":
    parser.add_argument(
        "--group-by",
        dest="group_by",
        type=GroupBy,
        default=default,
        choices=list(GroupBy),
        metavar="{day,week,month}",
        help="Period granularity (default: day)",
    )


def _add_range_args(parser: "argparse.ArgumentParser") -> "None":
    parser.add_argument("--start", dest="start_date", type=_date, required=True)
    parser.add_argument("--end", dest="end_date", type=_date, required=True)


def build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="estcache",
        description="Inspect and fill estimate cache files",
    )
    parser.add_argument(
        "--cache-dir",
        dest="cache_dir",
        default=None,
        help="Directory holding the cache files (default: $ESTCACHE_CACHE_DIR or .)",
    )
    parser.add_argument(
        "--estimator-url",
        dest="estimator_url",
        default=None,
        help="Base URL of the footprint API (default: $ESTCACHE_ESTIMATOR_URL)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: warning)",
    )
    _add_group_by(parser, GroupBy.day)

    commands = parser.add_subparsers(dest="command", required=True)
    show = commands.add_parser("show", help="Summarize the cached records")
    missing = commands.add_parser(
        "missing", help="List periods absent from the cache"
    )
    _add_range_args(missing)
    estimate = commands.add_parser(
        "estimate", help="Fill the cache for a range and print the records"
    )
    _add_range_args(estimate)
    # accepted after the subcommand too; SUPPRESS keeps the global value
    for command in (show, missing, estimate):
        _add_group_by(command, argparse.SUPPRESS)
    estimate.add_argument("--ignore-cache", action="store_true")
    return parser


def parse_args(
    argv: "list[str] | None" = None,
) -> "tuple[Config, argparse.Namespace]":
    args = build_parser().parse_args(argv)
    config = Config.from_env()
    if args.cache_dir is not None:
        config.cache_dir = args.cache_dir
    if args.estimator_url is not None:
        config.estimator_url = args.estimator_url
    config.log_level = args.log_level
    return config, args
