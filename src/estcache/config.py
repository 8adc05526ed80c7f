import os
from dataclasses import dataclass
from typing import Iterable

from estcache.models import GroupBy

CACHE_PATH_ENV = "ESTCACHE_CACHE_PATH"
CACHE_DIR_ENV = "ESTCACHE_CACHE_DIR"
ESTIMATOR_URL_ENV = "ESTCACHE_ESTIMATOR_URL"

DEFAULT_CACHE_PATH = "estimates.cache.json"


@dataclass
class Config:
    # directory the per-granularity cache files live in
    cache_dir: "str" = "."
    # base file name, see cache_file_name()
    cache_path: "str" = DEFAULT_CACHE_PATH
    estimator_url: "str" = ""
    log_level: "str" = "info"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            cache_dir=os.environ.get(CACHE_DIR_ENV, "") or ".",
            cache_path=os.environ.get(CACHE_PATH_ENV, "") or DEFAULT_CACHE_PATH,
            estimator_url=os.environ.get(ESTIMATOR_URL_ENV, ""),
        )

    @property
    def estimator_enabled(self) -> "bool":
        return bool(self.estimator_url)


def cache_file_name(
    group_by: "GroupBy | str",
    cache_path: "str | None" = None,
) -> "str":
    """
    builds the cache file name for one granularity. The base name
    comes from ``cache_path``, else from ESTCACHE_CACHE_PATH, else
    the default; its ``.json`` suffix becomes ``.<groupBy>.json``.
    """
    tag = GroupBy(group_by).value
    base = cache_path or os.environ.get(CACHE_PATH_ENV) or DEFAULT_CACHE_PATH
    if base.endswith(".json"):
        base = base[: -len(".json")]
    return f"{base}.{tag}.json"


def select_provider(providers: "Iterable[str]", seed: "str") -> "dict[str, bool]":
    """
    returns a new inclusion mapping where only the seed provider
    is switched on. Matching is case-insensitive.
    """
    names = list(providers)
    if not any(name.lower() == seed.lower() for name in names):
        raise ValueError(f"unknown cloud provider {seed!r}")
    return {name: name.lower() == seed.lower() for name in names}
