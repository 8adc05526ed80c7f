from datetime import datetime

import httpx
import structlog

from estcache.codec import decode_mapping
from estcache.errors import MalformedRecordError
from estcache.models import EstimationRecord, GroupBy

logger = structlog.get_logger()


class HttpEstimator:
    """
    HttpEstimator implements the Estimator protocol on top of a
    remote footprint API. The API is always asked to bypass its own
    cache, since it is only called for periods missing locally.
    """

    def __init__(
        self,
        base_url: "str",
        client: "httpx.AsyncClient | None" = None,
        timeout: "float" = 30.0,
    ) -> "None":
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=timeout
        )

    async def close(self) -> "None":
        """
        closes the underlying HTTP client when it was created here.
        """
        if self._owns_client:
            await self._client.aclose()

    async def estimate(
        self,
        start_date: "datetime",
        end_date: "datetime",
        group_by: "GroupBy",
    ) -> "list[EstimationRecord]":
        params = {
            "start": start_date.strftime("%Y-%m-%d"),
            "end": end_date.strftime("%Y-%m-%d"),
            "groupBy": GroupBy(group_by).value,
            "ignoreCache": "true",
        }
        logger.debug("estimator_fetch", url=f"{self._base_url}/footprint", **params)
        resp = await self._client.get(f"{self._base_url}/footprint", params=params)
        resp.raise_for_status()

        data = resp.json()
        if not isinstance(data, list):
            raise MalformedRecordError(
                f"estimator returned {type(data).__name__}, expected a list"
            )

        records = sorted(
            (decode_mapping(item) for item in data),
            key=lambda record: record.timestamp,
        )
        logger.debug("estimator_fetch_done", record_count=len(records))
        return records
