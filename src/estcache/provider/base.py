from datetime import datetime
from typing import Protocol, Sequence

from estcache.models import EstimationRecord, GroupBy


class Estimator(Protocol):
    """
    Estimator stands as the protocol every source of fresh
    estimates must satisfy.

    It computes records for an inclusive date range, one record
    per period of ``group_by``, sorted by timestamp.
    """

    async def estimate(
        self,
        start_date: "datetime",
        end_date: "datetime",
        group_by: "GroupBy",
    ) -> "Sequence[EstimationRecord]": ...

    async def close(self) -> "None": ...
