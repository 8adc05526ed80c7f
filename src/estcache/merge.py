from typing import Sequence

from estcache.models import EstimationRecord


def merge_estimates(
    first: "Sequence[EstimationRecord]",
    second: "Sequence[EstimationRecord]",
) -> "list[EstimationRecord]":
    """
    merges two record sequences into one ordered by timestamp.

    Both inputs must already be sorted ascending with no repeated
    timestamp inside either of them; that is not checked. When both
    hold a record for the same timestamp, the one from ``first`` is
    kept and the one from ``second`` is dropped, so pass the
    sequence that should win (the cached one) first.
    """
    merged: "list[EstimationRecord]" = []
    i = j = 0

    while i < len(first) and j < len(second):
        left, right = first[i], second[j]
        if left.timestamp < right.timestamp:
            merged.append(left)
            i += 1
        elif right.timestamp < left.timestamp:
            merged.append(right)
            j += 1
        else:
            merged.append(left)
            i += 1
            j += 1

    merged.extend(first[i:])
    merged.extend(second[j:])
    return merged
