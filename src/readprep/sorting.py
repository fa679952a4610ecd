from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Sequence, Tuple

from .collection import ReadCollection
from .models import AlignmentRecord

logger = logging.getLogger(__name__)

SortKey = Tuple[int, int, str, int, int, str, str]


def coordinate_key_fn(references: Sequence[Tuple[str, int]] = ()) -> Callable[[AlignmentRecord], SortKey]:
    """Build a total-order key: contig (header order if known, else by name), start, strand, name.

    Unmapped reads sort after all mapped reads, by name.
    """
    ref_index: Dict[str, int] = {name: i for i, (name, _) in enumerate(references)}
    unknown = len(ref_index)

    def key(r: AlignmentRecord) -> SortKey:
        if not r.read_mapped or r.start is None or r.reference_name is None:
            return (1, 0, "", 0, 0, r.read_name, r.record_id)
        return (
            0,
            ref_index.get(r.reference_name, unknown),
            r.reference_name,
            r.start,
            int(r.read_negative_strand),
            r.read_name,
            r.record_id,
        )

    return key


def sort_reads(
    reads: ReadCollection[AlignmentRecord],
    references: Sequence[Tuple[str, int]] = (),
    *,
    num_partitions: Optional[int] = None,
) -> ReadCollection[AlignmentRecord]:
    """Coordinate-sort reads across the whole collection."""
    return reads.sort_by(coordinate_key_fn(references), num_partitions=num_partitions)


def is_coordinate_sorted(records: Sequence[AlignmentRecord], references: Sequence[Tuple[str, int]] = ()) -> bool:
    key = coordinate_key_fn(references)
    keys = [key(r) for r in records]
    return all(a <= b for a, b in zip(keys, keys[1:]))
