"""Duplicate marking.

Primary mapped reads are assembled into fragments (both ends of a pair, or a
single read), each fragment gets a :class:`ReadPairKey` from the unclipped 5'
positions and strands of its ends, and fragments sharing a key are duplicate
candidates. Exactly one fragment per key is kept as the representative; every
read of the other fragments is flagged ``duplicate_read``. Nothing is removed.

The outcome depends only on keys and scores, never on partitioning or input
order, and re-running the stage gives the same flags.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .collection import ReadCollection
from .models import AlignmentRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ReadPosition:
    reference_name: str
    position: int
    negative_strand: bool


@dataclass(frozen=True)
class ReadPairKey:
    """Duplicate identity of a fragment; ``left <= right`` when both ends are known."""

    read_group_id: Optional[str]
    left: ReadPosition
    right: Optional[ReadPosition]


def _sum_of_base_qualities(r: AlignmentRecord) -> int:
    return sum(r.quality_scores)


def _sum_of_base_qualities_q15(r: AlignmentRecord) -> int:
    return sum(q for q in r.quality_scores if q >= 15)


def _mapping_quality(r: AlignmentRecord) -> int:
    return r.mapping_quality


SCORING_POLICIES: Dict[str, Callable[[AlignmentRecord], int]] = {
    "sum_of_base_qualities": _sum_of_base_qualities,
    "sum_of_base_qualities_q15": _sum_of_base_qualities_q15,
    "mapping_quality": _mapping_quality,
}

DEFAULT_POLICY = "sum_of_base_qualities"


def is_candidate(r: AlignmentRecord) -> bool:
    """Primary, mapped reads take part in duplicate marking; everything else passes through."""
    return r.read_mapped and r.is_primary


def read_position(r: AlignmentRecord) -> ReadPosition:
    pos = r.five_prime_position
    if pos is None or r.reference_name is None:
        raise ValueError(f"Read {r.read_name} has no alignment position")
    return ReadPosition(r.reference_name, pos, r.read_negative_strand)


def _mate_position(r: AlignmentRecord) -> Optional[ReadPosition]:
    if not (r.read_paired and r.mate_mapped):
        return None
    if r.mate_reference_name is None or r.mate_start is None:
        return None
    return ReadPosition(r.mate_reference_name, r.mate_start, r.mate_negative_strand)


@dataclass(frozen=True)
class Fragment:
    """The primary mapped reads of one template in one read group."""

    reads: Tuple[AlignmentRecord, ...]
    key: ReadPairKey
    fragment_id: str

    @classmethod
    def build(cls, reads: Sequence[AlignmentRecord], *, pool_read_groups: bool = False) -> "Fragment":
        ordered = tuple(sorted(reads, key=lambda r: r.record_id))
        if len(ordered) > 2:
            raise ValueError(
                f"Read {ordered[0].read_name} has {len(ordered)} primary alignments in one read group"
            )
        positions = [read_position(r) for r in ordered]
        if len(positions) == 1:
            mate = _mate_position(ordered[0])
            if mate is not None:
                positions.append(mate)
        positions.sort()
        rg = None if pool_read_groups else ordered[0].read_group_id
        key = ReadPairKey(rg, positions[0], positions[1] if len(positions) > 1 else None)
        return cls(reads=ordered, key=key, fragment_id=ordered[0].record_id)

    def score(self, score_fn: Callable[[AlignmentRecord], int]) -> int:
        return sum(score_fn(r) for r in self.reads)


def choose_representative(fragments: Sequence[Fragment], score_fn: Callable[[AlignmentRecord], int]) -> Fragment:
    """Highest score wins; ties go to the smallest fragment id."""
    return min(fragments, key=lambda f: (-f.score(score_fn), f.fragment_id))


def _mark_group(
    fragments: List[Fragment], score_fn: Callable[[AlignmentRecord], int]
) -> Iterator[AlignmentRecord]:
    best = choose_representative(fragments, score_fn)
    for frag in fragments:
        dup = frag is not best
        for r in frag.reads:
            yield r if r.duplicate_read == dup else r.with_updates(duplicate_read=dup)


def mark_duplicates(
    reads: ReadCollection[AlignmentRecord],
    *,
    policy: str = DEFAULT_POLICY,
    pool_read_groups: bool = False,
    num_partitions: Optional[int] = None,
) -> ReadCollection[AlignmentRecord]:
    """Flag PCR/optical duplicates.

    Parameters
    ----------
    policy:
        Representative scoring policy, one of :data:`SCORING_POLICIES`.
    pool_read_groups:
        Compare fragments across read groups instead of within each.

    Unmapped, secondary and supplementary records are returned unchanged.
    """
    if policy not in SCORING_POLICIES:
        raise ValueError(f"Unknown duplicate policy '{policy}'; choose from {sorted(SCORING_POLICIES)}")
    score_fn = SCORING_POLICIES[policy]

    passthrough = reads.filter(lambda r: not is_candidate(r))
    fragments = (
        reads.filter(is_candidate)
        .group_by_key(lambda r: (r.read_group_id, r.read_name), num_partitions=num_partitions)
        .map(lambda kv: Fragment.build(kv[1], pool_read_groups=pool_read_groups))
    )
    marked = fragments.group_by_key(lambda f: f.key, num_partitions=num_partitions).flat_map(
        lambda kv: _mark_group(kv[1], score_fn)
    )
    return marked.union(passthrough)
