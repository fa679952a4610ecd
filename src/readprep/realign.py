"""Local realignment around insertions and deletions.

Realignment runs in three steps:

1. :func:`find_targets` scans the reads for indels and for mismatch sites
   supported by several reads, and merges the resulting intervals into
   disjoint :class:`RealignmentTarget` windows.
2. Reads overlapping a target are grouped with every other read overlapping
   the same target (and read group, unless read groups are pooled).
3. For each group, every distinct single indel seen in the group is turned
   into a consensus haplotype; each read is swept across each haplotype and
   scored by mismatch count. The consensus with the lowest summed score wins
   and, if it improves on the original alignments by at least
   ``min_improvement`` mismatches, reads that align better to it are rewritten.

Everything is keyed on targets and read names, so the outcome does not depend
on input order or partitioning.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from . import cigar as cg
from .collection import ReadCollection
from .mdtag import MdTag, aligned_pairs, compute_md, reference_bases
from .models import AlignmentRecord
from .reference import ReferenceGenome

logger = logging.getLogger(__name__)

DEFAULT_MAX_TARGET_SIZE = 3000
DEFAULT_MIN_MISMATCH_READS = 3
DEFAULT_MIN_IMPROVEMENT = 1

_UNSUPPORTED_OPS = (cg.SKIP, cg.PADDING)


@dataclass(frozen=True, order=True)
class RealignmentTarget:
    reference_name: str
    start: int
    end: int  # exclusive

    @property
    def size(self) -> int:
        return self.end - self.start

    def overlaps(self, r: AlignmentRecord) -> bool:
        if r.reference_name != self.reference_name or r.start is None:
            return False
        return r.start < self.end and self.start < (r.end or r.start)


@dataclass(frozen=True)
class Consensus:
    """Reference with one indel applied: ``deleted`` bases removed at ``position``, ``inserted`` placed before it."""

    position: int
    deleted: int = 0
    inserted: str = ""

    def haplotype(self, window: str, window_start: int) -> Optional[str]:
        ip = self.position - window_start
        if ip < 0 or ip + self.deleted > len(window):
            return None
        return window[:ip] + self.inserted + window[ip + self.deleted :]


def is_realignable(r: AlignmentRecord) -> bool:
    return (
        r.read_mapped
        and r.is_primary
        and r.start is not None
        and bool(r.sequence)
        and not any(op in _UNSUPPORTED_OPS for op, _ in r.cigar)
    )


# -----------------
# targets
# -----------------


def _indel_intervals(r: AlignmentRecord) -> List[RealignmentTarget]:
    out = []
    ref = r.start
    for op, length in r.cigar:
        if op == cg.INSERTION:
            out.append(RealignmentTarget(r.reference_name, ref, ref + 1))  # type: ignore[arg-type]
        elif op == cg.DELETION:
            out.append(RealignmentTarget(r.reference_name, ref, ref + length))  # type: ignore[arg-type]
        if op in cg.ALIGNED_OPS or op in (cg.DELETION, cg.SKIP):
            ref += length  # type: ignore[operator]
    return out


def _mismatch_sites(r: AlignmentRecord, reference: Optional[ReferenceGenome]) -> List[Tuple[str, int]]:
    contig = r.reference_name
    if reference is not None:
        seq = r.sequence.upper()
        out = []
        for qpos, pos in aligned_pairs(r):
            base = reference.base(contig, pos)  # type: ignore[arg-type]
            if base is not None and base != "N" and seq[qpos] != "N" and base != seq[qpos]:
                out.append((contig, pos))
        return out  # type: ignore[return-value]
    if r.mismatching_positions is None:
        return []
    md = MdTag.parse(r.mismatching_positions, r.start, r.cigar)  # type: ignore[arg-type]
    return [(contig, pos) for pos in sorted(md.mismatches)]  # type: ignore[misc]


def merge_targets(
    intervals: Sequence[RealignmentTarget],
    *,
    merge_distance: int = 0,
    max_target_size: int = DEFAULT_MAX_TARGET_SIZE,
) -> Tuple[RealignmentTarget, ...]:
    """Merge sorted-or-not intervals whose gap is at most ``merge_distance``.

    Merged targets longer than ``max_target_size`` are dropped.
    """
    merged: List[RealignmentTarget] = []
    for t in sorted(intervals):
        if merged:
            cur = merged[-1]
            if cur.reference_name == t.reference_name and t.start <= cur.end + merge_distance:
                merged[-1] = RealignmentTarget(cur.reference_name, cur.start, max(cur.end, t.end))
                continue
        merged.append(t)

    kept = []
    for t in merged:
        if t.size > max_target_size:
            logger.debug("Dropping target %s:%d-%d (size %d)", t.reference_name, t.start, t.end, t.size)
            continue
        kept.append(t)
    return tuple(kept)


def find_targets(
    reads: ReadCollection[AlignmentRecord],
    *,
    reference: Optional[ReferenceGenome] = None,
    min_mismatch_reads: int = DEFAULT_MIN_MISMATCH_READS,
    merge_distance: int = 0,
    max_target_size: int = DEFAULT_MAX_TARGET_SIZE,
    num_partitions: Optional[int] = None,
) -> Tuple[RealignmentTarget, ...]:
    """Collect realignment targets from indels and recurrent mismatch sites."""
    candidates = reads.filter(is_realignable)
    indels = candidates.flat_map(_indel_intervals)
    mismatches = (
        candidates.flat_map(lambda r: _mismatch_sites(r, reference))
        .reduce_by_key(lambda site: site, lambda site: 1, lambda a, b: a + b, num_partitions=num_partitions)
        .filter(lambda kv: kv[1] >= min_mismatch_reads)
        .map(lambda kv: RealignmentTarget(kv[0][0], kv[0][1], kv[0][1] + 1))
    )
    targets = merge_targets(
        indels.union(mismatches).collect(),
        merge_distance=merge_distance,
        max_target_size=max_target_size,
    )
    logger.info("Found %d realignment target(s)", len(targets))
    return targets


class _TargetIndex:
    """First overlapping target lookup over disjoint, sorted targets."""

    def __init__(self, targets: Sequence[RealignmentTarget]) -> None:
        by_contig: Dict[str, List[RealignmentTarget]] = {}
        for t in sorted(targets):
            by_contig.setdefault(t.reference_name, []).append(t)
        self._index = {c: ([t.end for t in ts], ts) for c, ts in by_contig.items()}

    def first_overlap(self, r: AlignmentRecord) -> Optional[RealignmentTarget]:
        if r.reference_name is None or r.start is None:
            return None
        entry = self._index.get(r.reference_name)
        if entry is None:
            return None
        ends, ts = entry
        i = bisect.bisect_right(ends, r.start)
        if i < len(ts) and ts[i].overlaps(r):
            return ts[i]
        return None


# -----------------
# consensus scoring
# -----------------


def candidate_consensuses(reads: Sequence[AlignmentRecord]) -> List[Consensus]:
    """Distinct single indels observed in ``reads``, in (start, record_id) read order."""
    seen = set()
    out: List[Consensus] = []
    for r in sorted(reads, key=lambda x: (x.start, x.record_id)):
        ref = r.start
        qpos = 0
        for op, length in r.cigar:
            c = None
            if op == cg.INSERTION:
                c = Consensus(ref, 0, r.sequence[qpos : qpos + length].upper())  # type: ignore[arg-type]
            elif op == cg.DELETION:
                c = Consensus(ref, length, "")  # type: ignore[arg-type]
            if c is not None and c not in seen:
                seen.add(c)
                out.append(c)
            if op in cg.ALIGNED_OPS or op in (cg.DELETION, cg.SKIP):
                ref += length  # type: ignore[operator]
            if op in cg.ALIGNED_OPS or op in (cg.INSERTION, cg.SOFT_CLIP):
                qpos += length
    return out


def _clipped_query(r: AlignmentRecord) -> Tuple[str, int, int]:
    lead = cg.leading_clip(r.cigar)
    trail = cg.trailing_clip(r.cigar)
    return r.sequence[lead : len(r.sequence) - trail].upper(), lead, trail


def _original_score(r: AlignmentRecord, window: str, window_start: int) -> Tuple[int, int]:
    """(mismatches, matched bases) of the current alignment."""
    seq = r.sequence.upper()
    mm = matched = 0
    for qpos, pos in aligned_pairs(r):
        if window[pos - window_start] == seq[qpos]:
            matched += 1
        else:
            mm += 1
    return mm, matched


@dataclass(frozen=True)
class _Placement:
    mismatches: int
    matched: int
    offset: int
    start: int


def _best_placement(
    query: str, hap: str, consensus: Consensus, window_start: int, original_start: int
) -> Optional[_Placement]:
    ip = consensus.position - window_start
    ilen = len(consensus.inserted)
    n = len(query)
    best: Optional[_Placement] = None
    best_rank = None
    for o in range(0, len(hap) - n + 1):
        if ilen and (ip <= o < ip + ilen or ip <= o + n - 1 < ip + ilen):
            continue
        mm = matched = 0
        for i in range(n):
            h = o + i
            if hap[h] == query[i]:
                if not (ilen and ip <= h < ip + ilen):
                    matched += 1
            else:
                mm += 1
        start = window_start + o if o < ip else window_start + o - ilen + consensus.deleted
        rank = (mm, abs(start - original_start), o)
        if best_rank is None or rank < best_rank:
            best_rank = rank
            best = _Placement(mm, matched, o, start)
    return best


def consensus_cigar(consensus: Consensus, window_start: int, offset: int, length: int) -> cg.CigarTuples:
    """Cigar (without clips) of ``length`` query bases placed at ``offset`` on the consensus haplotype."""
    ip = consensus.position - window_start
    ilen = len(consensus.inserted)
    a, b = offset, offset + length
    ops: List[Tuple[int, int]] = []
    pre = min(b, ip) - a
    if pre > 0:
        ops.append((cg.MATCH, pre))
    if ilen:
        ins = min(b, ip + ilen) - max(a, ip)
        if ins > 0:
            ops.append((cg.INSERTION, ins))
        post = b - max(a, ip + ilen)
    else:
        if consensus.deleted and a < ip < b:
            ops.append((cg.DELETION, consensus.deleted))
        post = b - max(a, ip)
    if post > 0:
        ops.append((cg.MATCH, post))
    return tuple(ops)


def _rewrite(
    r: AlignmentRecord,
    consensus: Consensus,
    placement: _Placement,
    window: str,
    window_start: int,
) -> AlignmentRecord:
    query, lead, trail = _clipped_query(r)
    head = []
    for op, length in r.cigar:
        if op not in cg.CLIP_OPS:
            break
        head.append((op, length))
    tail = []
    for op, length in reversed(r.cigar):
        if op not in cg.CLIP_OPS:
            break
        tail.insert(0, (op, length))
    body = consensus_cigar(consensus, window_start, placement.offset, len(query))
    new_cigar = cg.normalize(tuple(head) + body + tuple(tail))

    def ref_at(pos: int) -> Optional[str]:
        i = pos - window_start
        return window[i] if 0 <= i < len(window) else None

    md = compute_md(r.sequence, new_cigar, placement.start, ref_at)
    return r.with_updates(start=placement.start, cigar=new_cigar, mismatching_positions=md)


def _window_reference(
    reads: Sequence[AlignmentRecord],
    contig: str,
    start: int,
    end: int,
    reference: Optional[ReferenceGenome],
) -> Optional[str]:
    if reference is not None:
        return reference.fetch(contig, start, end)
    known: Dict[int, str] = {}
    for r in reads:
        if r.mismatching_positions is None:
            continue
        known.update(reference_bases(r))
    bases = [known.get(pos) for pos in range(start, end)]
    if any(b is None for b in bases):
        return None
    return "".join(bases)  # type: ignore[arg-type]


def realign_group(
    target: RealignmentTarget,
    reads: Sequence[AlignmentRecord],
    *,
    reference: Optional[ReferenceGenome] = None,
    min_improvement: int = DEFAULT_MIN_IMPROVEMENT,
) -> List[AlignmentRecord]:
    """Realign the reads of one target group; returns them in input order."""
    reads = list(reads)
    consensuses = candidate_consensuses(reads)
    if not consensuses:
        return reads

    window_start = min(r.start for r in reads)  # type: ignore[type-var]
    window_end = max(r.end for r in reads)  # type: ignore[type-var]
    window = _window_reference(reads, target.reference_name, window_start, window_end, reference)
    if window is None:
        logger.debug(
            "Incomplete reference for target %s:%d-%d; leaving %d read(s) unchanged",
            target.reference_name,
            target.start,
            target.end,
            len(reads),
        )
        return reads

    originals = [_original_score(r, window, window_start) for r in reads]
    queries = [_clipped_query(r)[0] for r in reads]
    original_total = sum(mm for mm, _ in originals)

    best = None
    best_rank = None
    for idx, c in enumerate(consensuses):
        hap = c.haplotype(window, window_start)
        if hap is None:
            continue
        placements = [
            _best_placement(q, hap, c, window_start, r.start)  # type: ignore[arg-type]
            for q, r in zip(queries, reads)
        ]
        total = sum(
            min(orig[0], p.mismatches) if p is not None else orig[0]
            for orig, p in zip(originals, placements)
        )
        rank = (total, idx, hap)
        if best_rank is None or rank < best_rank:
            best_rank = rank
            best = (c, placements, total)

    if best is None:
        return reads
    consensus, placements, total = best
    if original_total - total < min_improvement:
        return reads

    out = []
    rewritten = 0
    for r, orig, p in zip(reads, originals, placements):
        if p is not None and p.mismatches < orig[0] and p.matched >= orig[1]:
            out.append(_rewrite(r, consensus, p, window, window_start))
            rewritten += 1
        else:
            out.append(r)
    logger.debug(
        "Target %s:%d-%d: %d of %d read(s) realigned (mismatches %d -> %d)",
        target.reference_name,
        target.start,
        target.end,
        rewritten,
        len(reads),
        original_total,
        total,
    )
    return out


def realign_indels(
    reads: ReadCollection[AlignmentRecord],
    *,
    targets: Optional[Sequence[RealignmentTarget]] = None,
    reference: Optional[ReferenceGenome] = None,
    min_mismatch_reads: int = DEFAULT_MIN_MISMATCH_READS,
    merge_distance: int = 0,
    max_target_size: int = DEFAULT_MAX_TARGET_SIZE,
    min_improvement: int = DEFAULT_MIN_IMPROVEMENT,
    pool_read_groups: bool = False,
    num_partitions: Optional[int] = None,
) -> ReadCollection[AlignmentRecord]:
    """Realign reads around indel targets.

    ``reads`` may arrive in any order. When ``targets`` is omitted they are
    found with :func:`find_targets`. Reads that overlap no target, or cannot be
    realigned (unmapped, secondary, spliced), pass through unchanged.
    """
    if targets is None:
        targets = find_targets(
            reads,
            reference=reference,
            min_mismatch_reads=min_mismatch_reads,
            merge_distance=merge_distance,
            max_target_size=max_target_size,
            num_partitions=num_partitions,
        )
    index = _TargetIndex(tuple(targets))

    def target_of(r: AlignmentRecord) -> Optional[RealignmentTarget]:
        return index.first_overlap(r) if is_realignable(r) else None

    passthrough = reads.filter(lambda r: target_of(r) is None)
    grouped = (
        reads.filter(lambda r: target_of(r) is not None)
        .group_by_key(
            lambda r: (target_of(r), None if pool_read_groups else r.read_group_id),
            num_partitions=num_partitions,
        )
        .flat_map(
            lambda kv: realign_group(kv[0][0], kv[1], reference=reference, min_improvement=min_improvement)
        )
    )
    return grouped.union(passthrough)
