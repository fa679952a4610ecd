from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .collection import ReadCollection
from .models import AlignmentRecord

COMPARED_FIELDS = ("position", "cigar", "duplicate", "base_qualities", "mapping_quality")


@dataclass(frozen=True)
class ComparisonReport:
    """Differences between two read collections, matching reads by ``record_id``."""

    total_a: int
    total_b: int
    only_in_a: int
    only_in_b: int
    shared: int
    identical: int
    differing: Dict[str, int] = field(default_factory=dict)

    @property
    def same(self) -> bool:
        return self.only_in_a == 0 and self.only_in_b == 0 and self.identical == self.shared

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_a": self.total_a,
            "total_b": self.total_b,
            "only_in_a": self.only_in_a,
            "only_in_b": self.only_in_b,
            "shared": self.shared,
            "identical": self.identical,
            "differing": dict(self.differing),
        }

    def format(self) -> str:
        lines = [
            f"reads in A: {self.total_a}",
            f"reads in B: {self.total_b}",
            f"only in A: {self.only_in_a}",
            f"only in B: {self.only_in_b}",
            f"shared: {self.shared} ({self.identical} identical)",
        ]
        for name in COMPARED_FIELDS:
            lines.append(f"  differing {name}: {self.differing.get(name, 0)}")
        return "\n".join(lines)


def record_differences(a: AlignmentRecord, b: AlignmentRecord) -> List[str]:
    out = []
    if (a.reference_name, a.start) != (b.reference_name, b.start):
        out.append("position")
    if a.cigar != b.cigar:
        out.append("cigar")
    if a.duplicate_read != b.duplicate_read:
        out.append("duplicate")
    if a.quality_scores != b.quality_scores:
        out.append("base_qualities")
    if a.mapping_quality != b.mapping_quality:
        out.append("mapping_quality")
    return out


def _classify(group: List[Tuple[int, AlignmentRecord]]) -> Counter:
    sides: Dict[int, AlignmentRecord] = {}
    for side, rec in group:
        sides.setdefault(side, rec)
    c: Counter = Counter()
    c["total_a"] = sum(1 for side, _ in group if side == 0)
    c["total_b"] = sum(1 for side, _ in group if side == 1)
    if 0 not in sides:
        c["only_in_b"] = 1
    elif 1 not in sides:
        c["only_in_a"] = 1
    else:
        c["shared"] = 1
        diffs = record_differences(sides[0], sides[1])
        if not diffs:
            c["identical"] = 1
        for name in diffs:
            c[name] += 1
    return c


def compare_reads(a: ReadCollection[AlignmentRecord], b: ReadCollection[AlignmentRecord]) -> ComparisonReport:
    tagged = a.map(lambda r: (0, r)).union(b.map(lambda r: (1, r)))
    totals = (
        tagged.group_by_key(lambda kv: kv[1].record_id)
        .map(lambda kv: _classify(kv[1]))
        .reduce(lambda acc, c: acc + c, Counter())
    )
    return ComparisonReport(
        total_a=totals["total_a"],
        total_b=totals["total_b"],
        only_in_a=totals["only_in_a"],
        only_in_b=totals["only_in_b"],
        shared=totals["shared"],
        identical=totals["identical"],
        differing={name: totals[name] for name in COMPARED_FIELDS},
    )
