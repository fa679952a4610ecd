"""Base quality score recalibration.

Two passes over the collection. The build pass counts, for every usable base,
one observation and (if the base disagrees with the reference) one mismatch
under every prefix of its covariate key ``(read group, q, cycle, context)``.
The counts are frozen into a :class:`RecalibrationTable`. The apply pass
replaces each reported quality with the empirical quality of the longest key
prefix that has enough observations.
"""

from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .collection import ReadCollection
from .covariates import DEFAULT_COVARIATES, CovariateKind, covariate_values
from .mdtag import MdTag, aligned_pairs
from .models import AlignmentRecord
from .reference import KnownSites, ReferenceGenome
from .utils import atomic_output, clamp

logger = logging.getLogger(__name__)

QUALITY_FLOOR = 1
QUALITY_CEILING = 60
DEFAULT_MIN_OBSERVATIONS = 100

Key = Tuple[Any, ...]
Counts = Tuple[int, int]  # (observations, mismatches)


def empirical_quality(observations: int, mismatches: int) -> float:
    """Phred quality of the smoothed error rate ``(mm + 1) / (obs + 2)``."""
    return -10.0 * math.log10((mismatches + 1) / (observations + 2))


def _add(a: Counts, b: Counts) -> Counts:
    return (a[0] + b[0], a[1] + b[1])


def is_table_read(r: AlignmentRecord) -> bool:
    return (
        r.read_mapped
        and r.is_primary
        and not r.duplicate_read
        and not r.failed_vendor_quality_checks
        and bool(r.quality_scores)
    )


def _read_group(r: AlignmentRecord, pool_read_groups: bool) -> Optional[str]:
    return None if pool_read_groups else r.read_group_id


def _observations(
    r: AlignmentRecord,
    covariates: Sequence[CovariateKind],
    *,
    pool_read_groups: bool,
    reference: Optional[ReferenceGenome],
    known_sites: KnownSites,
) -> Iterator[Tuple[Key, int]]:
    """(full key, is_mismatch) for every usable aligned base of ``r``."""
    if r.reference_name is None or r.start is None:
        return
    if reference is not None:
        ref_base = reference.lookup(r.reference_name)
        md = None
    elif r.mismatching_positions is not None:
        ref_base = None
        md = MdTag.parse(r.mismatching_positions, r.start, r.cigar)
    else:
        return
    rg = _read_group(r, pool_read_groups)
    seq = r.sequence.upper()
    for qpos, pos in aligned_pairs(r):
        base = seq[qpos]
        if base == "N" or (r.reference_name, pos) in known_sites:
            continue
        if md is not None:
            mm = int(md.is_mismatch(pos))
        else:
            expected = ref_base(pos)  # type: ignore[misc]
            if expected is None or expected == "N":
                continue
            mm = int(expected != base)
        yield (rg,) + covariate_values(r, qpos, covariates), mm


@dataclass(frozen=True)
class RecalibrationTable:
    """Read-only observation/mismatch counts for every covariate key prefix.

    ``counts`` maps a key prefix (``(rg,)``, ``(rg, q)``, ``(rg, q, cycle)``,
    ...) to ``(observations, mismatches)``. The mapping is a read-only view
    over a private copy, so the table cannot change once built.
    """

    covariates: Tuple[CovariateKind, ...]
    counts: Mapping[Key, Counts]
    min_observations: int = DEFAULT_MIN_OBSERVATIONS
    pool_read_groups: bool = False
    _empirical: Mapping[Key, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        frozen = MappingProxyType(dict(self.counts))
        object.__setattr__(self, "counts", frozen)
        object.__setattr__(
            self,
            "_empirical",
            MappingProxyType(
                {
                    k: int(round(clamp(empirical_quality(o, m), QUALITY_FLOOR, QUALITY_CEILING)))
                    for k, (o, m) in frozen.items()
                }
            ),
        )

    def __len__(self) -> int:
        return len(self.counts)

    @property
    def total_observations(self) -> int:
        return sum(o for k, (o, _) in self.counts.items() if len(k) == 1)

    @property
    def total_mismatches(self) -> int:
        return sum(m for k, (_, m) in self.counts.items() if len(k) == 1)

    def bucket_for(self, key: Key) -> Optional[Key]:
        """Longest prefix of ``key`` with at least ``min_observations`` observations."""
        for depth in range(len(key), 0, -1):
            prefix = key[:depth]
            c = self.counts.get(prefix)
            if c is not None and c[0] >= self.min_observations:
                return prefix
        return None

    def recalibrated(self, key: Key, reported: int) -> int:
        """Recalibrated quality for a base with full covariate ``key``.

        If no prefix has enough observations the reported quality is kept.
        """
        bucket = self.bucket_for(key)
        if bucket is None:
            return reported
        return self._empirical[bucket]

    def quality_curve(self) -> List[Dict[str, Any]]:
        """(read group, reported q) buckets with their empirical quality, if q is the first covariate."""
        if not self.covariates or self.covariates[0] is not CovariateKind.QUALITY_SCORE:
            return []
        out = []
        for key, (obs, mm) in self.counts.items():
            if len(key) == 2:
                out.append(
                    {
                        "read_group": key[0],
                        "reported": key[1],
                        "empirical": self._empirical[key],
                        "observations": obs,
                        "mismatches": mm,
                    }
                )
        out.sort(key=lambda d: (str(d["read_group"]), d["reported"]))
        return out

    def rows(self) -> List[Dict[str, Any]]:
        names = ["read_group"] + [c.value for c in self.covariates]
        out = []
        for key in sorted(self.counts, key=lambda k: (len(k), tuple(str(v) for v in k))):
            obs, mm = self.counts[key]
            row: Dict[str, Any] = {n: (key[i] if i < len(key) else None) for i, n in enumerate(names)}
            row.update(
                level=len(key),
                observations=obs,
                mismatches=mm,
                empirical_quality=self._empirical[key],
            )
            out.append(row)
        return out

    def write_tsv(self, path: str | Path) -> Path:
        p = Path(path)
        names = ["read_group"] + [c.value for c in self.covariates]
        cols = ["level"] + names + ["observations", "mismatches", "empirical_quality"]
        with atomic_output(p) as tmp:
            with open(tmp, "wt", encoding="utf-8", newline="") as f:
                w = csv.DictWriter(f, fieldnames=cols, delimiter="\t", lineterminator="\n")
                w.writeheader()
                for row in self.rows():
                    w.writerow({k: ("" if v is None else v) for k, v in row.items()})
        return p


def build_recalibration_table(
    reads: ReadCollection[AlignmentRecord],
    *,
    covariates: Sequence[CovariateKind] = DEFAULT_COVARIATES,
    min_observations: int = DEFAULT_MIN_OBSERVATIONS,
    pool_read_groups: bool = False,
    reference: Optional[ReferenceGenome] = None,
    known_sites: KnownSites = frozenset(),
    num_partitions: Optional[int] = None,
) -> RecalibrationTable:
    """Count observations and mismatches per covariate key prefix.

    Only non-duplicate, mapped, primary, QC-passing reads contribute. Mismatches
    come from ``reference`` when given, else from each read's MD tag; reads with
    neither are skipped.
    """
    kinds = tuple(covariates)
    if not kinds:
        raise ValueError("At least one covariate is required")

    def count_partition(part: List[AlignmentRecord]) -> List[Tuple[Key, Counts]]:
        acc: Dict[Key, Counts] = {}
        for r in part:
            if not is_table_read(r):
                continue
            for key, mm in _observations(
                r, kinds, pool_read_groups=pool_read_groups, reference=reference, known_sites=known_sites
            ):
                for depth in range(1, len(key) + 1):
                    prefix = key[:depth]
                    o, m = acc.get(prefix, (0, 0))
                    acc[prefix] = (o + 1, m + mm)
        return list(acc.items())

    counts = (
        reads.map_partitions(count_partition)
        .reduce_by_key(lambda kv: kv[0], lambda kv: kv[1], _add, num_partitions=num_partitions)
        .collect()
    )
    table = RecalibrationTable(
        covariates=kinds,
        counts=dict(counts),
        min_observations=min_observations,
        pool_read_groups=pool_read_groups,
    )
    if table.total_observations == 0:
        logger.warning("No usable bases for recalibration (no MD tags and no reference?)")
    logger.info(
        "Recalibration table: %d buckets, %d observations, %d mismatches",
        len(table),
        table.total_observations,
        table.total_mismatches,
    )
    return table


def recalibrate_read(
    r: AlignmentRecord, table: RecalibrationTable, cache: Optional[Dict[Key, int]] = None
) -> AlignmentRecord:
    if not r.quality_scores:
        return r
    rg = _read_group(r, table.pool_read_groups)
    new_quals = []
    for i, q in enumerate(r.quality_scores):
        key = (rg,) + covariate_values(r, i, table.covariates)
        if cache is not None:
            if key not in cache:
                cache[key] = table.recalibrated(key, q)
            new_quals.append(cache[key])
        else:
            new_quals.append(table.recalibrated(key, q))
    quals = tuple(new_quals)
    if quals == r.quality_scores and r.original_quality_scores is not None:
        return r
    oq = r.original_quality_scores if r.original_quality_scores is not None else r.quality_scores
    return r.with_updates(quality_scores=quals, original_quality_scores=oq)


def apply_recalibration(
    reads: ReadCollection[AlignmentRecord], table: RecalibrationTable
) -> ReadCollection[AlignmentRecord]:
    """Rewrite base qualities from ``table``; original qualities go to ``original_quality_scores``."""

    def apply_partition(part: List[AlignmentRecord]) -> List[AlignmentRecord]:
        # per-partition lookup cache; the table itself is never written
        cache: Dict[Key, int] = {}
        return [recalibrate_read(r, table, cache) for r in part]

    return reads.map_partitions(apply_partition)

