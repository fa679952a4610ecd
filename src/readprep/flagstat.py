"""samtools-style flag statistics."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from .collection import ReadCollection
from .models import AlignmentRecord


@dataclass(frozen=True)
class FlagstatCounts:
    total: int = 0
    primary: int = 0
    secondary: int = 0
    supplementary: int = 0
    duplicates: int = 0
    primary_duplicates: int = 0
    mapped: int = 0
    primary_mapped: int = 0
    paired: int = 0
    read1: int = 0
    read2: int = 0
    proper_pair: int = 0
    with_mate_mapped: int = 0
    singletons: int = 0
    mate_different_chromosome: int = 0
    mate_different_chromosome_mapq5: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dataclasses.asdict(self)


_FIELDS = [f.name for f in dataclasses.fields(FlagstatCounts)]


def _indicator(r: AlignmentRecord) -> np.ndarray:
    primary = r.is_primary
    paired_primary = r.read_paired and primary
    both_mapped = paired_primary and r.read_mapped and r.mate_mapped
    diff_chrom = (
        both_mapped
        and r.mate_reference_name is not None
        and r.reference_name is not None
        and r.mate_reference_name != r.reference_name
    )
    values = {
        "total": True,
        "primary": primary,
        "secondary": r.secondary_alignment,
        "supplementary": r.supplementary_alignment,
        "duplicates": r.duplicate_read,
        "primary_duplicates": r.duplicate_read and primary,
        "mapped": r.read_mapped,
        "primary_mapped": r.read_mapped and primary,
        "paired": paired_primary,
        "read1": paired_primary and r.first_of_pair,
        "read2": paired_primary and r.second_of_pair,
        "proper_pair": paired_primary and r.read_mapped and r.proper_pair,
        "with_mate_mapped": both_mapped,
        "singletons": paired_primary and r.read_mapped and not r.mate_mapped,
        "mate_different_chromosome": diff_chrom,
        "mate_different_chromosome_mapq5": diff_chrom and r.mapping_quality >= 5,
    }
    return np.array([int(values[name]) for name in _FIELDS], dtype=np.int64)


def _from_array(arr: np.ndarray) -> FlagstatCounts:
    return FlagstatCounts(**{name: int(v) for name, v in zip(_FIELDS, arr)})


def flagstat(reads: ReadCollection[AlignmentRecord]) -> Tuple[FlagstatCounts, FlagstatCounts]:
    """Counts for QC-passed and QC-failed reads, in that order."""
    totals = dict(
        reads.reduce_by_key(
            lambda r: r.failed_vendor_quality_checks,
            _indicator,
            np.add,
        ).collect()
    )
    empty = np.zeros(len(_FIELDS), dtype=np.int64)
    return _from_array(totals.get(False, empty)), _from_array(totals.get(True, empty))


def _pct(n: int, d: int) -> str:
    return f"{100.0 * n / d:.2f}%" if d else "N/A"


def format_flagstat(passed: FlagstatCounts, failed: FlagstatCounts) -> str:
    """Render counts the way ``samtools flagstat`` does (``passed + failed`` per line)."""
    p, f = passed, failed
    lines = [
        f"{p.total} + {f.total} in total (QC-passed reads + QC-failed reads)",
        f"{p.primary} + {f.primary} primary",
        f"{p.secondary} + {f.secondary} secondary",
        f"{p.supplementary} + {f.supplementary} supplementary",
        f"{p.duplicates} + {f.duplicates} duplicates",
        f"{p.primary_duplicates} + {f.primary_duplicates} primary duplicates",
        f"{p.mapped} + {f.mapped} mapped ({_pct(p.mapped, p.total)} : {_pct(f.mapped, f.total)})",
        f"{p.primary_mapped} + {f.primary_mapped} primary mapped "
        f"({_pct(p.primary_mapped, p.primary)} : {_pct(f.primary_mapped, f.primary)})",
        f"{p.paired} + {f.paired} paired in sequencing",
        f"{p.read1} + {f.read1} read1",
        f"{p.read2} + {f.read2} read2",
        f"{p.proper_pair} + {f.proper_pair} properly paired "
        f"({_pct(p.proper_pair, p.paired)} : {_pct(f.proper_pair, f.paired)})",
        f"{p.with_mate_mapped} + {f.with_mate_mapped} with itself and mate mapped",
        f"{p.singletons} + {f.singletons} singletons "
        f"({_pct(p.singletons, p.paired)} : {_pct(f.singletons, f.paired)})",
        f"{p.mate_different_chromosome} + {f.mate_different_chromosome} with mate mapped to a different chr",
        f"{p.mate_different_chromosome_mapq5} + {f.mate_different_chromosome_mapq5} "
        "with mate mapped to a different chr (mapQ>=5)",
    ]
    return "\n".join(lines)
