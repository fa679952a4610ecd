"""Per-base covariates used by base quality score recalibration."""

from __future__ import annotations

import enum
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import AlignmentRecord

_COMPLEMENT = str.maketrans("ACGTNacgtn", "TGCANtgcan")


class CovariateKind(enum.Enum):
    QUALITY_SCORE = "quality_score"
    CYCLE = "cycle"
    CONTEXT = "context"

    @classmethod
    def parse(cls, name: str) -> "CovariateKind":
        key = name.strip().lower().replace("-", "_")
        for kind in cls:
            if kind.value == key or kind.name.lower() == key:
                return kind
        raise ValueError(f"Unknown covariate '{name}'; choose from {[k.value for k in cls]}")


DEFAULT_COVARIATES: Tuple[CovariateKind, ...] = (
    CovariateKind.QUALITY_SCORE,
    CovariateKind.CYCLE,
    CovariateKind.CONTEXT,
)


def parse_covariates(names: Iterable[str]) -> Tuple[CovariateKind, ...]:
    return tuple(CovariateKind.parse(n) for n in names)


def complement(base: str) -> str:
    return base.translate(_COMPLEMENT)


def cycle(record: AlignmentRecord, index: int) -> int:
    """Machine cycle of the base at query ``index``.

    1-based in sequencing order (reverse-strand reads were sequenced from the
    other end); negative for the second read of a pair.
    """
    n = len(record.sequence)
    c = (n - index) if record.read_negative_strand else (index + 1)
    return -c if record.second_of_pair else c


def context(record: AlignmentRecord, index: int) -> Optional[str]:
    """Dinucleotide (previous base, this base) in sequencing order, or None at the read start or an N."""
    seq = record.sequence.upper()
    if record.read_negative_strand:
        if index + 1 >= len(seq):
            return None
        pair = complement(seq[index + 1]) + complement(seq[index])
    else:
        if index == 0:
            return None
        pair = seq[index - 1] + seq[index]
    if "N" in pair:
        return None
    return pair


def covariate_values(
    record: AlignmentRecord,
    index: int,
    kinds: Sequence[CovariateKind],
    quality: Optional[int] = None,
) -> Tuple:
    """Covariate values for one base, in ``kinds`` order."""
    out: List = []
    for kind in kinds:
        if kind is CovariateKind.QUALITY_SCORE:
            out.append(record.quality_scores[index] if quality is None else quality)
        elif kind is CovariateKind.CYCLE:
            out.append(cycle(record, index))
        else:
            out.append(context(record, index))
    return tuple(out)
