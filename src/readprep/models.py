from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Dict, Optional, Tuple

from . import cigar as cg

FLAG_BITS: Dict[str, int] = {
    "read_paired": 0x1,
    "proper_pair": 0x2,
    # 0x4 (unmapped) is the inverse of read_mapped
    # 0x8 (mate unmapped) is the inverse of mate_mapped
    "read_negative_strand": 0x10,
    "mate_negative_strand": 0x20,
    "first_of_pair": 0x40,
    "second_of_pair": 0x80,
    "secondary_alignment": 0x100,
    "failed_vendor_quality_checks": 0x200,
    "duplicate_read": 0x400,
    "supplementary_alignment": 0x800,
}

_UNMAPPED = 0x4
_MATE_UNMAPPED = 0x8


@dataclass(frozen=True)
class AlignmentRecord:
    """One sequenced read, optionally aligned to a reference.

    Coordinates are 0-based half-open. Records are immutable; stages build new
    records with :meth:`with_updates`.

    Attributes
    ----------
    read_name:
        Query template name.
    sequence:
        Read bases as stored (reverse-complemented for reverse-strand alignments,
        as in SAM).
    quality_scores:
        Phred base qualities, same length as ``sequence``.
    reference_name, start:
        Placement on the reference; ``None`` for unmapped reads.
    cigar:
        ``((op, length), ...)`` with SAM/pysam op codes; empty for unmapped reads.
    read_group_id:
        Originating sequencing run/sample. Stages treat it as the calibration
        and realignment context.
    mismatching_positions:
        MD tag, if known. Used to find mismatches without a reference FASTA.
    original_quality_scores:
        Qualities before recalibration (SAM ``OQ``), set by the recalibrator.
    """

    read_name: str = ""
    sequence: str = ""
    quality_scores: Tuple[int, ...] = ()
    reference_name: Optional[str] = None
    start: Optional[int] = None
    cigar: cg.CigarTuples = ()
    mapping_quality: int = 0
    read_group_id: Optional[str] = None
    mate_reference_name: Optional[str] = None
    mate_start: Optional[int] = None
    inferred_insert_size: int = 0
    mismatching_positions: Optional[str] = None
    original_quality_scores: Optional[Tuple[int, ...]] = None
    read_paired: bool = False
    proper_pair: bool = False
    read_mapped: bool = False
    mate_mapped: bool = False
    read_negative_strand: bool = False
    mate_negative_strand: bool = False
    first_of_pair: bool = False
    second_of_pair: bool = False
    secondary_alignment: bool = False
    supplementary_alignment: bool = False
    failed_vendor_quality_checks: bool = False
    duplicate_read: bool = False

    @property
    def end(self) -> Optional[int]:
        """Exclusive reference end, or None for unmapped reads."""
        if self.start is None or not self.cigar:
            return None
        return self.start + cg.reference_length(self.cigar)

    @property
    def is_primary(self) -> bool:
        return not (self.secondary_alignment or self.supplementary_alignment)

    @property
    def flag(self) -> int:
        value = 0
        for name, bit in FLAG_BITS.items():
            if getattr(self, name):
                value |= bit
        if not self.read_mapped:
            value |= _UNMAPPED
        if self.read_paired and not self.mate_mapped:
            value |= _MATE_UNMAPPED
        return value

    @property
    def five_prime_position(self) -> Optional[int]:
        """Unclipped 5' reference coordinate (soft and hard clips added back)."""
        if self.start is None or not self.cigar:
            return None
        if self.read_negative_strand:
            end = self.end
            assert end is not None
            return end - 1 + cg.trailing_clip(self.cigar, soft_only=False)
        return self.start - cg.leading_clip(self.cigar, soft_only=False)

    @property
    def record_id(self) -> str:
        """Stable identifier: name, pair member, and placement for non-primary lines."""
        member = 1 if self.first_of_pair else 2 if self.second_of_pair else 0
        rid = f"{self.read_name}/{member}"
        if not self.is_primary:
            kind = "sup" if self.supplementary_alignment else "sec"
            rid += f":{kind}@{self.reference_name}:{self.start}"
        return rid

    def with_updates(self, **changes) -> "AlignmentRecord":
        return replace(self, **changes)


RECORD_FIELDS: Tuple[str, ...] = tuple(f.name for f in fields(AlignmentRecord))


def flags_from_int(flag: int) -> Dict[str, bool]:
    """Decode a SAM flag integer into AlignmentRecord boolean fields."""
    out = {name: bool(flag & bit) for name, bit in FLAG_BITS.items()}
    out["read_mapped"] = not bool(flag & _UNMAPPED)
    out["mate_mapped"] = bool(flag & 0x1) and not bool(flag & _MATE_UNMAPPED)
    return out


def validate_record(record: AlignmentRecord) -> None:
    """Check record invariants; raise ValueError naming the read on violation."""
    name = record.read_name or "<unnamed>"
    if record.quality_scores and len(record.quality_scores) != len(record.sequence):
        raise ValueError(
            f"Read {name}: sequence length {len(record.sequence)} != "
            f"quality length {len(record.quality_scores)}"
        )
    try:
        cg.check_cigar(record.cigar)
    except ValueError as e:
        raise ValueError(f"Read {name}: {e}") from e

    if not record.read_mapped:
        if record.start is not None or record.cigar:
            raise ValueError(f"Read {name}: unmapped read carries a position or cigar")
        return

    if record.start is None or not record.cigar:
        raise ValueError(f"Read {name}: mapped read has no position or cigar")
    if record.reference_name is None:
        raise ValueError(f"Read {name}: mapped read has no reference name")
    if record.start < 0:
        raise ValueError(f"Read {name}: negative start {record.start}")
    if record.sequence and cg.query_length(record.cigar) != len(record.sequence):
        raise ValueError(
            f"Read {name}: cigar {cg.cigar_to_string(record.cigar)} describes "
            f"{cg.query_length(record.cigar)} bases but sequence has {len(record.sequence)}"
        )


def project_record(record: AlignmentRecord, keep: frozenset) -> AlignmentRecord:
    """Return a copy with every field outside ``keep`` reset to its default."""
    defaults = _DEFAULTS
    changes = {name: defaults[name] for name in RECORD_FIELDS if name not in keep}
    if not changes:
        return record
    return replace(record, **changes)


_DEFAULTS: Dict[str, object] = {f.name: f.default for f in fields(AlignmentRecord)}
