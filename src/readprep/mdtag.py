"""MD tag parsing and generation.

The MD tag lists, in reference order over aligned and deleted positions, the
runs of matching bases, the reference base at each mismatch, and the reference
bases of each deletion (``^``). With the read sequence and cigar it is enough
to reconstruct the reference under a read, which lets the pipeline find
mismatches without a reference FASTA.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from . import cigar as cg
from .models import AlignmentRecord

_MD_TOKEN = re.compile(r"(\d+)|(\^[A-Za-z]+)|([A-Za-z])")


@dataclass(frozen=True)
class MdTag:
    """Parsed MD tag in reference coordinates."""

    start: int
    end: int  # exclusive
    mismatches: Mapping[int, str]  # ref pos -> reference base
    deletions: Mapping[int, str]  # ref pos -> deleted reference base

    @classmethod
    def parse(cls, md: str, start: int, cigar: Optional[Sequence[Tuple[int, int]]] = None) -> "MdTag":
        """Parse ``md`` for a read aligned at ``start``.

        When ``cigar`` is given, MD offsets are mapped through it so reference
        skips (``N``) are stepped over; otherwise the MD is taken as contiguous.
        Raises ValueError if the tag is malformed or disagrees with the cigar.
        """
        coords = _md_coordinates(start, cigar) if cigar else None

        mismatches: Dict[int, str] = {}
        deletions: Dict[int, str] = {}
        offset = 0
        pos_idx = 0
        for m in _MD_TOKEN.finditer(md):
            if m.start() != pos_idx:
                raise ValueError(f"Malformed MD tag: {md!r}")
            pos_idx = m.end()
            if m.group(1) is not None:
                offset += int(m.group(1))
            elif m.group(2) is not None:
                for base in m.group(2)[1:]:
                    deletions[_coord(coords, start, offset, md)] = base.upper()
                    offset += 1
            else:
                mismatches[_coord(coords, start, offset, md)] = m.group(3).upper()
                offset += 1
        if pos_idx != len(md):
            raise ValueError(f"Malformed MD tag: {md!r}")
        if coords is not None and offset != len(coords):
            raise ValueError(
                f"MD tag {md!r} covers {offset} positions but cigar aligns {len(coords)}"
            )
        end = (coords[-1] + 1) if coords else start + offset
        return cls(start=start, end=end, mismatches=mismatches, deletions=deletions)

    def is_mismatch(self, pos: int) -> bool:
        return pos in self.mismatches


def _md_coordinates(start: int, cigar: Sequence[Tuple[int, int]]) -> List[int]:
    coords: List[int] = []
    ref = start
    for op, length in cigar:
        if op in cg.ALIGNED_OPS or op == cg.DELETION:
            coords.extend(range(ref, ref + length))
            ref += length
        elif op == cg.SKIP:
            ref += length
    return coords


def _coord(coords: Optional[List[int]], start: int, offset: int, md: str) -> int:
    if coords is None:
        return start + offset
    if offset >= len(coords):
        raise ValueError(f"MD tag {md!r} runs past the end of the alignment")
    return coords[offset]


def aligned_pairs(record: AlignmentRecord) -> List[Tuple[int, int]]:
    """(query index, reference position) for every M/=/X base of a mapped read."""
    if record.start is None:
        return []
    pairs: List[Tuple[int, int]] = []
    qpos = 0
    ref = record.start
    for op, length in record.cigar:
        if op in cg.ALIGNED_OPS:
            pairs.extend((qpos + i, ref + i) for i in range(length))
            qpos += length
            ref += length
        elif op in (cg.INSERTION, cg.SOFT_CLIP):
            qpos += length
        elif op in (cg.DELETION, cg.SKIP):
            ref += length
    return pairs


def reference_bases(record: AlignmentRecord) -> Dict[int, str]:
    """Reconstruct ``{ref pos: base}`` under a read from its sequence, cigar and MD tag.

    Raises ValueError if the read has no MD tag.
    """
    if record.mismatching_positions is None or record.start is None:
        raise ValueError(f"Read {record.read_name} has no MD tag")
    md = MdTag.parse(record.mismatching_positions, record.start, record.cigar)
    out: Dict[int, str] = dict(md.deletions)
    seq = record.sequence
    for qpos, ref in aligned_pairs(record):
        out[ref] = md.mismatches.get(ref, seq[qpos].upper())
    return out


def mismatch_count(record: AlignmentRecord, reference: Optional[Callable[[int], Optional[str]]] = None) -> int:
    """Number of aligned bases disagreeing with the reference.

    Uses ``reference(pos)`` when given, else the read's MD tag.
    """
    if reference is None:
        if record.mismatching_positions is None or record.start is None:
            return 0
        md = MdTag.parse(record.mismatching_positions, record.start, record.cigar)
        return len(md.mismatches)
    n = 0
    for qpos, ref in aligned_pairs(record):
        ref_base = reference(ref)
        if ref_base is not None and ref_base != record.sequence[qpos].upper():
            n += 1
    return n


def compute_md(
    sequence: str,
    cigar: Sequence[Tuple[int, int]],
    start: int,
    reference: Callable[[int], Optional[str]],
) -> str:
    """Build the MD tag for ``sequence`` aligned at ``start`` with ``cigar``.

    ``reference(pos)`` returns the reference base at ``pos``. Raises ValueError
    if a covered reference base is unknown.
    """
    parts: List[str] = []
    matches = 0
    qpos = 0
    ref = start
    for op, length in cigar:
        if op in cg.ALIGNED_OPS:
            for i in range(length):
                ref_base = _known(reference, ref + i)
                if sequence[qpos + i].upper() == ref_base:
                    matches += 1
                else:
                    parts.append(str(matches))
                    parts.append(ref_base)
                    matches = 0
            qpos += length
            ref += length
        elif op == cg.DELETION:
            parts.append(str(matches))
            parts.append("^" + "".join(_known(reference, ref + i) for i in range(length)))
            matches = 0
            ref += length
        elif op == cg.SKIP:
            ref += length
        elif op in (cg.INSERTION, cg.SOFT_CLIP):
            qpos += length
    parts.append(str(matches))
    return "".join(parts)


def _known(reference: Callable[[int], Optional[str]], pos: int) -> str:
    base = reference(pos)
    if base is None:
        raise ValueError(f"Reference base unknown at position {pos}")
    return base.upper()
