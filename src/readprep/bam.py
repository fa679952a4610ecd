"""Conversion between pysam alignments and AlignmentRecord, plus BAM/SAM I/O."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pysam

from .errors import IngestionError
from .models import AlignmentRecord, flags_from_int, validate_record
from .utils import atomic_output, file_suffix

logger = logging.getLogger(__name__)

References = Tuple[Tuple[str, int], ...]

_READ_MODES = {".bam": "rb", ".cram": "rc", ".sam": "r"}
_WRITE_MODES = {".bam": "wb", ".sam": "w"}


def _quals_from_string(s: str) -> Tuple[int, ...]:
    return tuple(ord(c) - 33 for c in s)


def _quals_to_string(quals: Sequence[int]) -> str:
    return "".join(chr(q + 33) for q in quals)


def record_from_segment(seg: pysam.AlignedSegment) -> AlignmentRecord:
    """Convert one pysam alignment into an AlignmentRecord.

    Unmapped reads lose any placement SAM gives them (e.g. next to their mate).
    """
    flags = flags_from_int(seg.flag)
    mapped = flags["read_mapped"]

    quals = seg.query_qualities
    tags = dict(seg.get_tags())
    oq = tags.get("OQ")
    md = tags.get("MD")
    rg = tags.get("RG")

    mate_ref: Optional[str] = None
    mate_start: Optional[int] = None
    if seg.is_paired and seg.next_reference_id >= 0:
        mate_ref = seg.next_reference_name
        mate_start = int(seg.next_reference_start)

    return AlignmentRecord(
        read_name=str(seg.query_name),
        sequence=seg.query_sequence or "",
        quality_scores=tuple(int(q) for q in quals) if quals is not None else (),
        reference_name=seg.reference_name if mapped else None,
        start=int(seg.reference_start) if mapped else None,
        cigar=tuple((int(op), int(n)) for op, n in (seg.cigartuples or ())) if mapped else (),
        mapping_quality=int(seg.mapping_quality),
        read_group_id=str(rg) if rg is not None else None,
        mate_reference_name=mate_ref,
        mate_start=mate_start,
        inferred_insert_size=int(seg.template_length),
        mismatching_positions=str(md) if (md is not None and mapped) else None,
        original_quality_scores=_quals_from_string(str(oq)) if oq is not None else None,
        **flags,
    )


def segment_from_record(record: AlignmentRecord, header: pysam.AlignmentHeader) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(header)
    a.query_name = record.read_name
    a.query_sequence = record.sequence or None
    a.flag = record.flag
    if record.read_mapped:
        a.reference_name = record.reference_name
        a.reference_start = int(record.start)  # type: ignore[arg-type]
        a.cigartuples = list(record.cigar)
    else:
        a.reference_id = -1
        a.reference_start = -1
    a.mapping_quality = record.mapping_quality
    if record.quality_scores:
        a.query_qualities = pysam.qualitystring_to_array(_quals_to_string(record.quality_scores))
    if record.mate_reference_name is not None and record.mate_start is not None:
        a.next_reference_name = record.mate_reference_name
        a.next_reference_start = record.mate_start
    else:
        a.next_reference_id = -1
        a.next_reference_start = -1
    a.template_length = record.inferred_insert_size
    if record.read_group_id is not None:
        a.set_tag("RG", record.read_group_id, value_type="Z")
    if record.mismatching_positions is not None:
        a.set_tag("MD", record.mismatching_positions, value_type="Z")
    if record.original_quality_scores is not None:
        a.set_tag("OQ", _quals_to_string(record.original_quality_scores), value_type="Z")
    return a


def build_header(
    references: References,
    read_groups: Sequence[str] = (),
    *,
    sort_order: str = "unsorted",
) -> pysam.AlignmentHeader:
    header: Dict[str, object] = {
        "HD": {"VN": "1.6", "SO": sort_order},
        "SQ": [{"SN": name, "LN": int(length)} for name, length in references],
    }
    if read_groups:
        header["RG"] = [{"ID": rg, "SM": rg} for rg in read_groups]
    return pysam.AlignmentHeader.from_dict(header)


def infer_references(records: Iterable[AlignmentRecord]) -> References:
    """Build a sequence dictionary from record placements (first-seen order, length = max end)."""
    lengths: Dict[str, int] = {}
    for r in records:
        for name, end in ((r.reference_name, r.end), (r.mate_reference_name, r.mate_start)):
            if name is None:
                continue
            lengths[name] = max(lengths.get(name, 1), int(end or 0) + 1)
    return tuple(lengths.items())


def read_alignments(path: str | Path) -> Tuple[List[AlignmentRecord], References, Tuple[str, ...]]:
    """Read every alignment from a BAM/SAM/CRAM file.

    Returns ``(records, references, read_groups)``. Raises IngestionError if the
    file cannot be opened or holds a malformed record.
    """
    p = Path(path)
    mode = _READ_MODES.get(file_suffix(p))
    if mode is None:
        raise IngestionError(f"Not a BAM/SAM/CRAM path: {p}", source=str(p))

    records: List[AlignmentRecord] = []
    try:
        with pysam.AlignmentFile(str(p), mode, check_sq=False) as fh:
            references = tuple(zip(fh.references, (int(n) for n in fh.lengths)))
            header = fh.header.to_dict()
            read_groups = tuple(str(rg["ID"]) for rg in header.get("RG", []))
            for seg in fh.fetch(until_eof=True):
                rec = record_from_segment(seg)
                validate_record(rec)
                records.append(rec)
    except ValueError as e:
        raise IngestionError(f"Malformed alignment in {p}: {e}", source=str(p)) from e
    except OSError as e:
        raise IngestionError(f"Cannot read alignments from {p}: {e}", source=str(p)) from e

    logger.info("Read %d alignments from %s", len(records), p)
    return records, references, read_groups


def write_alignments(
    records: Iterable[AlignmentRecord],
    path: str | Path,
    *,
    references: References = (),
    read_groups: Sequence[str] = (),
    sort_order: str = "unsorted",
) -> int:
    """Write records as BAM or SAM (chosen by suffix); the file appears only when complete."""
    p = Path(path)
    mode = _WRITE_MODES.get(file_suffix(p))
    if mode is None:
        raise ValueError(f"Unsupported alignment output format: {p}")

    records = list(records)
    if not references:
        references = infer_references(records)
    if not read_groups:
        read_groups = tuple(sorted({r.read_group_id for r in records if r.read_group_id is not None}))
    header = build_header(references, read_groups, sort_order=sort_order)

    n = 0
    with atomic_output(p) as tmp:
        with pysam.AlignmentFile(str(tmp), mode, header=header) as out:
            for rec in records:
                out.write(segment_from_record(rec, header))
                n += 1
    logger.info("Wrote %d alignments to %s", n, p)
    return n
