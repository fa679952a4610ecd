from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pysam

from . import cigar as cg
from .bam import write_alignments
from .mdtag import compute_md
from .models import AlignmentRecord
from .utils import ensure_outdir, write_json

_BASES = "ACGT"


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in _BASES:
        if alt != base:
            return alt
    return "A"


def random_reference(length: int, *, seed: int = 7) -> str:
    rng = random.Random(seed)
    return "".join(rng.choice(_BASES) for _ in range(length))


def make_record(
    name: str,
    reference: str,
    start: int,
    sequence: str,
    *,
    cigar: Optional[Sequence[Tuple[int, int]]] = None,
    contig: str = "chr1",
    quality: int = 30,
    read_group: Optional[str] = "rg1",
    negative_strand: bool = False,
    mapping_quality: int = 60,
) -> AlignmentRecord:
    """A mapped single-end read with an MD tag computed against ``reference``."""
    cig = tuple(cigar) if cigar is not None else ((cg.MATCH, len(sequence)),)
    md = compute_md(sequence, cig, start, lambda p: reference[p] if 0 <= p < len(reference) else None)
    return AlignmentRecord(
        read_name=name,
        sequence=sequence,
        quality_scores=(quality,) * len(sequence),
        reference_name=contig,
        start=start,
        cigar=cig,
        mapping_quality=mapping_quality,
        read_group_id=read_group,
        mismatching_positions=md,
        read_mapped=True,
        read_negative_strand=negative_strand,
    )


def synthetic_reads(
    reference: str,
    *,
    n_reads: int = 200,
    read_length: int = 50,
    duplicates: int = 0,
    error_rate: float = 0.0,
    quality: int = 30,
    contig: str = "chr1",
    read_group: Optional[str] = "rg1",
    name_prefix: str = "read",
    seed: int = 7,
) -> List[AlignmentRecord]:
    """Single-end reads at distinct (start, strand) placements, plus ``duplicates`` exact copies.

    Each duplicate copies the placement of one original read and gets lower
    base qualities, so the original is always the representative.
    """
    originals = n_reads - duplicates
    slots = 2 * (len(reference) - read_length + 1)
    if originals > slots:
        raise ValueError(f"Reference too short for {originals} distinct placements")
    if duplicates > originals:
        raise ValueError("More duplicates than original reads")

    rng = random.Random(seed)
    placements = rng.sample(range(slots), originals)
    reads: List[AlignmentRecord] = []
    for i, slot in enumerate(placements):
        start, negative = divmod(slot, 2)
        seq = list(reference[start : start + read_length])
        for j in range(read_length):
            if rng.random() < error_rate:
                seq[j] = _mutate_base(seq[j])
        reads.append(
            make_record(
                f"{name_prefix}{i:05d}",
                reference,
                start,
                "".join(seq),
                contig=contig,
                quality=quality,
                read_group=read_group,
                negative_strand=bool(negative),
            )
        )

    for k in range(duplicates):
        src = reads[k]
        reads.append(
            src.with_updates(
                read_name=f"{name_prefix}dup{k:05d}",
                quality_scores=tuple(max(2, q - 10) for q in src.quality_scores),
            )
        )
    return reads


def indel_cluster(
    reference: str,
    *,
    position: int,
    deleted: int = 2,
    read_length: int = 50,
    supporting: int = 3,
    misaligned: int = 3,
    contig: str = "chr1",
    read_group: Optional[str] = "rg1",
    name_prefix: str = "indel",
) -> List[AlignmentRecord]:
    """Reads from a haplotype with ``deleted`` bases removed at ``position``.

    ``supporting`` reads carry the deletion in their cigar; ``misaligned`` reads
    are aligned end-to-end without it, so every base past the deletion is
    shifted and shows up as mismatches.
    """
    hap = reference[:position] + reference[position + deleted :]
    reads = []
    for i in range(supporting):
        left = 20 + i
        start = position - left
        seq = hap[start : start + read_length]
        cig = ((cg.MATCH, left), (cg.DELETION, deleted), (cg.MATCH, read_length - left))
        reads.append(
            make_record(f"{name_prefix}_s{i}", reference, start, seq, cigar=cig, contig=contig, read_group=read_group)
        )
    for i in range(misaligned):
        start = position - 30 - i
        seq = hap[start : start + read_length]
        reads.append(make_record(f"{name_prefix}_m{i}", reference, start, seq, contig=contig, read_group=read_group))
    return reads


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny reference, BAM, and known-sites VCF suitable for quick demos/tests.

    The outputs include:
    - toy_ref.fa (+ .fai)
    - reads.bam (+ .bai): two read groups, duplicates, sequencing errors, an
      indel cluster with misaligned reads, and one unmapped read
    - known_sites.vcf.gz (+ .tbi)

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    contig = "chr1"
    ref_seq = random_reference(1200, seed=7)
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, contig, ref_seq)
    pysam.faidx(str(ref_fa))

    reads = synthetic_reads(
        ref_seq, n_reads=160, duplicates=6, error_rate=0.02, read_group="rg1", name_prefix="a", seed=7
    )
    reads += synthetic_reads(
        ref_seq, n_reads=120, duplicates=4, error_rate=0.01, quality=35, read_group="rg2", name_prefix="b", seed=11
    )
    reads += indel_cluster(ref_seq, position=600, read_group="rg1")
    reads.append(
        AlignmentRecord(
            read_name="unmapped0",
            sequence=ref_seq[:50],
            quality_scores=(20,) * 50,
            read_group_id="rg2",
        )
    )
    reads.sort(key=lambda r: (r.start is None, r.start or 0, r.read_name))

    bam_path = outdir_p / "reads.bam"
    write_alignments(
        reads,
        bam_path,
        references=((contig, len(ref_seq)),),
        read_groups=("rg1", "rg2"),
        sort_order="coordinate",
    )
    pysam.index(str(bam_path))

    # Known sites
    sites = [150, 420, 905]
    vcf_path = outdir_p / "known_sites.vcf"
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(contig, length=len(ref_seq))

    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for pos0 in sites:
            ref_base = ref_seq[pos0]
            alt_base = _mutate_base(ref_base)
            rec = vcf.new_record(
                contig=contig,
                start=pos0,
                stop=pos0 + 1,
                alleles=(ref_base, alt_base),
                id=f"{contig}:{pos0+1}:{ref_base}:{alt_base}",
                qual=60,
                filter="PASS",
            )
            vcf.write(rec)

    vcf_gz = outdir_p / "known_sites.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)

    summary = {
        "ref_fa": str(ref_fa),
        "reads_bam": str(bam_path),
        "known_sites_vcf": str(vcf_gz),
        "outdir": str(outdir_p),
        "reads": str(len(reads)),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
