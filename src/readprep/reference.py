from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Callable, FrozenSet, Mapping, Optional, Tuple

import pysam

from .errors import IngestionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceGenome:
    """Read-only, in-memory reference sequences keyed by contig name."""

    sequences: Mapping[str, str]

    @classmethod
    def from_fasta(cls, path: str | Path) -> "ReferenceGenome":
        seqs = {}
        try:
            with pysam.FastaFile(str(path)) as fa:
                for name in fa.references:
                    seqs[name] = fa.fetch(name).upper()
        except (OSError, ValueError) as e:
            raise IngestionError(f"Cannot read reference FASTA {path}: {e}", source=str(path)) from e
        logger.info("Loaded %d reference contig(s) from %s", len(seqs), path)
        return cls(MappingProxyType(seqs))

    @property
    def references(self) -> Tuple[Tuple[str, int], ...]:
        return tuple((name, len(seq)) for name, seq in self.sequences.items())

    def base(self, contig: str, pos: int) -> Optional[str]:
        seq = self.sequences.get(contig)
        if seq is None or pos < 0 or pos >= len(seq):
            return None
        return seq[pos]

    def fetch(self, contig: str, start: int, end: int) -> Optional[str]:
        seq = self.sequences.get(contig)
        if seq is None or start < 0 or end > len(seq):
            return None
        return seq[start:end]

    def lookup(self, contig: str) -> Callable[[int], Optional[str]]:
        return lambda pos: self.base(contig, pos)


KnownSites = FrozenSet[Tuple[str, int]]


def load_known_sites(path: str | Path) -> KnownSites:
    """Reference positions covered by the REF allele of every VCF record (0-based)."""
    sites = set()
    try:
        with pysam.VariantFile(str(path)) as vcf:
            for rec in vcf:
                span = max(1, len(rec.ref or ""))
                for pos in range(rec.start, rec.start + span):
                    sites.add((rec.chrom, pos))
    except (OSError, ValueError) as e:
        raise IngestionError(f"Cannot read known sites VCF {path}: {e}", source=str(path)) from e
    logger.info("Loaded %d known-site position(s) from %s", len(sites), path)
    return frozenset(sites)
